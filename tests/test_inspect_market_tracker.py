from pathlib import Path

import pytest


def reimport_inspector():
    """Load the inspector script directly from its file path."""
    import importlib.util
    root = Path(__file__).resolve().parents[1]
    module_path = root / "scripts" / "inspect_market_tracker.py"
    spec = importlib.util.spec_from_file_location("inspect_market_tracker_under_test", str(module_path))
    if spec is None or spec.loader is None:
        raise RuntimeError("Unable to create module spec for inspect_market_tracker")
    im = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(im)
    return im


def write_tracker(path: Path):
    rows = [
        '"PERIOD_END"\t"REGION"\t"STATE_CODE"\t"PROPERTY_TYPE"\t"PERIOD_DURATION"\t"MEDIAN_SALE_PRICE"',
        '"2023-01-31"\t"Snohomish County, WA"\t"WA"\t"All Residential"\t"30"\t"500000"',
        '"2023-02-28"\t"Snohomish County, WA"\t"WA"\t"Townhouse"\t"30"\t"410000"',
        '"2023-01-31"\t"King County, WA"\t"WA"\t"All Residential"\t"30"\t"800000"',
        '"2023-01-31"\t"Multnomah County, OR"\t"OR"\t"All Residential"\t"30"\t"520000"',
    ]
    path.write_text("\n".join(rows) + "\n", encoding="utf-8")


def test_collect_samples_counts_and_limits(tmp_path):
    im = reimport_inspector()
    src = tmp_path / "tracker.tsv"
    write_tracker(src)

    samples = im.collect_samples(im.read_chunks(str(src), chunksize=2), "wa", "snohomish", limit=2)

    assert samples["n_state"] == 3
    assert samples["n_region"] == 2
    assert len(samples["state_rows"]) == 2
    assert samples["state_rows"][0]["REGION"] == "Snohomish County, WA"
    assert [r["PROPERTY_TYPE"] for r in samples["region_rows"]] == ["All Residential", "Townhouse"]


def test_collect_samples_missing_columns(tmp_path):
    im = reimport_inspector()
    src = tmp_path / "tracker.tsv"
    src.write_text("PERIOD_END\tMEDIAN_SALE_PRICE\n2023-01-31\t1\n", encoding="utf-8")
    with pytest.raises(KeyError):
        im.collect_samples(im.read_chunks(str(src)), "WA", "Snohomish")


def test_main_prints_summary(tmp_path, capsys):
    im = reimport_inspector()
    src = tmp_path / "tracker.tsv"
    write_tracker(src)

    im.main(["--source", str(src), "--state", "OR", "--region", "King"])

    out = capsys.readouterr().out
    assert "OR sample: REGION=Multnomah County, OR" in out
    assert "King: REGION=King County, WA" in out
    assert "OR rows=1 King rows=1" in out
