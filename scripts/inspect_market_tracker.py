#!/usr/bin/env python3
"""Print sample rows from the Redfin county market tracker.

Handy for checking how a county is labelled (region text, state code,
property type, period duration) before debugging the prices pipeline.
"""
import argparse
import sys
from typing import Dict, Iterable, Optional

import pandas as pd

DEFAULT_SOURCE = "https://redfin-public-data.s3.us-west-2.amazonaws.com/redfin_market_tracker/county_market_tracker.tsv000.gz"
SAMPLE_COLUMNS = ["REGION", "STATE_CODE", "PROPERTY_TYPE", "PERIOD_DURATION", "PERIOD_END", "MEDIAN_SALE_PRICE"]
REQUIRED_COLUMNS = ["REGION", "STATE_CODE"]


def read_chunks(source: str, chunksize: int = 100_000) -> Iterable[pd.DataFrame]:
    # compression inferred from the .gz suffix, for paths and URLs alike
    return pd.read_csv(source, sep="\t", dtype=str, keep_default_na=False, chunksize=chunksize)


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(c).strip().strip('"').strip().upper() for c in df.columns]
    return df


def collect_samples(chunks: Iterable[pd.DataFrame], state: str, region_contains: str, limit: int = 3) -> Dict[str, object]:
    state = state.strip().upper()
    state_rows = []
    region_rows = []
    n_state = 0
    n_region = 0
    for chunk in chunks:
        chunk = normalize_columns(chunk)
        missing = [c for c in REQUIRED_COLUMNS if c not in chunk.columns]
        if missing:
            raise KeyError(f"Missing columns in market tracker: {missing}")
        cols = [c for c in SAMPLE_COLUMNS if c in chunk.columns]

        st = chunk["STATE_CODE"].str.strip().str.upper()
        in_state = chunk[st == state]
        n_state += len(in_state)
        if len(state_rows) < limit:
            state_rows.extend(in_state[cols].head(limit - len(state_rows)).to_dict("records"))

        in_region = chunk[chunk["REGION"].str.contains(region_contains, case=False, regex=False)]
        n_region += len(in_region)
        region_rows.extend(in_region[cols].to_dict("records"))

    return {
        "state_rows": state_rows,
        "region_rows": region_rows,
        "n_state": n_state,
        "n_region": n_region,
    }


def format_row(row: Dict[str, str]) -> str:
    return " | ".join(f"{k}={v}" for k, v in row.items())


def parse_args(argv: Optional[list] = None):
    p = argparse.ArgumentParser(description="Print sample rows from the Redfin county market tracker")
    p.add_argument("--source", default=DEFAULT_SOURCE, help="Path or URL of the tracker TSV (default: Redfin S3 county tracker)")
    p.add_argument("--state", default="WA", help="State code to sample (default: WA)")
    p.add_argument("--region", default="Snohomish", help="Substring of REGION to print every matching row for (default: Snohomish)")
    p.add_argument("--limit", type=int, default=3, help="Number of state sample rows to print (default: 3)")
    p.add_argument("--chunksize", type=int, default=100_000, help="Rows per pandas chunk (default: 100000)")
    return p.parse_args(argv)


def main(argv: Optional[list] = None):
    args = parse_args(argv)
    try:
        samples = collect_samples(read_chunks(args.source, args.chunksize), args.state, args.region, args.limit)
    except KeyError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for row in samples["state_rows"]:
        print(f"{args.state} sample: {format_row(row)}")
    for row in samples["region_rows"]:
        print(f"{args.region}: {format_row(row)}")
    print(f"{args.state} rows={samples['n_state']} {args.region} rows={samples['n_region']}")


if __name__ == "__main__":
    main()
