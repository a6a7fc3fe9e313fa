#!/usr/bin/env python3
import os
import io
import re
import sys
import gzip
import json
import unicodedata
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from functools import total_ordering
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Optional, Set

import numpy as np
import pandas as pd
import requests


# -----------------------------
# Config
# -----------------------------
ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
SOURCES = {
    "market_tracker": "https://redfin-public-data.s3.us-west-2.amazonaws.com/redfin_market_tracker/county_market_tracker.tsv000.gz",
    "county_codes": "https://www2.census.gov/geo/docs/reference/codes2020/national_county2020.txt",
}
PATHS = {
    # Local copies are used instead of downloading when present
    "market_tracker_local": os.path.join(ROOT, "county_market_tracker.tsv000.gz"),
    "county_codes_local": os.path.join(ROOT, "national_county2020.txt"),
    "output_tsv": os.path.join(ROOT, "data", "prices.tsv"),
    "quality_dir": os.path.join(ROOT, "data", "quality"),
}

CONNECT_TIMEOUT = 30
READ_TIMEOUTS = {"market_tracker": 300, "county_codes": 120}

PERIOD_CANDIDATES = ["PERIOD_END", "PERIOD_BEGIN"]
PRICE_COLUMN = "MEDIAN_SALE_PRICE"
FIPS_CANDIDATES = ["REGION_FIPS", "REGION_FIPS_CODE", "FIPS", "COUNTY_FIPS", "GEOID"]
COUNTY_CANDIDATES = ["REGION", "REGION_NAME", "COUNTY", "COUNTY_NAME"]
STATE_CANDIDATES = ["STATE", "STATE_CODE", "STATE_ABBR", "STATE_NAME"]

REFERENCE_HEADER_PREFIX = "STATE|STATEFP|COUNTYFP"
OUTPUT_COLUMNS = ["fips", "median_sale_price"]

ISO_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
NON_DIGIT_RE = re.compile(r"[^0-9]")
WHITESPACE_RE = re.compile(r"\s+")

# Applied in order; later rules rely on the output of earlier ones.
COUNTY_NAME_RULES = [
    (re.compile(r"&"), " and "),
    (re.compile(r"\bSt\.\s*", re.I), "Saint "),
    (re.compile(r"\bSte\.\s*", re.I), "Sainte "),
    (re.compile(r"\s+(?:Parish|Borough|Census Area|City and Borough)$", re.I), " County"),
    (re.compile(r"\s+City\s+County$", re.I), " City"),
    (re.compile(r"\bCounty\s+County\b", re.I), "County"),
    (re.compile(r"\s+"), " "),
]

STATE_ABBREVIATIONS = MappingProxyType({
    "ALABAMA": "AL", "ALASKA": "AK", "ARIZONA": "AZ", "ARKANSAS": "AR",
    "CALIFORNIA": "CA", "COLORADO": "CO", "CONNECTICUT": "CT", "DELAWARE": "DE",
    "DISTRICT OF COLUMBIA": "DC", "FLORIDA": "FL", "GEORGIA": "GA", "HAWAII": "HI",
    "IDAHO": "ID", "ILLINOIS": "IL", "INDIANA": "IN", "IOWA": "IA",
    "KANSAS": "KS", "KENTUCKY": "KY", "LOUISIANA": "LA", "MAINE": "ME",
    "MARYLAND": "MD", "MASSACHUSETTS": "MA", "MICHIGAN": "MI", "MINNESOTA": "MN",
    "MISSISSIPPI": "MS", "MISSOURI": "MO", "MONTANA": "MT", "NEBRASKA": "NE",
    "NEVADA": "NV", "NEW HAMPSHIRE": "NH", "NEW JERSEY": "NJ", "NEW MEXICO": "NM",
    "NEW YORK": "NY", "NORTH CAROLINA": "NC", "NORTH DAKOTA": "ND", "OHIO": "OH",
    "OKLAHOMA": "OK", "OREGON": "OR", "PENNSYLVANIA": "PA", "RHODE ISLAND": "RI",
    "SOUTH CAROLINA": "SC", "SOUTH DAKOTA": "SD", "TENNESSEE": "TN", "TEXAS": "TX",
    "UTAH": "UT", "VERMONT": "VT", "VIRGINIA": "VA", "WASHINGTON": "WA",
    "WEST VIRGINIA": "WV", "WISCONSIN": "WI", "WYOMING": "WY", "PUERTO RICO": "PR",
})


class EmptyInputError(ValueError):
    pass


class MissingColumnsError(ValueError):
    def __init__(self, message: str, columns: List[str]):
        super().__init__(message)
        self.columns = columns


class ReferenceFormatError(ValueError):
    pass


# -----------------------------
# Utilities
# -----------------------------

def ensure_dirs():
    for p in [os.path.dirname(PATHS["output_tsv"]), PATHS["quality_dir"]]:
        os.makedirs(p, exist_ok=True)


def strip_quotes(s: Optional[str]) -> str:
    if s is None:
        return ""
    t = s.strip()
    if len(t) >= 2 and t.startswith('"') and t.endswith('"'):
        return t[1:-1].strip()
    return t


def normalize_header(s: str) -> str:
    return strip_quotes(s).upper()


def value_at(parts: List[str], index: Optional[int]) -> str:
    if index is None or index < 0 or index >= len(parts):
        return ""
    return strip_quotes(parts[index])


def split_line(line: str, sep: str = "\t") -> List[str]:
    return line.rstrip("\r\n").split(sep)


def write_json(path: str, payload: dict):
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)


# -----------------------------
# Column resolution
# -----------------------------

@dataclass(frozen=True)
class ResolvedColumns:
    header_index: Dict[str, int]
    period: int
    price: int
    fips: Optional[int] = None
    county: Optional[int] = None
    state: Optional[int] = None

    @property
    def uses_fips(self) -> bool:
        return self.fips is not None

    def describe(self) -> Dict[str, Optional[str]]:
        by_position = {i: name for name, i in self.header_index.items()}
        return {
            "period": by_position.get(self.period),
            "price": by_position.get(self.price),
            "fips": by_position.get(self.fips),
            "county": by_position.get(self.county),
            "state": by_position.get(self.state),
        }


def build_header_index(header_cells: List[str]) -> Dict[str, int]:
    """Normalized column name -> position; the last duplicate wins."""
    idx = {}
    for i, cell in enumerate(header_cells):
        idx[normalize_header(cell)] = i
    return MappingProxyType(idx)


def find_first_existing(idx: Dict[str, int], names: List[str]) -> Optional[int]:
    for name in names:
        if name in idx:
            return idx[name]
    return None


def find_period_column(idx: Dict[str, int]) -> Optional[int]:
    i = find_first_existing(idx, PERIOD_CANDIDATES)
    if i is not None:
        return i
    # Renamed period columns still carry both words, e.g. "PERIOD_END_DATE"
    for name, pos in idx.items():
        if "PERIOD" in name and "END" in name:
            return pos
    return None


def resolve_columns(header_cells: List[str]) -> ResolvedColumns:
    idx = build_header_index(header_cells)
    columns = list(idx)

    period = find_period_column(idx)
    if period is None:
        raise MissingColumnsError("Missing period column (expected PERIOD_END or similar)", columns)
    price = find_first_existing(idx, [PRICE_COLUMN])
    if price is None:
        raise MissingColumnsError(f"Missing required column: {PRICE_COLUMN}", columns)

    fips = find_first_existing(idx, FIPS_CANDIDATES)
    if fips is not None:
        return ResolvedColumns(idx, period, price, fips=fips)

    county = find_first_existing(idx, COUNTY_CANDIDATES)
    state = find_first_existing(idx, STATE_CANDIDATES)
    if county is None or state is None:
        raise MissingColumnsError("Missing county/state columns for FIPS fallback mapping", columns)
    return ResolvedColumns(idx, period, price, county=county, state=state)


# -----------------------------
# Periods
# -----------------------------

@total_ordering
@dataclass(frozen=True, eq=False)
class ComparableDate:
    """A period value: either a calendar date or ISO-shaped text that is not a real date.

    ISO dates sort identically as text and as dates, so comparing a calendar
    date with raw text compares ``date.isoformat()`` against the text.
    """
    value: Optional[date] = None
    iso_text: Optional[str] = None

    @classmethod
    def for_date(cls, d: date) -> "ComparableDate":
        return cls(value=d)

    @classmethod
    def for_iso_text(cls, s: str) -> "ComparableDate":
        return cls(iso_text=s)

    def as_text(self) -> str:
        return self.value.isoformat() if self.value is not None else self.iso_text

    def __eq__(self, other):
        if not isinstance(other, ComparableDate):
            return NotImplemented
        return compare_periods(self, other) == 0

    def __lt__(self, other):
        if not isinstance(other, ComparableDate):
            return NotImplemented
        return compare_periods(self, other) < 0

    def __hash__(self):
        return hash(self.as_text())

    def __str__(self):
        return self.as_text()


def compare_periods(a: ComparableDate, b: ComparableDate) -> int:
    if a.value is not None and b.value is not None:
        left, right = a.value, b.value
    else:
        left, right = a.as_text(), b.as_text()
    return (left > right) - (left < right)


def parse_period(raw: str) -> Optional[ComparableDate]:
    t = strip_quotes(raw)
    if not ISO_DATE_RE.fullmatch(t):
        return None
    try:
        return ComparableDate.for_date(date(int(t[0:4]), int(t[5:7]), int(t[8:10])))
    except ValueError:
        # e.g. "2023-02-30": not a calendar date but still orders correctly as text
        return ComparableDate.for_iso_text(t)


# -----------------------------
# Value parsers
# -----------------------------

def is_missing(t: str) -> bool:
    return not t or t.upper() == "NA"


def parse_price(raw: str) -> Optional[int]:
    t = strip_quotes(raw)
    if is_missing(t):
        return None
    # float() would accept digit separators like "1_000"
    if "_" in t:
        return None
    try:
        value = float(t)
    except ValueError:
        return None
    if not np.isfinite(value):
        return None
    # Half-up rounding, not Python's round-half-to-even
    return int(np.floor(value + 0.5))


def normalize_fips(raw: str) -> Optional[str]:
    t = strip_quotes(raw)
    if is_missing(t):
        return None
    digits = NON_DIGIT_RE.sub("", t)
    if not digits or len(digits) > 5:
        return None
    return digits.zfill(5)


# -----------------------------
# County / state names
# -----------------------------

def strip_diacritics(s: str) -> str:
    decomposed = unicodedata.normalize("NFD", s)
    return "".join(ch for ch in decomposed if not unicodedata.category(ch).startswith("M"))


def normalize_county_name(raw: str) -> str:
    n = strip_quotes(raw)
    # "St. Louis County, MO Metro" -> "St. Louis County"
    n = n.split(",", 1)[0].strip()
    n = strip_diacritics(n)
    for pattern, replacement in COUNTY_NAME_RULES:
        n = pattern.sub(replacement, n)
    return n.strip().upper()


def normalize_state(raw: str) -> str:
    s = strip_quotes(raw)
    if not s:
        return ""
    s = WHITESPACE_RE.sub(" ", s).upper()
    if len(s) == 2:
        return s
    return STATE_ABBREVIATIONS.get(s, "")


def county_state_key(county_raw: str, state_raw: str) -> Optional[str]:
    county = normalize_county_name(county_raw)
    if not county:
        return None
    state = normalize_state(state_raw)
    if not state:
        return None
    return f"{state}|{county}"


def city_alias_key(key: str) -> Optional[str]:
    """'VA|RICHMOND CITY' -> 'VA|RICHMOND'; None when the county does not end in CITY."""
    state, sep, county = key.partition("|")
    if not sep or not county or not county.endswith(" CITY"):
        return None
    return f"{state}|{county[:-5].strip()}"


# -----------------------------
# Reference index (Census county codes)
# -----------------------------

def build_reference_index(lines: Iterable[str]) -> Dict[str, str]:
    """
    Build a "STATE|COUNTY NAME" -> 5-digit FIPS lookup from the pipe-delimited
    Census county code list (STATE|STATEFP|COUNTYFP|COUNTYNS|COUNTYNAME|...).

    Derived "... CITY" aliases never replace a direct entry.
    """
    lines = iter(lines)
    header = next(lines, None)
    if header is None or not header.lstrip("\ufeff").startswith(REFERENCE_HEADER_PREFIX):
        raise ReferenceFormatError("Unexpected Census county codes format")

    index: Dict[str, str] = {}
    for line in lines:
        parts = split_line(line, "|")
        if len(parts) < 5:
            continue
        state_abbr = parts[0].strip().upper()
        fips = parts[1].strip() + parts[2].strip()
        if len(fips) != 5:
            continue
        key = county_state_key(parts[4].strip(), state_abbr)
        if key is None:
            continue
        index[key] = fips
        alias = city_alias_key(key)
        if alias is not None:
            index.setdefault(alias, fips)
    return index


# -----------------------------
# Latest-record aggregation
# -----------------------------

@dataclass(frozen=True)
class CountyRecord:
    period: ComparableDate
    median_sale_price: int


class LatestPriceAggregator:
    """Streams market tracker rows and keeps the latest period's price per county FIPS."""

    def __init__(self, columns: ResolvedColumns, reference_index: Optional[Dict[str, str]] = None):
        if not columns.uses_fips and reference_index is None:
            raise ValueError("A reference index is required when no FIPS column is present")
        self.columns = columns
        self.reference_index = reference_index
        self.latest_by_fips: Dict[str, CountyRecord] = {}
        self.logged_unmatched: Set[str] = set()
        self.logged_bad_periods: Set[str] = set()
        self.processed = 0
        self.skipped = 0
        self.skip_reasons: Counter = Counter()

    def _skip(self, reason: str):
        self.skipped += 1
        self.skip_reasons[reason] += 1

    def _resolve_fips(self, parts: List[str]) -> Optional[str]:
        cols = self.columns
        if cols.uses_fips:
            fips = normalize_fips(value_at(parts, cols.fips))
            if fips is None:
                self._skip("bad_fips")
            return fips

        if len(parts) <= max(cols.county, cols.state):
            self._skip("short_row")
            return None
        county_name = value_at(parts, cols.county)
        state_value = value_at(parts, cols.state)
        key = county_state_key(county_name, state_value)
        if key is None:
            self._skip("bad_county_key")
            return None
        fips = self.reference_index.get(key)
        if fips is None:
            if key not in self.logged_unmatched:
                self.logged_unmatched.add(key)
                print(f"⚠️ Skipping unmatched county/state: county='{county_name}', state='{state_value}'")
            self._skip("unmatched_county")
        return fips

    def add_line(self, line: str):
        self.processed += 1
        parts = split_line(line)
        cols = self.columns
        if len(parts) <= max(cols.period, cols.price):
            self._skip("short_row")
            return

        period_raw = value_at(parts, cols.period)
        period = parse_period(period_raw)
        if period is None:
            if period_raw and period_raw not in self.logged_bad_periods:
                self.logged_bad_periods.add(period_raw)
                print(f"⚠️ Skipping non-ISO period value: '{period_raw}'")
            self._skip("bad_period")
            return
        price = parse_price(value_at(parts, cols.price))
        if price is None:
            self._skip("bad_price")
            return
        fips = self._resolve_fips(parts)
        if fips is None:
            return

        existing = self.latest_by_fips.get(fips)
        # Ties keep the first record seen
        if existing is None or period > existing.period:
            self.latest_by_fips[fips] = CountyRecord(period, price)

    def consume(self, lines: Iterable[str]) -> Dict[str, CountyRecord]:
        for line in lines:
            self.add_line(line)
        return self.latest_by_fips


# -----------------------------
# Output
# -----------------------------

def prices_frame(latest_by_fips: Dict[str, CountyRecord]) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "fips": list(latest_by_fips.keys()),
            "median_sale_price": [r.median_sale_price for r in latest_by_fips.values()],
        },
        columns=OUTPUT_COLUMNS,
    )
    return df.sort_values("fips", kind="mergesort").reset_index(drop=True)


def write_prices_tsv(latest_by_fips: Dict[str, CountyRecord], path: str) -> pd.DataFrame:
    df = prices_frame(latest_by_fips)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_csv(path, sep="\t", index=False, lineterminator="\n")
    return df


# -----------------------------
# Sources
# -----------------------------

@contextmanager
def open_source_lines(name: str) -> Iterator[Iterator[str]]:
    """Yield the text lines of a source, from its local copy if present, else over HTTP."""
    local = PATHS.get(f"{name}_local")
    if local and os.path.isfile(local):
        print(f"Reading local copy: {local}")
        opener = gzip.open if local.endswith(".gz") else open
        with opener(local, "rt", encoding="utf-8-sig") as f:
            yield f
        return

    url = SOURCES[name]
    resp = requests.get(url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUTS[name]))
    try:
        resp.raise_for_status()
        # Undo any Content-Encoding; a .gz source still carries its own gzip layer
        resp.raw.decode_content = True
        raw = gzip.GzipFile(fileobj=resp.raw) if url.endswith(".gz") else resp.raw
        with io.TextIOWrapper(raw, encoding="utf-8-sig") as text:
            yield text
    finally:
        resp.close()


def load_latest_county_prices() -> LatestPriceAggregator:
    with open_source_lines("market_tracker") as lines:
        header = next(lines, None)
        if header is None:
            raise EmptyInputError("Empty Redfin county market tracker file")
        columns = resolve_columns(split_line(header))

        reference_index = None
        if not columns.uses_fips:
            print("No county FIPS column found; downloading Census county codes for fallback mapping...")
            with open_source_lines("county_codes") as ref_lines:
                reference_index = build_reference_index(ref_lines)
            print(f"Reference index entries: {len(reference_index)}")

        aggregator = LatestPriceAggregator(columns, reference_index)
        aggregator.consume(lines)

    print(f"Processed rows: {aggregator.processed}")
    print(f"Skipped rows: {aggregator.skipped}")
    return aggregator


def fail(error: str, code: int, **details):
    write_json(os.path.join(PATHS["quality_dir"], "prices_qa_error.json"), {"error": error, **details})
    sys.exit(code)


# -----------------------------
# Pipeline
# -----------------------------

def main():
    ensure_dirs()

    print("Downloading and parsing Redfin county market tracker...")
    try:
        aggregator = load_latest_county_prices()
    except requests.RequestException as e:
        print(f"Error: download failed: {e}")
        fail("download_failed", 1, message=str(e))
    except EmptyInputError as e:
        print(f"Error: {e}")
        fail("empty_input", 1, message=str(e))
    except MissingColumnsError as e:
        print(f"Error: {e}")
        fail("missing_columns", 2, message=str(e), columns=e.columns)
    except ReferenceFormatError as e:
        print(f"Error: {e}")
        fail("bad_reference_table", 3, message=str(e))

    print("Writing prices.tsv...")
    latest_by_fips = aggregator.latest_by_fips
    write_prices_tsv(latest_by_fips, PATHS["output_tsv"])

    periods = [r.period for r in latest_by_fips.values()]
    prof = {
        "columns": list(aggregator.columns.header_index),
        "resolved_columns": aggregator.columns.describe(),
        "resolution": "fips" if aggregator.columns.uses_fips else "county_name",
        "rows_processed": aggregator.processed,
        "rows_skipped": aggregator.skipped,
        "skip_reasons": dict(sorted(aggregator.skip_reasons.items())),
        "n_counties": len(latest_by_fips),
        "period_min": str(min(periods)) if periods else None,
        "period_max": str(max(periods)) if periods else None,
    }
    write_json(os.path.join(PATHS["quality_dir"], "prices_profile.json"), prof)

    unmatched = sorted(aggregator.logged_unmatched)
    write_json(os.path.join(PATHS["quality_dir"], "prices_unmatched.json"), {
        "unmatched_count": len(unmatched),
        "unmatched_samples": unmatched[:20],
    })

    print(f"Wrote: {os.path.abspath(PATHS['output_tsv'])}")
    print(f"County rows: {len(latest_by_fips)}")


if __name__ == "__main__":
    main()
