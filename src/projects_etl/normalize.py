"""Normalization and coercion functions for project-tracker spreadsheet ingestion.

All coercers accept whatever a workbook cell, CSV field or JSON value can hold
(str, int, float, datetime, None) and return the typed value or None/default.
None of them raise on bad input.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any

# Spreadsheet serial for 1970-01-01 under the 1899-12-30 anchor.
EXCEL_UNIX_EPOCH_SERIAL = 25569
# Numbers at or below this are not treated as serial dates (pre-1968).
EXCEL_SERIAL_THRESHOLD = 25000
# First serial past 9999-12-31, the last date spreadsheets accept.
EXCEL_SERIAL_LIMIT = 2958466
SECONDS_PER_DAY = 86400

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d-%b-%Y",
    "%d-%b-%y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %B %Y",
)

_NUMERIC_RE = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")
_CURRENCY_RE = re.compile(r"(₱|\$|PHP|Php|php)")
_FIRST_INT_RE = re.compile(r"\d+")
_ESCAPED_BREAK_RE = re.compile(r"\\[rn]")
_SEPARATOR_RE = re.compile(r"[-/]")
_HEADER_STRIP_RE = re.compile(r"[^A-Za-z0-9_\s]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.replace("\xa0", " ").strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def is_blank(value: Any) -> bool:
    """True for None, empty/whitespace-only strings and NaN."""
    if value is None:
        return True
    if isinstance(value, str):
        return trim(value) is None
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


# ---------------------------------------------------------------------------
# Rule 3: clean_header
# ---------------------------------------------------------------------------

def clean_header(raw: Any) -> str:
    """Reduce a raw spreadsheet header to a lower_snake identifier.

    Literal CR/LF and their escaped two-character forms ("\\r\\n" as text)
    clean identically, so both encodings of one logical header agree.
    '%' becomes the word 'pct' so percent columns stay distinct from the
    amount columns they sit next to.  The result is a fixed point:
    clean_header(clean_header(h)) == clean_header(h).
    """
    v = "" if raw is None else str(raw)
    v = _ESCAPED_BREAK_RE.sub(" ", v)
    v = v.replace("%", " pct ")
    v = _SEPARATOR_RE.sub(" ", v)
    v = _HEADER_STRIP_RE.sub("", v)
    v = re.sub(r"\s+", "_", v)
    v = re.sub(r"_+", "_", v)
    return v.lower().strip("_")


# ---------------------------------------------------------------------------
# Rule 4: coerce_text
# ---------------------------------------------------------------------------

def coerce_text(value: Any) -> str | None:
    """Trimmed text or None.

    Numbers are rendered as text; integral floats lose their '.0' so that
    codes typed into numeric cells ('1023' stored as 1023.0) survive.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (int, datetime, date)):
        return str(value)
    return trim(str(value))


# ---------------------------------------------------------------------------
# Rule 5: coerce_number
# ---------------------------------------------------------------------------

def coerce_number(value: Any, default: float | None = None) -> float | None:
    """Parse a number from a cell, returning default on blank or garbage.

    Strips currency markers, thousands separators and spaces.  Accounting
    negatives '(1,234.50)' become -1234.5 and a trailing '%' divides by 100.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            f = float(value)
        except OverflowError:
            return default
        return f if math.isfinite(f) else default
    v = trim(str(value))
    if v is None:
        return default

    negative = False
    if v.startswith("(") and v.endswith(")"):
        negative = True
        v = v[1:-1]
    percent = v.endswith("%")
    if percent:
        v = v[:-1]
    v = _CURRENCY_RE.sub("", v).replace(",", "").replace(" ", "")
    if not _NUMERIC_RE.match(v):
        return default
    f = float(v)
    if not math.isfinite(f):
        return default
    if percent:
        f = f / 100
    return -f if negative else f


def coerce_int(value: Any, default: int | None = None) -> int | None:
    f = coerce_number(value)
    return default if f is None else int(f)


def coerce_days(value: Any, default: int | None = 0) -> int | None:
    """Duration cells: numeric, or free text such as '90 CD' / '120 days'."""
    f = coerce_number(value)
    if f is not None:
        return int(f)
    v = coerce_text(value)
    if v is None:
        return default
    m = _FIRST_INT_RE.search(v)
    return int(m.group(0)) if m else default


# ---------------------------------------------------------------------------
# Rule 6: coerce_date
# ---------------------------------------------------------------------------

def excel_serial_to_unix(serial: float) -> int:
    """Spreadsheet serial → Unix seconds, anchored at 1899-12-30 UTC.

    The anchor is two days before nominal 1900-01-01: one day because serial
    1 is the first day, one for the phantom 1900-02-29.  Fractional days
    carry the time of day.
    """
    return math.floor((serial - EXCEL_UNIX_EPOCH_SERIAL) * SECONDS_PER_DAY)


def _datetime_to_unix(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return math.floor(value.timestamp())


def parse_date_text(value: str) -> int | None:
    """Parse a calendar-date string to Unix seconds (UTC), or None."""
    v = normalize_space(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return _datetime_to_unix(datetime.strptime(v, fmt))
        except ValueError:
            continue
    try:
        return _datetime_to_unix(datetime.fromisoformat(v.replace("Z", "+00:00")))
    except ValueError:
        return None


def coerce_date(value: Any) -> int | None:
    """Coerce a date cell to Unix seconds.

    Tried in order:
      1. falsy (None, '', 0) → None
      2. datetime/date objects (openpyxl date-formatted cells) and strings
         parseable as a calendar date → Unix seconds
      3. numbers, or strings holding only a number, > 25000 and before
         the serial for 10000-01-01 → spreadsheet serial converted by
         excel_serial_to_unix
    Anything else → None.
    """
    if not value or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _datetime_to_unix(value)
    if isinstance(value, date):
        return _datetime_to_unix(datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        v = trim(value)
        if v is None:
            return None
        if not _NUMERIC_RE.match(v):
            return parse_date_text(v)
        value = float(v)
    if isinstance(value, (int, float)):
        if not EXCEL_SERIAL_THRESHOLD < value < EXCEL_SERIAL_LIMIT:
            return None
        return excel_serial_to_unix(value)
    return None
