"""Normalization functions for studio export ingestion.

All functions accept str | None and return the appropriate type or None,
except the money/boolean/int parsers, which always return a value because
the export leaves those cells blank rather than omitting them.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

log = logging.getLogger(__name__)

_CENT = Decimal("0.01")
# numeric(12,2) holds magnitudes below 10^10
MONEY_LIMIT = Decimal("1e10")
_MONEY_STRIP = re.compile(r"[$,\s]")

# Fallback layouts seen in export cells that datetime.fromisoformat rejects
_TS_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S %Z",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
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


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: full_name
# ---------------------------------------------------------------------------

def full_name(first: str | None, last: str | None) -> str:
    """Join first/last name parts; blank string when both are missing."""
    parts = [p for p in (normalize_space(first), normalize_space(last)) if p]
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rule 5: parse_ts
# ---------------------------------------------------------------------------

def parse_ts(value: str | None) -> datetime | None:
    """Parse an export timestamp, returning None when nothing matches.

    ISO-8601 (with or without offset, ``T`` or space separated, trailing
    ``Z``) is tried first, then the US-style layouts the platform uses in
    admin-report cells.  The wall-clock value is kept as written; no
    timezone conversion happens here.
    """
    v = trim(value)
    if v is None:
        return None
    iso = v[:-1] + "+00:00" if v.endswith("Z") else v
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _TS_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: str | None) -> date | None:
    """Return the date portion of a parsed timestamp, or None."""
    ts = parse_ts(value)
    return ts.date() if ts is not None else None


def month_key(value: str | None) -> str | None:
    """Return 'YYYY-MM' for a parseable timestamp, else None."""
    ts = parse_ts(value)
    return ts.strftime("%Y-%m") if ts is not None else None


# ---------------------------------------------------------------------------
# Rule 6: parse_money
# ---------------------------------------------------------------------------

def parse_money(value: str | None) -> Decimal:
    """Parse a money cell ('$1,234.50', '-199.00', '') into a Decimal.

    Blank or unparseable cells are 0, matching how the export leaves unused
    fee columns empty.
    """
    v = trim(value)
    if v is None:
        return Decimal("0")
    try:
        amount = Decimal(_MONEY_STRIP.sub("", v))
    except InvalidOperation:
        return Decimal("0")
    if not amount.is_finite():
        return Decimal("0")
    if abs(amount) >= MONEY_LIMIT:
        log.warning("Money value out of range, treated as 0: %s", v)
        return Decimal("0")
    return amount


def round_cents(value: Decimal) -> Decimal:
    """Round half-up to cent precision.

    Non-finite or out-of-range values round to 0 rather than raising.
    """
    if not value.is_finite() or abs(value) >= MONEY_LIMIT:
        log.warning("Money value out of range, rounded to 0: %s", value)
        return Decimal("0.00")
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Rule 7: parse_bool / parse_int
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool:
    """Only the literal 'true' (any case) is True."""
    v = trim(value)
    return v is not None and v.lower() == "true"


def parse_int(value: str | None) -> int:
    """Parse an integer cell, accepting '3.0'; blank or junk is 0."""
    v = trim(value)
    if v is None:
        return 0
    try:
        return int(Decimal(v))
    except (InvalidOperation, ValueError, OverflowError):
        return 0
