"""Unit tests for studio_etl.normalize."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from studio_etl.normalize import (
    full_name,
    month_key,
    normalize_email,
    normalize_space,
    parse_bool,
    parse_date,
    parse_int,
    parse_money,
    parse_ts,
    round_cents,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# normalize_space / normalize_email / full_name
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Power   Flow\tYoga") == "Power Flow Yoga"

    def test_none(self):
        assert normalize_space(None) is None


class TestNormalizeEmail:
    def test_lowercases_and_trims(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    def test_blank_is_none(self):
        assert normalize_email("  ") is None


class TestFullName:
    def test_joins_parts(self):
        assert full_name("  Ada ", "Lovelace") == "Ada Lovelace"

    def test_missing_first(self):
        assert full_name(None, "Lovelace") == "Lovelace"

    def test_both_missing_is_blank(self):
        assert full_name(None, "") == ""


# ---------------------------------------------------------------------------
# parse_ts / parse_date / month_key
# ---------------------------------------------------------------------------

class TestParseTs:
    def test_iso_with_z(self):
        assert parse_ts("2025-01-15T10:30:00Z") == datetime(
            2025, 1, 15, 10, 30, tzinfo=timezone.utc
        )

    def test_iso_space_separated(self):
        assert parse_ts("2025-01-15 10:30:00") == datetime(2025, 1, 15, 10, 30)

    def test_iso_date_only(self):
        assert parse_ts("2025-01-15") == datetime(2025, 1, 15)

    def test_us_date(self):
        assert parse_ts("1/15/2025") == datetime(2025, 1, 15)

    def test_us_datetime(self):
        assert parse_ts("01/15/2025 18:05") == datetime(2025, 1, 15, 18, 5)

    def test_garbage_is_none(self):
        assert parse_ts("not a date") is None

    def test_blank_is_none(self):
        assert parse_ts("") is None


class TestParseDate:
    def test_date_portion(self):
        assert parse_date("2026-02-10T23:59:00") == date(2026, 2, 10)

    def test_none(self):
        assert parse_date(None) is None


class TestMonthKey:
    def test_month(self):
        assert month_key("2026-02-10T08:00:00") == "2026-02"

    def test_unparseable(self):
        assert month_key("soon") is None


# ---------------------------------------------------------------------------
# parse_money / round_cents
# ---------------------------------------------------------------------------

class TestParseMoney:
    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.50", Decimal("1234.50")),
        ("-199.00", Decimal("-199.00")),
        (" 12 ", Decimal("12")),
        ("", Decimal("0")),
        (None, Decimal("0")),
        ("abc", Decimal("0")),
        ("NaN", Decimal("0")),
        ("Infinity", Decimal("0")),
        ("1e30", Decimal("0")),
        ("10000000000", Decimal("0")),
        ("9999999999.99", Decimal("9999999999.99")),
    ])
    def test_values(self, raw, expected):
        assert parse_money(raw) == expected


class TestRoundCents:
    def test_half_up(self):
        assert round_cents(Decimal("2.345")) == Decimal("2.35")

    def test_below_half(self):
        assert round_cents(Decimal("2.344")) == Decimal("2.34")

    def test_negative_half_rounds_away_from_zero(self):
        assert round_cents(Decimal("-2.345")) == Decimal("-2.35")

    @pytest.mark.parametrize("value", [Decimal("1e30"), Decimal("-1e10"), Decimal("NaN")])
    def test_out_of_range_is_zero(self, value):
        assert round_cents(value) == Decimal("0.00")


# ---------------------------------------------------------------------------
# parse_bool / parse_int
# ---------------------------------------------------------------------------

class TestParseBool:
    def test_true_any_case(self):
        assert parse_bool("TRUE") is True
        assert parse_bool(" true ") is True

    def test_anything_else_false(self):
        assert parse_bool("yes") is False
        assert parse_bool("1") is False
        assert parse_bool(None) is False


class TestParseInt:
    def test_plain(self):
        assert parse_int("3") == 3

    def test_float_text(self):
        assert parse_int("3.0") == 3

    def test_blank_and_junk(self):
        assert parse_int("") == 0
        assert parse_int("x") == 0
