"""Unit tests for studio_etl.watermark fetch-window computation."""

from __future__ import annotations

from datetime import date, datetime

from studio_etl.watermark import FetchWindow, Watermark, build_fetch_window

FLOOR = date(2024, 1, 1)


def _wm(high_water: date) -> Watermark:
    return Watermark(
        report_type="orders",
        last_fetched_at=datetime(2026, 2, 11, 6, 0),
        high_water_date=high_water,
        record_count=10,
    )


class TestBuildFetchWindow:
    def test_first_run_starts_at_floor(self):
        window = build_fetch_window(None, date(2026, 2, 18), FLOOR)
        assert window == FetchWindow(start=FLOOR, end=date(2026, 2, 18))

    def test_incremental_overlaps_one_day(self):
        window = build_fetch_window(_wm(date(2026, 2, 10)), date(2026, 2, 18), FLOOR)
        assert window.start == date(2026, 2, 9)
        assert window.end == date(2026, 2, 18)

    def test_overlap_crosses_month_boundary(self):
        window = build_fetch_window(_wm(date(2026, 3, 1)), date(2026, 3, 5), FLOOR)
        assert window.start == date(2026, 2, 28)

    def test_start_never_after_today(self):
        window = build_fetch_window(_wm(date(2026, 3, 10)), date(2026, 3, 5), FLOOR)
        assert window.start == date(2026, 3, 5)
        assert window.start <= window.end

    def test_align_to_month(self):
        window = build_fetch_window(
            _wm(date(2026, 2, 10)), date(2026, 2, 18), FLOOR, align_to_month=True
        )
        assert window.start == date(2026, 2, 1)

    def test_align_to_month_on_first_run(self):
        window = build_fetch_window(
            None, date(2026, 2, 18), date(2024, 1, 15), align_to_month=True
        )
        assert window.start == date(2024, 1, 1)


class TestUnionRange:
    def test_format_has_no_zero_padding(self):
        window = FetchWindow(start=date(2026, 2, 9), end=date(2026, 2, 18))
        assert window.to_union_range() == "2/9/2026 - 2/18/2026"

    def test_year_boundary(self):
        window = FetchWindow(start=date(2025, 12, 31), end=date(2026, 1, 1))
        assert window.to_union_range() == "12/31/2025 - 1/1/2026"
