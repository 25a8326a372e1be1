"""studio_etl.watermark

Per-report-type fetch watermarks and the fetch windows derived from them.

A watermark records the latest data date a report type has absorbed.  The
next fetch starts one day before it, so a day that was only partly exported
last time is fetched again; the idempotent stores make that overlap
harmless.  ``high_water_date`` never moves backward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import psycopg

log = logging.getLogger(__name__)

REPORT_AUTO_RENEWS = "auto_renews"
REPORT_ORDERS = "orders"
REPORT_REGISTRATIONS = "registrations"
REPORT_CUSTOMERS = "customers"
REPORT_REVENUE_CATEGORIES = "revenue_categories"
REPORT_ZIP_EXPORT = "zip_export"

REPORT_TYPES = (
    REPORT_AUTO_RENEWS,
    REPORT_ORDERS,
    REPORT_REGISTRATIONS,
    REPORT_CUSTOMERS,
    REPORT_REVENUE_CATEGORIES,
    REPORT_ZIP_EXPORT,
)

OVERLAP = timedelta(days=1)


@dataclass(frozen=True)
class Watermark:
    report_type: str
    last_fetched_at: datetime
    high_water_date: date
    record_count: int
    notes: str | None = None


@dataclass(frozen=True)
class FetchWindow:
    start: date
    end: date

    def to_union_range(self) -> str:
        """Render as the export platform's ``M/D/YYYY - M/D/YYYY`` range."""
        return f"{_us_date(self.start)} - {_us_date(self.end)}"


def _us_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


# ---------------------------------------------------------------------------
# Window computation
# ---------------------------------------------------------------------------

def build_fetch_window(
    watermark: Watermark | None,
    today: date,
    floor_date: date,
    align_to_month: bool = False,
) -> FetchWindow:
    """Window for the next fetch of one report type.

    Never fetched → ``[floor_date, today]``; otherwise
    ``[high_water_date - 1 day, today]``.  The start is clamped to ``today``
    and, with ``align_to_month``, snapped back to the first of its month.
    """
    if watermark is None:
        start = floor_date
    else:
        start = watermark.high_water_date - OVERLAP
    if start > today:
        start = today
    if align_to_month:
        start = start.replace(day=1)
    return FetchWindow(start=start, end=today)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

_SELECT = """
    SELECT report_type, last_fetched_at, high_water_date, record_count, notes
    FROM fetch_watermark
"""


def _row_to_watermark(row: tuple) -> Watermark:
    return Watermark(
        report_type=row[0],
        last_fetched_at=row[1],
        high_water_date=row[2],
        record_count=row[3],
        notes=row[4],
    )


def get_watermark(conn: psycopg.Connection, report_type: str) -> Watermark | None:
    row = conn.execute(_SELECT + " WHERE report_type = %s", (report_type,)).fetchone()
    return _row_to_watermark(row) if row else None


def get_all_watermarks(conn: psycopg.Connection) -> list[Watermark]:
    rows = conn.execute(_SELECT + " ORDER BY report_type").fetchall()
    return [_row_to_watermark(r) for r in rows]


def set_watermark(
    conn: psycopg.Connection,
    report_type: str,
    high_water_date: date,
    record_count: int,
    notes: str | None = None,
) -> Watermark:
    """Upsert a watermark; an earlier ``high_water_date`` leaves the stored one.

    Does not commit; the caller owns the transaction.
    """
    row = conn.execute(
        """
        INSERT INTO fetch_watermark
            (report_type, last_fetched_at, high_water_date, record_count, notes)
        VALUES (%s, now(), %s, %s, %s)
        ON CONFLICT (report_type) DO UPDATE SET
            last_fetched_at = EXCLUDED.last_fetched_at,
            high_water_date = GREATEST(fetch_watermark.high_water_date,
                                       EXCLUDED.high_water_date),
            record_count = EXCLUDED.record_count,
            notes = EXCLUDED.notes
        RETURNING report_type, last_fetched_at, high_water_date, record_count, notes
        """,
        (report_type, high_water_date, record_count, notes),
    ).fetchone()
    wm = _row_to_watermark(row)
    log.info(
        "watermark %s: high_water_date=%s record_count=%d",
        report_type, wm.high_water_date, record_count,
    )
    return wm
