"""studio_etl.stores

Idempotent persistence of derived rows into PostgreSQL.

Every function takes an explicit psycopg connection and never commits; the
pipeline owns one transaction per report type, so a failure rolls back that
report type alone.  Rows go out in chunks of ``batch_size`` per
``executemany``.

Conflict rules:
  - rows carrying a source ID upsert on it;
  - rows without one fall back to a partial unique index on a natural key;
  - identity fields (names, emails) are never overwritten with blanks;
  - revenue totals are replaced wholesale per touched month, except months
    in ``revenue_month_lock``.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import psycopg

from studio_etl.revenue import RevenueCategoryTotal
from studio_etl.shared import RunSummary
from studio_etl.transform import (
    AutoRenewRow,
    BySourceId,
    CustomerRow,
    OrderRow,
    RegistrationRow,
)

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass
class StoreResult:
    rows_in: int = 0
    rows_written: int = 0
    rows_ignored: int = 0

    def add(self, rows_in: int, rows_written: int) -> None:
        self.rows_in += rows_in
        self.rows_written += rows_written
        self.rows_ignored += rows_in - rows_written

    def to_dict(self) -> dict[str, int]:
        return {
            "rows_in": self.rows_in,
            "rows_written": self.rows_written,
            "rows_ignored": self.rows_ignored,
        }


@dataclass
class RevenueStoreResult(StoreResult):
    months_written: list[str] = field(default_factory=list)
    months_locked: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _execute_batched(
    conn: psycopg.Connection,
    sql: str,
    params: Sequence[Any],
    batch_size: int,
) -> int:
    """executemany in chunks; returns the total affected row count."""
    written = 0
    with conn.cursor() as cur:
        for chunk in _chunks(params, batch_size):
            cur.executemany(sql, chunk)
            written += max(cur.rowcount, 0)
    return written


def _split_by_identity(rows: Sequence[Any]) -> tuple[list[Any], list[Any]]:
    by_source, by_natural = [], []
    for row in rows:
        (by_source if isinstance(row.identity, BySourceId) else by_natural).append(row)
    return by_source, by_natural


def validate_month(month: str) -> str:
    if not _MONTH_RE.match(month or ""):
        raise ValueError(f"month '{month}' is not in YYYY-MM form")
    return month


# ---------------------------------------------------------------------------
# auto_renew
# ---------------------------------------------------------------------------

_AUTO_RENEW_COLUMNS = """
    (source_pass_id, plan_name, plan_state, plan_price,
     customer_name, customer_email, created_at, canceled_at)
    VALUES (%(source_pass_id)s, %(plan_name)s, %(plan_state)s, %(plan_price)s,
            %(customer_name)s, %(customer_email)s, %(created_at)s, %(canceled_at)s)
"""

_AUTO_RENEW_BY_SOURCE = f"""
    INSERT INTO auto_renew {_AUTO_RENEW_COLUMNS}
    ON CONFLICT (source_pass_id) DO UPDATE SET
      plan_name      = EXCLUDED.plan_name,
      plan_state     = EXCLUDED.plan_state,
      plan_price     = EXCLUDED.plan_price,
      customer_name  = COALESCE(NULLIF(EXCLUDED.customer_name, ''), auto_renew.customer_name),
      customer_email = COALESCE(NULLIF(EXCLUDED.customer_email, ''), auto_renew.customer_email),
      created_at     = COALESCE(EXCLUDED.created_at, auto_renew.created_at),
      canceled_at    = EXCLUDED.canceled_at,
      updated_at     = now()
"""

_AUTO_RENEW_BY_NATURAL_KEY = f"""
    INSERT INTO auto_renew {_AUTO_RENEW_COLUMNS}
    ON CONFLICT (customer_email, plan_name, COALESCE(created_at, '-infinity'::timestamptz))
      WHERE source_pass_id IS NULL
    DO NOTHING
"""


def _auto_renew_params(row: AutoRenewRow) -> dict[str, Any]:
    return {
        "source_pass_id": row.source_pass_id,
        "plan_name": row.plan_name,
        "plan_state": row.plan_state,
        "plan_price": row.plan_price,
        "customer_name": row.customer_name,
        "customer_email": row.customer_email,
        "created_at": row.created_at,
        "canceled_at": row.canceled_at,
    }


def save_auto_renews(
    conn: psycopg.Connection,
    rows: Sequence[AutoRenewRow],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> StoreResult:
    result = StoreResult()
    by_source, by_natural = _split_by_identity(rows)
    for sql, group in ((_AUTO_RENEW_BY_SOURCE, by_source),
                       (_AUTO_RENEW_BY_NATURAL_KEY, by_natural)):
        if group:
            written = _execute_batched(
                conn, sql, [_auto_renew_params(r) for r in group], batch_size
            )
            result.add(len(group), written)
    log.info("auto_renew: %d in, %d written, %d ignored",
             result.rows_in, result.rows_written, result.rows_ignored)
    return result


# ---------------------------------------------------------------------------
# order_row
# ---------------------------------------------------------------------------

_ORDER_UPSERT = """
    INSERT INTO order_row
      (source_order_id, created_at, customer_name, customer_email,
       order_type, payment, total)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (source_order_id) DO UPDATE SET
      created_at     = COALESCE(EXCLUDED.created_at, order_row.created_at),
      customer_name  = COALESCE(NULLIF(EXCLUDED.customer_name, ''), order_row.customer_name),
      customer_email = COALESCE(NULLIF(EXCLUDED.customer_email, ''), order_row.customer_email),
      order_type     = EXCLUDED.order_type,
      payment        = EXCLUDED.payment,
      total          = EXCLUDED.total,
      updated_at     = now()
"""


def save_orders(
    conn: psycopg.Connection,
    rows: Sequence[OrderRow],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> StoreResult:
    result = StoreResult()
    if rows:
        params = [
            (r.source_order_id, r.created_at, r.customer_name, r.customer_email,
             r.type, r.payment, r.total)
            for r in rows
        ]
        result.add(len(rows), _execute_batched(conn, _ORDER_UPSERT, params, batch_size))
    return result


# ---------------------------------------------------------------------------
# registration
# ---------------------------------------------------------------------------

_REGISTRATION_COLUMNS = """
    (source_registration_id, event_name, performance_starts_at, location_name,
     teacher_name, first_name, last_name, email, attended_at, state,
     pass_name, subscription_flag, revenue)
    VALUES (%(source_registration_id)s, %(event_name)s, %(performance_starts_at)s,
            %(location_name)s, %(teacher_name)s, %(first_name)s, %(last_name)s,
            %(email)s, %(attended_at)s, %(state)s, %(pass_name)s,
            %(subscription_flag)s, %(revenue)s)
"""

_REGISTRATION_UPDATE = """
      event_name            = EXCLUDED.event_name,
      performance_starts_at = EXCLUDED.performance_starts_at,
      location_name         = EXCLUDED.location_name,
      teacher_name          = EXCLUDED.teacher_name,
      state                 = EXCLUDED.state,
      pass_name             = EXCLUDED.pass_name,
      subscription_flag     = EXCLUDED.subscription_flag,
      revenue               = EXCLUDED.revenue,
      first_name = COALESCE(NULLIF(EXCLUDED.first_name, ''), registration.first_name),
      last_name  = COALESCE(NULLIF(EXCLUDED.last_name, ''), registration.last_name),
      email      = COALESCE(NULLIF(EXCLUDED.email, ''), registration.email),
      attended_at = COALESCE(EXCLUDED.attended_at, registration.attended_at),
      updated_at = now()
"""

_REGISTRATION_BY_SOURCE = f"""
    INSERT INTO registration {_REGISTRATION_COLUMNS}
    ON CONFLICT (source_registration_id) DO UPDATE SET {_REGISTRATION_UPDATE}
"""

_REGISTRATION_BY_NATURAL_KEY = f"""
    INSERT INTO registration {_REGISTRATION_COLUMNS}
    ON CONFLICT (email, COALESCE(attended_at, '-infinity'::timestamptz))
      WHERE source_registration_id IS NULL
    DO UPDATE SET {_REGISTRATION_UPDATE}
"""


def _registration_params(row: RegistrationRow) -> dict[str, Any]:
    return {
        "source_registration_id": row.source_registration_id,
        "event_name": row.event_name,
        "performance_starts_at": row.performance_starts_at,
        "location_name": row.location_name,
        "teacher_name": row.teacher_name,
        "first_name": row.first_name,
        "last_name": row.last_name,
        "email": row.email,
        "attended_at": row.attended_at,
        "state": row.state,
        "pass_name": row.pass_name,
        "subscription_flag": row.subscription_flag,
        "revenue": row.revenue,
    }


def save_registrations(
    conn: psycopg.Connection,
    rows: Sequence[RegistrationRow],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> StoreResult:
    result = StoreResult()
    by_source, by_natural = _split_by_identity(rows)
    for sql, group in ((_REGISTRATION_BY_SOURCE, by_source),
                       (_REGISTRATION_BY_NATURAL_KEY, by_natural)):
        if group:
            written = _execute_batched(
                conn, sql, [_registration_params(r) for r in group], batch_size
            )
            result.add(len(group), written)
    return result


# ---------------------------------------------------------------------------
# customer
# ---------------------------------------------------------------------------

# Aggregate placeholders (None) insert as 0 and leave stored values alone
_CUSTOMER_UPSERT = """
    INSERT INTO customer
      (email, name, role, created_at, order_count, visit_count, total_spend)
    VALUES (%(email)s, %(name)s, %(role)s, %(created_at)s,
            COALESCE(%(order_count)s::integer, 0),
            COALESCE(%(visit_count)s::integer, 0),
            COALESCE(%(total_spend)s::numeric, 0))
    ON CONFLICT (email) DO UPDATE SET
      name        = COALESCE(NULLIF(EXCLUDED.name, ''), customer.name),
      role        = COALESCE(NULLIF(EXCLUDED.role, ''), customer.role),
      created_at  = COALESCE(EXCLUDED.created_at, customer.created_at),
      order_count = COALESCE(%(order_count)s::integer, customer.order_count),
      visit_count = COALESCE(%(visit_count)s::integer, customer.visit_count),
      total_spend = COALESCE(%(total_spend)s::numeric, customer.total_spend),
      updated_at  = now()
"""


def save_customers(
    conn: psycopg.Connection,
    rows: Sequence[CustomerRow],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> StoreResult:
    result = StoreResult()
    if rows:
        params = [
            {
                "email": r.email,
                "name": r.name,
                "role": r.role,
                "created_at": r.created_at,
                "order_count": r.order_count,
                "visit_count": r.visit_count,
                "total_spend": r.total_spend,
            }
            for r in rows
        ]
        result.add(len(rows), _execute_batched(conn, _CUSTOMER_UPSERT, params, batch_size))
    log.info("customer: %d in, %d written", result.rows_in, result.rows_written)
    return result


# ---------------------------------------------------------------------------
# revenue_category_total + month locks
# ---------------------------------------------------------------------------

_REVENUE_INSERT = """
    INSERT INTO revenue_category_total
      (month, category, revenue, union_fees, payment_fees, other_fees,
       refunded, union_fees_refunded)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
"""


def locked_months(conn: psycopg.Connection, months: Sequence[str]) -> set[str]:
    if not months:
        return set()
    rows = conn.execute(
        "SELECT month FROM revenue_month_lock WHERE month = ANY(%s)",
        (list(months),),
    ).fetchall()
    return {r[0] for r in rows}


def is_month_locked(conn: psycopg.Connection, month: str) -> bool:
    return bool(locked_months(conn, [validate_month(month)]))


def lock_month(conn: psycopg.Connection, month: str, notes: str | None = None) -> None:
    """Mark a month as authoritative; later runs will not recompute it."""
    conn.execute(
        """
        INSERT INTO revenue_month_lock (month, notes)
        VALUES (%s, %s)
        ON CONFLICT (month) DO UPDATE SET
          notes = COALESCE(EXCLUDED.notes, revenue_month_lock.notes)
        """,
        (validate_month(month), notes),
    )
    log.info("revenue month %s locked", month)


def replace_revenue_totals(
    conn: psycopg.Connection,
    totals: Sequence[RevenueCategoryTotal],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> RevenueStoreResult:
    """Full replace of every touched, unlocked month."""
    result = RevenueStoreResult()
    by_month: dict[str, list[RevenueCategoryTotal]] = {}
    for t in totals:
        by_month.setdefault(t.month, []).append(t)

    locked = locked_months(conn, sorted(by_month))
    for month in sorted(by_month):
        month_rows = by_month[month]
        if month in locked:
            result.months_locked.append(month)
            result.add(len(month_rows), 0)
            log.info("revenue month %s is locked; %d totals not written", month, len(month_rows))
            continue
        conn.execute("DELETE FROM revenue_category_total WHERE month = %s", (month,))
        params = [
            (t.month, t.category, t.revenue, t.union_fees, t.payment_fees,
             t.other_fees, t.refunded, t.union_fees_refunded)
            for t in month_rows
        ]
        result.add(len(month_rows), _execute_batched(conn, _REVENUE_INSERT, params, batch_size))
        result.months_written.append(month)
    log.info(
        "revenue_category_total: %d months replaced, %d locked",
        len(result.months_written), len(result.months_locked),
    )
    return result


# ---------------------------------------------------------------------------
# pipeline_run
# ---------------------------------------------------------------------------

def save_pipeline_run(
    conn: psycopg.Connection,
    summary: RunSummary,
    mode: str,
    window_start: date | None = None,
    window_end: date | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO pipeline_run
          (run_id, mode, started_at, finished_at, dry_run, success,
           window_start, window_end, summary)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        ON CONFLICT (run_id) DO UPDATE SET
          finished_at = EXCLUDED.finished_at,
          success     = EXCLUDED.success,
          summary     = EXCLUDED.summary
        """,
        (
            summary.run_id,
            mode,
            summary.started_at,
            summary.finished_at,
            summary.dry_run,
            summary.success,
            window_start,
            window_end,
            json.dumps(summary.to_dict(), default=str),
        ),
    )
