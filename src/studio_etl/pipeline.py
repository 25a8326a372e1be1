"""studio_etl.pipeline

One import run over an extracted export directory.

Order of work:
  1. check the export layout and build the lookup index (no DB work yet)
  2. per report type: transform, persist, commit (or roll back on failure)
  3. revenue attribution in its own streaming pass over orders and refunds
  4. advance each successful report type's watermark
  5. advance ``zip_export`` when every report type succeeded
  6. record the run in ``pipeline_run``

A failure in one report type rolls back that report type only; the run
carries on and the summary records the error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

import psycopg

from studio_etl.config import PipelineConfig
from studio_etl.lookup_index import LookupIndex
from studio_etl.raw_tables import ExportDirectory
from studio_etl.revenue import compute_revenue_by_category
from studio_etl.shared import (
    STATUS_EMPTY,
    STATUS_FAILED,
    STATUS_OK,
    EntityOutcome,
    RejectWriter,
    RunSummary,
    utcnow,
)
from studio_etl.stores import (
    replace_revenue_totals,
    save_auto_renews,
    save_customers,
    save_orders,
    save_pipeline_run,
    save_registrations,
)
from studio_etl.transform import (
    AutoRenewCounters,
    CustomerCounters,
    OrderCounters,
    RegistrationCounters,
    log_referential_misses,
    transform_auto_renews,
    transform_customers,
    transform_orders_batch,
    transform_registrations_batch,
)
from studio_etl.watermark import (
    REPORT_AUTO_RENEWS,
    REPORT_CUSTOMERS,
    REPORT_ORDERS,
    REPORT_REGISTRATIONS,
    REPORT_REVENUE_CATEGORIES,
    REPORT_ZIP_EXPORT,
    set_watermark,
)

log = logging.getLogger(__name__)

MODE_ZIP_IMPORT = "zip_import"


@dataclass
class _StepResult:
    persisted: int
    store: dict[str, int]
    high_water_date: date | None = None


def _latest(current: date | None, *candidates: datetime | date | None) -> date | None:
    for c in candidates:
        if c is None:
            continue
        d = c.date() if isinstance(c, datetime) else c
        if current is None or d > current:
            current = d
    return current


class _Rejects:
    """One lazily opened RejectWriter per report type."""

    def __init__(self, rejects_dir: Path | None) -> None:
        self._dir = rejects_dir
        self._writers: dict[str, RejectWriter] = {}

    def for_entity(self, name: str) -> RejectWriter | None:
        if self._dir is None:
            return None
        if name not in self._writers:
            self._writers[name] = RejectWriter(self._dir / f"union_{name}_rejects.csv")
        return self._writers[name]

    def close(self) -> None:
        for w in self._writers.values():
            w.close()


# ---------------------------------------------------------------------------
# Per-report-type steps
# ---------------------------------------------------------------------------

def _step_auto_renews(conn, index, config, rejects, counters: AutoRenewCounters) -> _StepResult:
    rows = transform_auto_renews(index, counters, rejects, config.pass_state_map)
    result = save_auto_renews(conn, rows, config.statement_batch_size)
    high_water = None
    for r in rows:
        high_water = _latest(high_water, r.created_at, r.canceled_at)
    return _StepResult(result.rows_written, result.to_dict(), high_water)


def _step_orders(conn, source, index, config, counters: OrderCounters) -> _StepResult:
    persisted = 0
    high_water = None
    for batch in source.iter_order_batches(config.read_batch_size):
        rows = transform_orders_batch(batch, index, counters)
        persisted += save_orders(conn, rows, config.statement_batch_size).rows_written
        for r in rows:
            high_water = _latest(high_water, r.created_at)
    log_referential_misses("orders", counters.processed, counters.misses())
    log.info("orders: %d processed, %d written", counters.processed, persisted)
    return _StepResult(persisted, {}, high_water)


def _step_registrations(conn, source, index, config, counters: RegistrationCounters) -> _StepResult:
    persisted = 0
    high_water = None
    for batch in source.iter_registration_batches(config.read_batch_size):
        rows = transform_registrations_batch(batch, index, counters)
        persisted += save_registrations(conn, rows, config.statement_batch_size).rows_written
        for r in rows:
            high_water = _latest(high_water, r.attended_at or r.performance_starts_at)
    log_referential_misses("registrations", counters.processed, counters.misses())
    log.info("registrations: %d processed, %d written", counters.processed, persisted)
    return _StepResult(persisted, {}, high_water)


def _step_customers(conn, index, config, rejects, counters: CustomerCounters) -> _StepResult:
    rows = transform_customers(index, counters, rejects)
    result = save_customers(conn, rows, config.statement_batch_size)
    high_water = None
    for r in rows:
        high_water = _latest(high_water, r.created_at)
    return _StepResult(result.rows_written, result.to_dict(), high_water)


# ---------------------------------------------------------------------------
# Transaction + watermark handling
# ---------------------------------------------------------------------------

def _finish(conn: psycopg.Connection, dry_run: bool) -> None:
    if dry_run:
        conn.rollback()
    else:
        conn.commit()


def _advance_watermark(
    conn: psycopg.Connection,
    summary: RunSummary,
    report_type: str,
    high_water: date | None,
    record_count: int,
) -> None:
    if summary.dry_run or high_water is None:
        return
    try:
        wm = set_watermark(conn, report_type, high_water, record_count,
                           notes=f"run {summary.run_id}")
        conn.commit()
    except Exception as exc:
        conn.rollback()
        log.error("watermark %s not advanced: %s", report_type, exc)
        summary.watermark_errors.append(f"{report_type}: {exc}")
        return
    summary.watermarks_advanced[report_type] = wm.high_water_date.isoformat()


StepCounters = AutoRenewCounters | OrderCounters | RegistrationCounters | CustomerCounters


def _outcome(counters: StepCounters, **kw: Any) -> EntityOutcome:
    return EntityOutcome(
        processed=counters.processed,
        skipped=counters.skipped(),
        details=counters.to_dict(),
        **kw,
    )


def _run_step(
    conn: psycopg.Connection,
    summary: RunSummary,
    report_type: str,
    counters: StepCounters,
    step: Callable[[], _StepResult],
) -> _StepResult | None:
    """Run one report type in its own transaction.

    The counters live outside ``step`` so a failed report type still reports
    how far it got.
    """
    try:
        result = step()
        _finish(conn, summary.dry_run)
    except Exception as exc:
        conn.rollback()
        log.error("%s failed, rolled back: %s", report_type, exc, exc_info=True)
        summary.entities[report_type] = _outcome(counters, status=STATUS_FAILED, error=str(exc))
        return None
    outcome = _outcome(counters, persisted=result.persisted)
    outcome.details.update(result.store)
    outcome.status = STATUS_OK if outcome.processed else STATUS_EMPTY
    summary.entities[report_type] = outcome
    if outcome.status == STATUS_OK:
        _advance_watermark(conn, summary, report_type, result.high_water_date, outcome.persisted)
    return result


def _run_revenue(
    conn: psycopg.Connection,
    summary: RunSummary,
    source: ExportDirectory,
    index: LookupIndex,
    config: PipelineConfig,
    rejects: RejectWriter | None,
) -> date | None:
    rev = summary.revenue
    try:
        attribution = compute_revenue_by_category(
            index,
            source.iter_order_batches(config.read_batch_size),
            source.iter_refund_batches(config.read_batch_size),
            eligible_order_states=config.eligible_order_states,
            excluded_refund_states=config.excluded_refund_states,
            sample_size=config.uncategorized_sample_size,
            rejects=rejects,
        )
        rev.computed = attribution.computed
        rev.skip_reason = attribution.skip_reason
        rev.counters = attribution.counters.to_dict()
        rev.uncategorized_sample = list(attribution.counters.uncategorized_sample)
        if not attribution.computed:
            rev.status = STATUS_EMPTY
            summary.warnings.append(f"revenue not computed: {attribution.skip_reason}")
            return None
        stored = replace_revenue_totals(conn, attribution.totals, config.statement_batch_size)
        _finish(conn, summary.dry_run)
    except Exception as exc:
        conn.rollback()
        log.error("revenue_categories failed, rolled back: %s", exc, exc_info=True)
        rev.status = STATUS_FAILED
        rev.error = str(exc)
        return None
    rev.months_written = stored.months_written
    rev.months_locked = stored.months_locked
    rev.persisted = stored.rows_written
    rev.status = STATUS_OK if attribution.totals else STATUS_EMPTY
    if rev.status == STATUS_OK:
        _advance_watermark(conn, summary, REPORT_REVENUE_CATEGORIES,
                           attribution.high_water_date, stored.rows_written)
    return attribution.high_water_date


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_export_import(
    conn: psycopg.Connection,
    source: ExportDirectory,
    run_id: str,
    config: PipelineConfig | None = None,
    dry_run: bool = False,
    rejects_dir: Path | None = None,
) -> RunSummary:
    """Import one export directory; always returns a summary.

    Raises ExportFileError before any DB work when the export layout is
    unusable.  Every other failure is recorded in the summary.
    """
    config = config or PipelineConfig()
    summary = RunSummary(run_id=run_id, started_at=utcnow(), dry_run=dry_run)

    source.validate_layout()
    index = LookupIndex.build(source.load_reference_tables())

    rejects = _Rejects(rejects_dir)
    high_waters: list[date | None] = []
    try:
        steps: Iterable[tuple[str, StepCounters, Callable[[StepCounters], _StepResult]]] = (
            (REPORT_AUTO_RENEWS, AutoRenewCounters(),
             lambda c: _step_auto_renews(conn, index, config,
                                         rejects.for_entity(REPORT_AUTO_RENEWS), c)),
            (REPORT_ORDERS, OrderCounters(),
             lambda c: _step_orders(conn, source, index, config, c)),
            (REPORT_REGISTRATIONS, RegistrationCounters(),
             lambda c: _step_registrations(conn, source, index, config, c)),
            (REPORT_CUSTOMERS, CustomerCounters(),
             lambda c: _step_customers(conn, index, config,
                                       rejects.for_entity(REPORT_CUSTOMERS), c)),
        )
        for report_type, counters, step in steps:
            log.info("Importing %s", report_type)
            result = _run_step(conn, summary, report_type, counters,
                               lambda: step(counters))
            if result is not None:
                high_waters.append(result.high_water_date)

        log.info("Attributing revenue")
        high_waters.append(_run_revenue(
            conn, summary, source, index, config,
            rejects.for_entity(REPORT_REVENUE_CATEGORIES),
        ))
    finally:
        rejects.close()

    if not summary.failed_entities:
        zip_high_water = None
        for hw in high_waters:
            zip_high_water = _latest(zip_high_water, hw)
        total = sum(o.persisted for o in summary.entities.values()) + summary.revenue.persisted
        _advance_watermark(conn, summary, REPORT_ZIP_EXPORT, zip_high_water, total)

    summary.finished_at = utcnow()
    if not dry_run:
        try:
            save_pipeline_run(conn, summary, MODE_ZIP_IMPORT)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            log.error("pipeline_run not recorded: %s", exc)
            summary.warnings.append(f"pipeline_run not recorded: {exc}")
    return summary
