"""studio_etl.import_union_export

CLI entrypoint for the studio export import.

Modes (--mode):
  zip_import    — import a directory of extracted export CSVs (default)
  fetch_window  — print the next fetch window for a report type
  watermarks    — list every report type's watermark
  lock_month    — mark a revenue month as authoritative

Usage (zip_import):
    studio-etl \\
        --mode zip_import \\
        --db-dsn "$DB_DSN" \\
        --csv-dir "artifacts/exports/2026-02-10" \\
        --rejects-dir "artifacts/rejects"

Usage (fetch_window):
    studio-etl --mode fetch_window --report-type revenue_categories

Usage (lock_month):
    studio-etl --mode lock_month --month 2025-11 --notes "uploaded from accountant"
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import date
from pathlib import Path

import click
import psycopg

from studio_etl.config import (
    DEFAULT_CONFIG_PATH,
    ConfigValidationError,
    PipelineConfig,
    load_pipeline_config,
)
from studio_etl.pipeline import MODE_ZIP_IMPORT, run_export_import
from studio_etl.raw_tables import ExportDirectory, ExportFileError
from studio_etl.shared import build_run_report, write_run_report
from studio_etl.stores import lock_month
from studio_etl.watermark import (
    REPORT_REVENUE_CATEGORIES,
    REPORT_TYPES,
    build_fetch_window,
    get_all_watermarks,
    get_watermark,
)


def _load_config(config_path: Path, run_id: str) -> PipelineConfig:
    if not config_path.exists() and config_path == DEFAULT_CONFIG_PATH:
        click.echo(f"[{run_id}] No {config_path}; using built-in defaults")
        return PipelineConfig()
    try:
        return load_pipeline_config(config_path)
    except (ConfigValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: config {config_path}: {exc}", err=True)
        sys.exit(1)


@click.command()
@click.option(
    "--mode",
    default=MODE_ZIP_IMPORT,
    type=click.Choice([MODE_ZIP_IMPORT, "fetch_window", "watermarks", "lock_month"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option(
    "--config",
    "config_path",
    default=str(DEFAULT_CONFIG_PATH),
    show_default=True,
    type=click.Path(),
    help="Pipeline YAML config",
)
# zip_import flags
@click.option("--csv-dir", default=None, type=click.Path(), help="[zip_import] Directory of extracted export CSVs")
@click.option("--dry-run", is_flag=True, default=False, help="[zip_import] Roll back every report type")
@click.option(
    "--rejects-dir",
    default="./artifacts/rejects",
    show_default=True,
    type=click.Path(),
    help="[zip_import] Directory for per-report-type rejects CSVs",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
# fetch_window flags
@click.option(
    "--report-type",
    default=REPORT_REVENUE_CATEGORIES,
    type=click.Choice(list(REPORT_TYPES)),
    show_default=True,
    help="[fetch_window] Report type to compute the window for",
)
@click.option(
    "--today",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="[fetch_window] Override today's date (YYYY-MM-DD)",
)
# lock_month flags
@click.option("--month", default=None, help="[lock_month] Month to lock (YYYY-MM)")
@click.option("--notes", default=None, help="[lock_month] Why the month is locked")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    config_path: str,
    csv_dir: str | None,
    dry_run: bool,
    rejects_dir: str,
    run_id: str | None,
    report_type: str,
    today,
    month: str | None,
    notes: str | None,
    log_level: str,
) -> None:
    """Studio export ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    config = _load_config(Path(config_path), run_id)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == MODE_ZIP_IMPORT:
        if not csv_dir:
            click.echo(f"[{run_id}] FATAL: --csv-dir is required for zip_import", err=True)
            sys.exit(1)
        try:
            source = ExportDirectory(Path(csv_dir))
            source.validate_layout()
        except ExportFileError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)

        conn = psycopg.connect(db_dsn, autocommit=False)
        try:
            summary = run_export_import(
                conn, source, run_id,
                config=config,
                dry_run=dry_run,
                rejects_dir=Path(rejects_dir),
            )
        finally:
            conn.close()

        click.echo(build_run_report(summary))
        report_path = write_run_report(summary, mode, {"csv_dir": csv_dir})
        click.echo(f"[{run_id}] Run report: {report_path}")
        if dry_run:
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        if not summary.success:
            failed = summary.failed_entities
            click.echo(
                f"[{run_id}] Run incomplete: failed={failed} "
                f"watermark_errors={len(summary.watermark_errors)}",
                err=True,
            )
            sys.exit(1)
        return

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if mode == "fetch_window":
            as_of = today.date() if today else date.today()
            wm = get_watermark(conn, report_type)
            window = build_fetch_window(
                wm, as_of, config.historical_floor_date,
                align_to_month=report_type == REPORT_REVENUE_CATEGORIES,
            )
            since = wm.high_water_date.isoformat() if wm else "never fetched"
            click.echo(
                f"[{run_id}] {report_type}: {window.start} → {window.end} "
                f"({window.to_union_range()}) watermark={since}"
            )
        elif mode == "watermarks":
            marks = get_all_watermarks(conn)
            if not marks:
                click.echo(f"[{run_id}] No watermarks recorded.")
            for wm in marks:
                click.echo(
                    f"  {wm.report_type:<20} high_water={wm.high_water_date} "
                    f"records={wm.record_count} fetched={wm.last_fetched_at:%Y-%m-%d %H:%M}"
                )
        elif mode == "lock_month":
            if not month:
                click.echo(f"[{run_id}] FATAL: --month is required for lock_month", err=True)
                sys.exit(1)
            try:
                lock_month(conn, month, notes)
            except ValueError as exc:
                conn.rollback()
                click.echo(f"[{run_id}] FATAL: {exc}", err=True)
                sys.exit(1)
            conn.commit()
            click.echo(f"[{run_id}] Locked revenue month {month}.")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
