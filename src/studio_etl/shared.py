"""studio_etl.shared

Shared run bookkeeping for the export import: RejectWriter, per-entity
outcomes, the run summary, and report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_EMPTY = "empty"


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    The header is taken from the first rejected row, so one writer should
    only ever receive records of one shape.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

@dataclass
class EntityOutcome:
    """What happened to one report type during a run."""

    processed: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    persisted: int = 0
    status: str = STATUS_EMPTY
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": dict(self.skipped),
            "persisted": self.persisted,
            "status": self.status,
            "error": self.error,
            **({"details": self.details} if self.details else {}),
        }


@dataclass
class RevenueOutcome:
    computed: bool = False
    skip_reason: str | None = None
    counters: dict[str, Any] = field(default_factory=dict)
    uncategorized_sample: list[str] = field(default_factory=list)
    months_written: list[str] = field(default_factory=list)
    months_locked: list[str] = field(default_factory=list)
    persisted: int = 0
    status: str = STATUS_EMPTY
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "computed": self.computed,
            "skip_reason": self.skip_reason,
            "counters": dict(self.counters),
            "uncategorized_sample": list(self.uncategorized_sample),
            "months_written": list(self.months_written),
            "months_locked": list(self.months_locked),
            "persisted": self.persisted,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    dry_run: bool = False
    finished_at: datetime | None = None
    entities: dict[str, EntityOutcome] = field(default_factory=dict)
    revenue: RevenueOutcome = field(default_factory=RevenueOutcome)
    watermarks_advanced: dict[str, str] = field(default_factory=dict)
    watermark_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def failed_entities(self) -> list[str]:
        failed = [name for name, o in self.entities.items() if o.status == STATUS_FAILED]
        if self.revenue.status == STATUS_FAILED:
            failed.append("revenue_categories")
        return failed

    @property
    def success(self) -> bool:
        return not self.failed_entities and not self.watermark_errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "dry_run": self.dry_run,
            "success": self.success,
            "entities": {name: o.to_dict() for name, o in self.entities.items()},
            "revenue": self.revenue.to_dict(),
            "watermarks_advanced": dict(self.watermarks_advanced),
            "watermark_errors": list(self.watermark_errors),
            "warnings": list(self.warnings),
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Report writers
# ---------------------------------------------------------------------------

def write_run_report(
    summary: RunSummary,
    mode: str,
    source_paths: dict[str, str],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "mode": mode,
        **source_paths,
        **summary.to_dict(),
    }
    report_path = reports_dir / f"{summary.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


def build_run_report(summary: RunSummary) -> str:
    lines = [
        "=" * 60,
        "Studio Export Import Report",
        f"  run_id:  {summary.run_id}",
        f"  dry_run: {summary.dry_run}",
        "=" * 60,
    ]
    for name, o in summary.entities.items():
        skipped = sum(o.skipped.values())
        lines.append(
            f"  {name:<20} {o.status:<7} processed={o.processed} "
            f"persisted={o.persisted} skipped={skipped}"
        )
        if o.error:
            lines.append(f"    error: {o.error}")

    rev = summary.revenue
    lines.append("")
    if rev.computed:
        c = rev.counters
        lines.append(
            f"  revenue_categories   {rev.status:<7} categorized={c.get('categorized', 0)} "
            f"uncategorized={c.get('uncategorized', 0)} "
            f"refunds_applied={c.get('refunds_applied', 0)}"
        )
        lines.append(f"    months written: {', '.join(rev.months_written) or '-'}")
        if rev.months_locked:
            lines.append(f"    months locked (skipped): {', '.join(rev.months_locked)}")
        if rev.uncategorized_sample:
            lines.append(f"    uncategorized sample: {', '.join(rev.uncategorized_sample)}")
    else:
        lines.append(f"  revenue_categories   not computed ({rev.skip_reason})")
    if rev.error:
        lines.append(f"    error: {rev.error}")

    if summary.watermarks_advanced:
        lines.append("")
        lines.append("  Watermarks:")
        for report_type, high_water in summary.watermarks_advanced.items():
            lines.append(f"    {report_type:<20} → {high_water}")
    if summary.watermark_errors:
        lines.append(f"\nWatermark errors ({len(summary.watermark_errors)}):")
        for w in summary.watermark_errors:
            lines.append(f"  {w}")
    if summary.warnings:
        lines.append(f"\nWarnings ({len(summary.warnings)}):")
        for w in summary.warnings[:20]:
            lines.append(f"  {w}")
        if len(summary.warnings) > 20:
            lines.append(f"  ... and {len(summary.warnings) - 20} more")
    lines.append("=" * 60)
    lines.append(f"  Overall: {'SUCCESS' if summary.success else 'FAILED'}")
    return "\n".join(lines)
