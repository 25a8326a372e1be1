"""studio_etl.config

YAML pipeline configuration for the studio export import.

Usage:
    from pathlib import Path
    from studio_etl.config import load_pipeline_config

    config = load_pipeline_config(Path("config/union_export.yml"))
    window = build_fetch_window(wm, today, config.historical_floor_date)

The database DSN is deliberately absent: it comes from ``--db-dsn`` or the
``DB_DSN`` environment variable only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path("config/union_export.yml")

DEFAULT_PASS_STATE_MAP = {"Active": "Valid Now", "Trialing": "In Trial"}
DEFAULT_ELIGIBLE_ORDER_STATES = ("completed", "refunded")
DEFAULT_EXCLUDED_REFUND_STATES = ("failed", "canceled")

REQUIRED_YAML_KEYS = frozenset({
    "historical_floor_date",
    "read_batch_size",
    "statement_batch_size",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when the pipeline YAML fails validation."""


# ---------------------------------------------------------------------------
# PipelineConfig dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    """Validated pipeline settings."""

    historical_floor_date: date = date(2024, 1, 1)
    read_batch_size: int = 10_000
    statement_batch_size: int = 100
    pass_state_map: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PASS_STATE_MAP)
    )
    eligible_order_states: frozenset[str] = frozenset(DEFAULT_ELIGIBLE_ORDER_STATES)
    excluded_refund_states: frozenset[str] = frozenset(DEFAULT_EXCLUDED_REFUND_STATES)
    uncategorized_sample_size: int = 5


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def _or_default(data: dict[str, Any], key: str, default: Any) -> Any:
    """An explicit empty value is kept; only an absent or null key uses the default."""
    return default if data.get(key) is None else data[key]


def load_pipeline_config(yaml_path: Path) -> PipelineConfig:
    """Load, validate, and return a PipelineConfig from a YAML file.

    Raises:
        ConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_pipeline_config(data)
    return PipelineConfig(
        historical_floor_date=_as_date(data["historical_floor_date"]),
        read_batch_size=int(data["read_batch_size"]),
        statement_batch_size=int(data["statement_batch_size"]),
        pass_state_map={
            str(k): str(v)
            for k, v in _or_default(data, "pass_state_map", DEFAULT_PASS_STATE_MAP).items()
        },
        eligible_order_states=frozenset(
            str(s) for s in _or_default(data, "eligible_order_states", DEFAULT_ELIGIBLE_ORDER_STATES)
        ),
        excluded_refund_states=frozenset(
            str(s) for s in _or_default(data, "excluded_refund_states", DEFAULT_EXCLUDED_REFUND_STATES)
        ),
        uncategorized_sample_size=int(data.get("uncategorized_sample_size", 5)),
    )


def _as_date(value: Any) -> date:
    # PyYAML already turns an unquoted 2024-01-01 into a date
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def validate_pipeline_config(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - historical_floor_date is an ISO date
      - batch sizes are positive integers
      - pass_state_map is a mapping; state lists are lists
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    try:
        _as_date(data["historical_floor_date"])
    except ValueError:
        raise ConfigValidationError(
            f"historical_floor_date '{data['historical_floor_date']}' is not an ISO date."
        )

    for key in ("read_batch_size", "statement_batch_size", "uncategorized_sample_size"):
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int):
            raise ConfigValidationError(f"'{key}' value '{val}' is not an integer.")
        if val <= 0:
            raise ConfigValidationError(f"'{key}' value {val} must be > 0.")

    state_map = data.get("pass_state_map")
    if state_map is not None and not isinstance(state_map, dict):
        raise ConfigValidationError("'pass_state_map' must be a mapping.")

    for key in ("eligible_order_states", "excluded_refund_states"):
        val = data.get(key)
        if val is not None and not isinstance(val, list):
            raise ConfigValidationError(f"'{key}' must be a list.")

    if data.get("eligible_order_states") == []:
        raise ConfigValidationError("'eligible_order_states' must not be empty.")
