"""Unit tests for studio_etl.config."""

from __future__ import annotations

import textwrap
from datetime import date
from pathlib import Path

import pytest
import yaml

from studio_etl.config import (
    ConfigValidationError,
    PipelineConfig,
    load_pipeline_config,
    validate_pipeline_config,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent
SHIPPED_CONFIG = PROJECT_ROOT / "config" / "union_export.yml"

MINIMAL_YAML = textwrap.dedent("""\
    historical_floor_date: 2025-06-01
    read_batch_size: 500
    statement_batch_size: 50
""")


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "union_export.yml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoad:
    def test_shipped_config_matches_defaults(self):
        assert load_pipeline_config(SHIPPED_CONFIG) == PipelineConfig()

    def test_minimal_config_fills_defaults(self, tmp_path):
        config = load_pipeline_config(_write(tmp_path, MINIMAL_YAML))
        assert config.historical_floor_date == date(2025, 6, 1)
        assert config.read_batch_size == 500
        assert config.statement_batch_size == 50
        assert config.pass_state_map == {"Active": "Valid Now", "Trialing": "In Trial"}
        assert config.eligible_order_states == frozenset({"completed", "refunded"})
        assert config.excluded_refund_states == frozenset({"failed", "canceled"})

    def test_quoted_date_string(self, tmp_path):
        text = MINIMAL_YAML.replace("2025-06-01", '"2025-06-01"')
        config = load_pipeline_config(_write(tmp_path, text))
        assert config.historical_floor_date == date(2025, 6, 1)

    def test_custom_state_lists(self, tmp_path):
        text = MINIMAL_YAML + "eligible_order_states: [completed]\n"
        config = load_pipeline_config(_write(tmp_path, text))
        assert config.eligible_order_states == frozenset({"completed"})

    def test_explicit_empty_refund_exclusions_kept(self, tmp_path):
        text = MINIMAL_YAML + "excluded_refund_states: []\n"
        config = load_pipeline_config(_write(tmp_path, text))
        assert config.excluded_refund_states == frozenset()

    def test_null_refund_exclusions_use_default(self, tmp_path):
        text = MINIMAL_YAML + "excluded_refund_states:\n"
        config = load_pipeline_config(_write(tmp_path, text))
        assert config.excluded_refund_states == frozenset({"failed", "canceled"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline_config(tmp_path / "absent.yml")


class TestValidate:
    def _data(self, **overrides):
        data = yaml.safe_load(MINIMAL_YAML)
        data.update(overrides)
        return data

    def test_valid(self):
        validate_pipeline_config(self._data())

    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigValidationError, match="mapping"):
            validate_pipeline_config(["not", "a", "mapping"])

    def test_missing_required_key(self):
        data = self._data()
        del data["read_batch_size"]
        with pytest.raises(ConfigValidationError, match="read_batch_size"):
            validate_pipeline_config(data)

    def test_bad_floor_date(self):
        with pytest.raises(ConfigValidationError, match="ISO date"):
            validate_pipeline_config(self._data(historical_floor_date="01/06/2025"))

    @pytest.mark.parametrize("value", [0, -5, "100", 1.5, True])
    def test_bad_batch_size(self, value):
        with pytest.raises(ConfigValidationError):
            validate_pipeline_config(self._data(statement_batch_size=value))

    def test_state_map_must_be_mapping(self):
        with pytest.raises(ConfigValidationError, match="pass_state_map"):
            validate_pipeline_config(self._data(pass_state_map=["Active"]))

    def test_state_list_must_be_list(self):
        with pytest.raises(ConfigValidationError, match="excluded_refund_states"):
            validate_pipeline_config(self._data(excluded_refund_states="failed"))

    def test_eligible_states_not_empty(self):
        with pytest.raises(ConfigValidationError, match="must not be empty"):
            validate_pipeline_config(self._data(eligible_order_states=[]))

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigValidationError, ValueError)
