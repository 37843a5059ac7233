"""
Tests for configuration validation.

Validates that config_validator flags invalid app.yaml / policy.yaml
values and accepts the shipped configs.
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppSchema,
    PolicySchema,
    validate_all_configs,
    validate_app,
    validate_policy,
)

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _write(tmp_path: Path, filename: str, data) -> None:
    (tmp_path / filename).write_text(yaml.safe_dump(data))


@pytest.fixture
def config_dir(tmp_path):
    """Copy of the shipped configs that tests can modify."""
    for name in ("app.yaml", "policy.yaml"):
        (tmp_path / name).write_text((CONFIG_DIR / name).read_text())
    return tmp_path


def _load(config_dir: Path, filename: str):
    return yaml.safe_load((config_dir / filename).read_text())


def test_shipped_configs_are_valid():
    assert validate_all_configs(str(CONFIG_DIR)) == []


def test_empty_files_use_defaults(tmp_path):
    (tmp_path / "app.yaml").write_text("")
    (tmp_path / "policy.yaml").write_text("")

    assert validate_all_configs(str(tmp_path)) == []
    assert PolicySchema().validator.max_positions == 3
    assert AppSchema().store.backend == "sqlite"


def test_missing_file_reported(tmp_path):
    errors = validate_policy(tmp_path)

    assert len(errors) == 1
    assert "Config file not found" in errors[0]


def test_malformed_yaml_reports_line(tmp_path):
    (tmp_path / "policy.yaml").write_text("loop:\n  interval_seconds: [180\n")

    errors = validate_policy(tmp_path)

    assert errors
    assert "Invalid YAML" in errors[0]
    assert "line" in errors[0]


def test_negative_interval_rejected(config_dir):
    policy = _load(config_dir, "policy.yaml")
    policy["loop"]["interval_seconds"] = -5
    _write(config_dir, "policy.yaml", policy)

    errors = validate_policy(config_dir)

    assert any("loop -> interval_seconds" in e for e in errors)


def test_same_direction_above_max_positions_rejected(config_dir):
    policy = _load(config_dir, "policy.yaml")
    policy["validator"]["max_same_direction"] = 5
    _write(config_dir, "policy.yaml", policy)

    errors = validate_policy(config_dir)

    assert any("max_same_direction (5) must be <= max_positions (3)" in e for e in errors)


def test_backtest_asset_tier_pattern(config_dir):
    policy = _load(config_dir, "policy.yaml")
    policy["backtest"]["assets"]["BTC"]["tier"] = "tier9"
    _write(config_dir, "policy.yaml", policy)

    errors = validate_policy(config_dir)

    assert any("backtest -> assets -> BTC -> tier" in e for e in errors)


def test_quoted_symbol_rejected(config_dir):
    app = _load(config_dir, "app.yaml")
    app["accounts"][0]["symbols"] = ["BTC-USD"]
    _write(config_dir, "app.yaml", app)

    errors = validate_app(config_dir)

    assert any("bare perp symbol" in e for e in errors)


def test_duplicate_account_ids_rejected(config_dir):
    app = _load(config_dir, "app.yaml")
    app["accounts"].append(dict(app["accounts"][0]))
    _write(config_dir, "app.yaml", app)

    errors = validate_app(config_dir)

    assert any("Duplicate account id: acct1" in e for e in errors)


def test_unknown_alert_severity_rejected(config_dir):
    app = _load(config_dir, "app.yaml")
    app["alerts"]["min_severity"] = "loud"
    _write(config_dir, "app.yaml", app)

    assert validate_app(config_dir)


def test_live_mode_requires_signing_key(config_dir):
    app = _load(config_dir, "app.yaml")
    app["app"]["mode"] = "LIVE"
    del app["accounts"][0]["private_key_env"]
    _write(config_dir, "app.yaml", app)

    errors = validate_all_configs(str(config_dir))

    assert errors == ["accounts -> acct1: LIVE mode requires private_key_env"]


def test_account_without_wallet_flagged(config_dir):
    app = _load(config_dir, "app.yaml")
    del app["accounts"][0]["wallet_address_env"]
    _write(config_dir, "app.yaml", app)

    errors = validate_all_configs(str(config_dir))

    assert errors == ["accounts -> acct1: wallet_address or wallet_address_env is required"]


def test_schema_errors_skip_sanity_checks(config_dir):
    app = _load(config_dir, "app.yaml")
    app["app"]["mode"] = "PAPER"
    del app["accounts"][0]["wallet_address_env"]
    _write(config_dir, "app.yaml", app)

    errors = validate_all_configs(str(config_dir))

    assert errors
    assert not any("wallet_address" in e for e in errors)
