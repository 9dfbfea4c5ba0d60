"""
Tests for configuration validation.

Validates that config_validator rejects bad exit rules at load time and
accepts the shipped configs.
"""
import logging
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from core.exceptions import ConfigInvalid
from tools import config_check
from tools.config_validator import (
    AppSchema,
    ExitPolicyConfig,
    load_app_config,
    load_exit_policy,
    load_policy,
    validate_all_configs,
    validate_app,
    validate_policy,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def _edit(config_dir, filename, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


class TestShippedConfig:

    def test_repo_config_is_valid(self):
        assert validate_all_configs(REPO_CONFIG) == []

    def test_repo_policy_values(self):
        exits = load_exit_policy(REPO_CONFIG)
        assert exits.price_targets == [Decimal("1.5"), Decimal("2"), Decimal("3"), Decimal("5")]
        assert exits.sell_fractions == [Decimal("0.25")] * 4
        assert exits.max_hold_hours == Decimal("12")


class TestPolicyValidation:

    def test_valid_fixture(self, config_dir):
        assert validate_policy(config_dir) == []
        policy = load_policy(config_dir)
        assert policy.loop.max_workers == 2
        assert policy.entry.risk_level == 50

    def test_targets_must_increase(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(price_targets=[2.0, 1.5, 3.0, 5.0]))
        errors = validate_policy(config_dir)
        assert any("price_targets" in e and "strictly increasing" in e for e in errors)

    def test_targets_must_be_positive(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(price_targets=[-1.0, 2.0, 3.0, 5.0]))
        assert any("price_targets" in e for e in validate_policy(config_dir))

    def test_tier_lengths_must_match(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(sell_fractions=[0.5, 0.5]))
        assert any("equal length" in e for e in validate_policy(config_dir))

    @pytest.mark.parametrize("field,value", [
        ("stop_loss_ratio", 1.2),
        ("stop_loss_ratio", 0),
        ("min_profit_ratio", 0.9),
        ("volume_spike_multiplier", 1.0),
        ("market_cap_target", 0),
        ("max_hold_hours", -1),
    ])
    def test_out_of_range_thresholds(self, config_dir, field, value):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update({field: value}))
        assert any(field in e for e in validate_policy(config_dir))

    def test_sell_fraction_above_one(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(sell_fractions=[1.5, 0.25, 0.25, 0.25]))
        assert any("sell_fractions" in e for e in validate_policy(config_dir))

    def test_missing_exits_section(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d.pop("exits"))
        assert any("exits" in e for e in validate_policy(config_dir))

    def test_risk_level_bounds(self, config_dir):
        _edit(config_dir, "policy.yaml", lambda d: d["entry"].update(risk_level=150))
        assert any("risk_level" in e for e in validate_policy(config_dir))

    def test_load_policy_raises_with_all_errors(self, config_dir):
        def mutate(d):
            d["exits"]["stop_loss_ratio"] = 2
            d["exits"]["market_cap_target"] = -5
        _edit(config_dir, "policy.yaml", mutate)

        with pytest.raises(ConfigInvalid) as exc_info:
            load_policy(config_dir)
        assert len(exc_info.value.errors) == 2

    def test_min_profit_below_first_target_warns(self, config_dir, caplog):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(min_profit_ratio=1.2))
        with caplog.at_level(logging.WARNING, logger="tools.config_validator"):
            load_policy(config_dir)
        assert "at or below the first price target" in caplog.text

    def test_policy_is_frozen(self):
        exits = load_exit_policy(REPO_CONFIG)
        with pytest.raises(Exception):
            exits.stop_loss_ratio = Decimal("0.5")

    def test_max_hold_timedelta(self):
        exits = ExitPolicyConfig(
            price_targets=[2], sell_fractions=[1], stop_loss_ratio="0.5", min_profit_ratio="3",
            volume_spike_multiplier="2", market_cap_target="1000", max_hold_hours="1.5",
        )
        assert exits.max_hold.total_seconds() == 5400


class TestFileErrors:

    def test_missing_file(self, tmp_path):
        errors = validate_policy(tmp_path)
        assert len(errors) == 1
        assert "not found" in errors[0]

    def test_malformed_yaml(self, config_dir):
        (config_dir / "policy.yaml").write_text("exits: [unclosed\n")
        errors = validate_policy(config_dir)
        assert any("Invalid YAML" in e for e in errors)

    def test_non_mapping_top_level(self, config_dir):
        (config_dir / "app.yaml").write_text("- just\n- a list\n")
        assert validate_app(config_dir)


class TestAppValidation:

    def test_valid_fixture(self, config_dir):
        app = load_app_config(config_dir)
        assert app.app.mode == "PAPER"
        assert app.accounts == ["wallet1", "wallet2"]
        assert app.state.file is None

    def test_accounts_required(self, config_dir):
        _edit(config_dir, "app.yaml", lambda d: d.update(accounts=[]))
        assert any("accounts" in e for e in validate_app(config_dir))

    def test_accounts_unique(self, config_dir):
        _edit(config_dir, "app.yaml", lambda d: d.update(accounts=["wallet1", "wallet1"]))
        assert any("unique" in e for e in validate_app(config_dir))

    def test_unknown_mode_rejected(self, config_dir):
        _edit(config_dir, "app.yaml", lambda d: d.update(app={"mode": "YOLO"}))
        assert any("mode" in e for e in validate_app(config_dir))

    def test_live_requires_executor_class(self, config_dir):
        _edit(config_dir, "app.yaml", lambda d: d.update(app={"mode": "LIVE"}))
        with pytest.raises(ConfigInvalid) as exc_info:
            load_app_config(config_dir)
        assert any("executor.class" in e for e in exc_info.value.errors)

    def test_executor_class_alias(self):
        app = AppSchema(accounts=["wallet1"], app={"mode": "LIVE"}, executor={"class": "pkg.mod:Executor"})
        assert app.executor.class_path == "pkg.mod:Executor"


class TestConfigCheckCli:

    def test_valid_config_exit_code(self, config_dir, capsys):
        assert config_check.main(["--config-dir", str(config_dir)]) == 0
        assert "Configuration valid" in capsys.readouterr().out

    def test_invalid_config_exit_code(self, config_dir, capsys):
        _edit(config_dir, "policy.yaml", lambda d: d["exits"].update(stop_loss_ratio=5))
        assert config_check.main(["--config-dir", str(config_dir)]) == 1
        assert "stop_loss_ratio" in capsys.readouterr().out
