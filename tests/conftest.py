"""
Pytest configuration and fixtures for the exit manager tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest
import yaml


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


POLICY_CONFIG = {
    "exits": {
        "price_targets": [1.5, 2.0, 3.0, 5.0],
        "sell_fractions": [0.25, 0.25, 0.25, 0.25],
        "stop_loss_ratio": 0.8,
        "min_profit_ratio": 1.6,
        "volume_spike_multiplier": 2.0,
        "market_cap_target": 1000000,
        "max_hold_hours": 12,
    },
    "entry": {
        "risk_level": 50,
        "buy_amount": 0.05,
        "max_buy_amount": 0.1,
        "min_liquidity_usd": 10000,
        "min_volume_usd": 50000,
    },
    "loop": {
        "interval_seconds": 300,
        "jitter_pct": 0.0,
        "max_workers": 2,
    },
}


@pytest.fixture
def config_dir(tmp_path):
    """Write a valid policy.yaml + app.yaml pair into a temp directory."""
    directory = tmp_path / "config"
    directory.mkdir()
    app_config = {
        "app": {"mode": "PAPER"},
        "accounts": ["wallet1", "wallet2"],
        "logging": {"level": "INFO", "file": str(tmp_path / "logs" / "test.log")},
        "monitoring": {"metrics_enabled": False},
        "alerts": {"enabled": False},
        "state": {"file": None},
        "audit": {"file": str(tmp_path / "logs" / "audit.jsonl")},
    }
    (directory / "policy.yaml").write_text(yaml.safe_dump(POLICY_CONFIG))
    (directory / "app.yaml").write_text(yaml.safe_dump(app_config))
    return directory
