from decimal import Decimal
from unittest.mock import patch

import yaml

from core.position_ledger import PositionLedger
from infra.state_store import StateStore
from tests.helpers import T0, StubProvider, make_snapshot
from tools import exit_preview


def test_preview_prints_action_per_position(config_dir, tmp_path, capsys):
    state_file = tmp_path / "ledger.json"
    app_path = config_dir / "app.yaml"
    data = yaml.safe_load(app_path.read_text())
    data["state"] = {"file": str(state_file)}
    app_path.write_text(yaml.safe_dump(data))

    ledger = PositionLedger(state_store=StateStore(str(state_file)))
    ledger.open("wallet1", "TOKEN", entry_price=Decimal("100"), entry_time=T0, entry_volume=Decimal("1000"))
    ledger.open("wallet1", "QUIET", entry_price=Decimal("100"), entry_time=T0, entry_volume=Decimal("1000"))
    provider = StubProvider({"TOKEN": make_snapshot(price=150), "QUIET": make_snapshot(price=100, asset="QUIET")})

    with patch("tools.exit_preview.DexToolsProvider") as mock_provider_cls:
        mock_provider_cls.from_config.return_value = provider
        assert exit_preview.preview(str(config_dir)) == 0

    out = capsys.readouterr().out
    assert "wallet1/TOKEN" in out and "PRICE-TARGET sell 0.25" in out
    assert "wallet1/QUIET" in out and "hold" in out
    assert "2 open position(s)" in out
    # Preview never books anything
    assert ledger.get("wallet1", "TOKEN").liquidated_fraction == Decimal("0")


def test_preview_without_state_file(config_dir):
    assert exit_preview.preview(str(config_dir)) == 1
