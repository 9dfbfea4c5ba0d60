"""
Tests for the exit policy evaluator.

Covers rule priority, staged tier selection, the min-profit bypass after
partial exits, and unusable input.
"""
from decimal import Decimal

import pytest

from core.exceptions import DataError
from core.exit_policy import evaluate, next_tier_index
from core.models import (
    EXIT_MARKET_CAP,
    EXIT_MAX_HOLD,
    EXIT_MIN_PROFIT,
    EXIT_PRICE_TARGET,
    EXIT_STOP_LOSS,
    EXIT_VOLUME_SPIKE,
    FullExit,
    PartialExit,
    resolve_fraction,
)
from tests.helpers import make_policy, make_record, make_snapshot

QUARTERS = [Decimal("0.25")] * 4


@pytest.fixture
def policy():
    return make_policy()


class TestNoSignal:

    def test_flat_price_holds(self, policy):
        assert evaluate(make_record(), make_snapshot(price=100), policy) is None

    def test_just_below_first_target_holds(self, policy):
        assert evaluate(make_record(), make_snapshot(price="149.99"), policy) is None

    def test_volume_at_exact_spike_threshold_holds(self, policy):
        """Spike requires volume strictly above entry_volume * multiplier"""
        assert evaluate(make_record(), make_snapshot(volume=2000), policy) is None

    def test_hold_time_at_exact_limit_holds(self, policy):
        assert evaluate(make_record(), make_snapshot(hours_after_entry=12), policy) is None


class TestStagedTargets:

    def test_first_target_sells_first_tier(self, policy):
        action = evaluate(make_record(), make_snapshot(price=150), policy)
        assert action == PartialExit(fraction=Decimal("0.25"), tier=0)
        assert action.reason == EXIT_PRICE_TARGET
        assert not action.is_full

    def test_second_tier_after_first_is_filled(self, policy):
        """liquidated 0.25 at 2.05x entry sells the second 25% tier"""
        record = make_record(liquidated="0.25")
        action = evaluate(record, make_snapshot(price=205), policy)
        assert isinstance(action, PartialExit)
        assert action.tier == 1
        assert action.fraction == Decimal("0.25")

    @pytest.mark.parametrize("price,expected", [
        (210, PartialExit(fraction=Decimal("0.25"), tier=1)),
        (190, None),
    ])
    def test_second_tier_target_is_double_entry(self, policy, price, expected):
        record = make_record(liquidated="0.25")
        assert evaluate(record, make_snapshot(price=price), policy) == expected

    def test_tier_not_skipped_when_price_jumps(self, policy):
        """Price above the 5x target still sells only the next unfilled tier"""
        record = make_record(liquidated="0.25")
        action = evaluate(record, make_snapshot(price=600), policy)
        assert action.tier == 1

    def test_next_target_not_reached(self, policy):
        record = make_record(liquidated="0.5")
        assert evaluate(record, make_snapshot(price=250), policy) is None

    def test_partially_filled_tier_is_retried(self, policy):
        """A tier that only half-filled stays the current tier"""
        record = make_record(liquidated="0.125")
        action = evaluate(record, make_snapshot(price=160), policy)
        assert action.tier == 0

    def test_last_tier_fraction_resolved_against_remaining(self, policy):
        record = make_record(liquidated="0.9")
        action = evaluate(record, make_snapshot(price=505), policy)
        assert action.tier == 3
        assert action.fraction == Decimal("0.25")
        assert resolve_fraction(action, record) == Decimal("0.1")


class TestFullExitRules:

    def test_stop_loss_at_threshold(self, policy):
        action = evaluate(make_record(), make_snapshot(price=80), policy)
        assert action == FullExit(reason=EXIT_STOP_LOSS, fraction=Decimal("1"))
        assert action.is_full

    def test_stop_loss_sells_only_remaining(self, policy):
        record = make_record(liquidated="0.25")
        action = evaluate(record, make_snapshot(price=50), policy)
        assert action.reason == EXIT_STOP_LOSS
        assert action.fraction == Decimal("0.75")

    def test_volume_spike(self, policy):
        action = evaluate(make_record(), make_snapshot(volume=2001), policy)
        assert action.reason == EXIT_VOLUME_SPIKE

    def test_market_cap_target(self, policy):
        action = evaluate(make_record(), make_snapshot(market_cap=1000000), policy)
        assert action.reason == EXIT_MARKET_CAP

    def test_max_hold(self, policy):
        action = evaluate(make_record(), make_snapshot(hours_after_entry=13), policy)
        assert action.reason == EXIT_MAX_HOLD

    def test_min_profit_before_any_partial(self, policy):
        action = evaluate(make_record(), make_snapshot(price=170), policy)
        assert action == FullExit(reason=EXIT_MIN_PROFIT, fraction=Decimal("1"))

    def test_min_profit_bypassed_after_partial(self, policy):
        record = make_record(liquidated="0.25")
        assert evaluate(record, make_snapshot(price=170), policy) is None

    def test_min_profit_below_first_target_preempts_staging(self):
        policy = make_policy(min_profit_ratio="1.2")
        action = evaluate(make_record(), make_snapshot(price=150), policy)
        assert action.reason == EXIT_MIN_PROFIT


class TestRulePriority:

    def test_max_hold_beats_everything(self, policy):
        snapshot = make_snapshot(price=50, volume=5000, market_cap=2000000, hours_after_entry=24)
        assert evaluate(make_record(), snapshot, policy).reason == EXIT_MAX_HOLD

    def test_max_hold_beats_stop_loss(self, policy):
        snapshot = make_snapshot(price=50, hours_after_entry=12.5)
        assert evaluate(make_record(), snapshot, policy).reason == EXIT_MAX_HOLD

    def test_market_cap_beats_stop_loss(self, policy):
        snapshot = make_snapshot(price=50, market_cap=2000000)
        assert evaluate(make_record(), snapshot, policy).reason == EXIT_MARKET_CAP

    def test_stop_loss_beats_volume_spike(self, policy):
        snapshot = make_snapshot(price=70, volume=5000)
        assert evaluate(make_record(), snapshot, policy).reason == EXIT_STOP_LOSS

    def test_volume_spike_beats_staged_target(self, policy):
        record = make_record(liquidated="0.25")
        snapshot = make_snapshot(price=205, volume=5000)
        assert evaluate(record, snapshot, policy).reason == EXIT_VOLUME_SPIKE


class TestUnusableInput:

    @pytest.mark.parametrize("field", ["price", "volume", "market_cap"])
    def test_missing_field_gives_no_signal(self, policy, field):
        values = {"price": 50}  # would stop out if the snapshot were complete
        values[field] = None
        snapshot = make_snapshot(**values)
        assert evaluate(make_record(), snapshot, policy) is None

    def test_zero_price_gives_no_signal(self, policy):
        assert evaluate(make_record(), make_snapshot(price=0), policy) is None

    @pytest.mark.parametrize("entry_price", [0, -5])
    def test_non_positive_entry_price_raises(self, policy, entry_price):
        with pytest.raises(DataError) as exc_info:
            evaluate(make_record(entry_price=entry_price), make_snapshot(), policy)
        assert exc_info.value.account == "wallet1"
        assert exc_info.value.asset == "TOKEN"


class TestNextTierIndex:

    @pytest.mark.parametrize("liquidated,expected", [
        ("0", 0),
        ("0.1", 0),
        ("0.25", 1),
        ("0.5", 2),
        ("0.75", 3),
        ("1", 3),
    ])
    def test_uniform_tiers(self, liquidated, expected):
        assert next_tier_index(Decimal(liquidated), QUARTERS) == expected

    @pytest.mark.parametrize("liquidated,expected", [
        ("0", 0),
        ("0.5", 1),
        ("0.6", 1),
        ("0.8", 2),
        ("0.95", 2),
    ])
    def test_non_uniform_tiers(self, liquidated, expected):
        fractions = [Decimal("0.5"), Decimal("0.3"), Decimal("0.2")]
        assert next_tier_index(Decimal(liquidated), fractions) == expected

    def test_tolerates_rounding_at_tier_boundary(self):
        assert next_tier_index(Decimal("0.2499999999999"), QUARTERS) == 1
