"""
Exit Policy: Ordered Exit Rules for Staged Liquidation

Evaluates one position against one market snapshot and decides whether to
liquidate, and how much. Rules form an ordered decision list; the first match
wins:

1. max hold time        -> full exit
2. market-cap ceiling   -> full exit
3. stop loss            -> full exit
4. volume spike         -> full exit
5. minimum profit lock  -> full exit (only before any partial exit)
6. staged price targets -> partial exit of one tier

The evaluator holds no state and performs no I/O.
"""
import logging
from decimal import Decimal
from typing import Optional, Sequence

from core.exceptions import DataError
from core.models import (
    EXIT_MARKET_CAP,
    EXIT_MAX_HOLD,
    EXIT_MIN_PROFIT,
    EXIT_STOP_LOSS,
    EXIT_VOLUME_SPIKE,
    ZERO,
    ExitAction,
    FullExit,
    MarketSnapshot,
    PartialExit,
    PositionRecord,
)
from tools.config_validator import ExitPolicyConfig

logger = logging.getLogger(__name__)

# Tolerance when comparing cumulative tier allocations against liquidated fraction
TIER_EPSILON = Decimal("1e-9")


def next_tier_index(liquidated_fraction: Decimal, sell_fractions: Sequence[Decimal]) -> int:
    """
    Index of the next unfilled tier.

    The smallest index whose cumulative allocation exceeds the liquidated
    fraction. For uniform tiers this equals floor(liquidated / tier_size).
    Clamped to the last index once every tier has been allocated.
    """
    cumulative = ZERO
    for index, fraction in enumerate(sell_fractions):
        cumulative += fraction
        if cumulative > liquidated_fraction + TIER_EPSILON:
            return index
    return len(sell_fractions) - 1


def evaluate(
    record: PositionRecord,
    snapshot: MarketSnapshot,
    policy: ExitPolicyConfig,
) -> Optional[ExitAction]:
    """
    Decide the exit action for one position.

    Args:
        record: Position being evaluated
        snapshot: Fresh market snapshot for the position's asset
        policy: Validated exit policy

    Returns:
        FullExit, PartialExit, or None when no rule fires or data is unusable

    Raises:
        DataError: if the record's entry price is not positive
    """
    if record.entry_price <= 0:
        raise DataError(
            f"Corrupt record {record.account}/{record.asset}: entry_price={record.entry_price}",
            account=record.account,
            asset=record.asset,
        )

    if not snapshot.is_complete:
        logger.debug(f"Incomplete snapshot for {record.asset}, no signal this cycle")
        return None

    remaining = record.remaining_fraction
    price_ratio = snapshot.price / record.entry_price

    # 1. Max hold time
    held_for = snapshot.timestamp - record.entry_time
    if held_for > policy.max_hold:
        return FullExit(reason=EXIT_MAX_HOLD, fraction=remaining)

    # 2. Market-cap ceiling
    if snapshot.market_cap >= policy.market_cap_target:
        return FullExit(reason=EXIT_MARKET_CAP, fraction=remaining)

    # 3. Stop loss
    if price_ratio <= policy.stop_loss_ratio:
        return FullExit(reason=EXIT_STOP_LOSS, fraction=remaining)

    # 4. Volume spike against the volume seen at entry
    if snapshot.volume > record.entry_volume * policy.volume_spike_multiplier:
        return FullExit(reason=EXIT_VOLUME_SPIKE, fraction=remaining)

    # 5. Minimum profit lock, bypassed once staged selling has begun
    if price_ratio >= policy.min_profit_ratio and record.liquidated_fraction == 0:
        return FullExit(reason=EXIT_MIN_PROFIT, fraction=remaining)

    # 6. Staged price targets
    tier = next_tier_index(record.liquidated_fraction, policy.sell_fractions)
    target_price = record.entry_price * policy.price_targets[tier]
    if snapshot.price >= target_price:
        return PartialExit(fraction=policy.sell_fractions[tier], tier=tier)

    return None
