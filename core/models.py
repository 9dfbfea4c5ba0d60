"""
Exit Manager Core: Data Model

Position records, market snapshots and the exit actions produced by the
exit policy evaluator.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

# Exit reasons, in evaluation priority order
EXIT_MAX_HOLD = "max-hold-time"
EXIT_MARKET_CAP = "market-cap-target"
EXIT_STOP_LOSS = "stop-loss"
EXIT_VOLUME_SPIKE = "volume-spike"
EXIT_MIN_PROFIT = "min-profit"
EXIT_PRICE_TARGET = "price-target"

ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert numeric input to Decimal without float artifacts (None passes through)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


PositionKey = Tuple[str, str]


@dataclass(frozen=True)
class PositionRecord:
    """State for one open (account, asset) pair."""
    account: str
    asset: str
    entry_price: Decimal
    entry_time: datetime
    entry_volume: Decimal
    liquidated_fraction: Decimal = ZERO

    @property
    def key(self) -> PositionKey:
        return (self.account, self.asset)

    @property
    def remaining_fraction(self) -> Decimal:
        return ONE - self.liquidated_fraction

    def with_liquidated(self, fraction: Decimal) -> "PositionRecord":
        return replace(self, liquidated_fraction=fraction)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "asset": self.asset,
            "entry_price": str(self.entry_price),
            "entry_time": self.entry_time.isoformat(),
            "entry_volume": str(self.entry_volume),
            "liquidated_fraction": str(self.liquidated_fraction),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionRecord":
        entry_time = datetime.fromisoformat(data["entry_time"])
        if entry_time.tzinfo is None:
            entry_time = entry_time.replace(tzinfo=timezone.utc)
        return cls(
            account=data["account"],
            asset=data["asset"],
            entry_price=Decimal(data["entry_price"]),
            entry_time=entry_time,
            entry_volume=Decimal(data["entry_volume"]),
            liquidated_fraction=Decimal(data.get("liquidated_fraction", "0")),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """Point-in-time market read for one asset. Fields may be missing."""
    asset: str
    price: Optional[Decimal]
    volume: Optional[Decimal]
    market_cap: Optional[Decimal]
    liquidity: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        """True when every field the exit rules read is present and price is positive."""
        if self.price is None or self.volume is None or self.market_cap is None:
            return False
        return self.price > 0


@dataclass(frozen=True)
class PartialExit:
    """Liquidate `fraction` of the original position size (one staged tier)."""
    fraction: Decimal
    tier: int
    reason: str = EXIT_PRICE_TARGET

    @property
    def is_full(self) -> bool:
        return False


@dataclass(frozen=True)
class FullExit:
    """Liquidate the whole remaining balance."""
    reason: str
    fraction: Decimal

    @property
    def is_full(self) -> bool:
        return True


ExitAction = Union[PartialExit, FullExit]


def resolve_fraction(action: ExitAction, record: PositionRecord) -> Decimal:
    """Fraction of the original size to request from the executor, never above what is left."""
    return min(action.fraction, record.remaining_fraction)
