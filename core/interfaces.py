"""
External Collaborator Interfaces

The core talks to the outside world through two narrow seams:
- MarketDataProvider: current price/volume/market-cap for an asset
- TradeExecutor: buy and sell instructions against an account

Implementations must raise DataUnavailable / ExecutionFailure on failure and
never return partial garbage; the monitor loop relies on that to skip a cycle.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.models import MarketSnapshot


@dataclass(frozen=True)
class LiquidationResult:
    """Executor confirmation of a sell."""
    confirmed_fraction: Decimal
    trade_id: str
    requested_fraction: Optional[Decimal] = None

    @property
    def partially_filled(self) -> bool:
        if self.requested_fraction is None:
            return False
        return self.confirmed_fraction < self.requested_fraction


@dataclass(frozen=True)
class AcquisitionResult:
    """Executor confirmation of a buy."""
    entry_price: Decimal
    entry_volume: Decimal
    trade_id: str


class MarketDataProvider(ABC):
    """Read-only source of market snapshots."""

    @abstractmethod
    def fetch(self, asset: str) -> MarketSnapshot:
        """
        Fetch a fresh snapshot for `asset`.

        Raises:
            DataUnavailable: when the provider cannot answer
        """


class TradeExecutor(ABC):
    """Places trades for an account."""

    @abstractmethod
    def liquidate(self, account: str, asset: str, fraction: Decimal) -> LiquidationResult:
        """
        Sell `fraction` of the original position size.

        Raises:
            ExecutionFailure: when the trade was declined or errored
        """

    @abstractmethod
    def acquire(self, account: str, asset: str, amount: Decimal) -> AcquisitionResult:
        """
        Buy `amount` (quote currency) worth of `asset`.

        Raises:
            ExecutionFailure: when the trade was declined or errored
        """
