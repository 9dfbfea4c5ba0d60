"""
Execution: Trade Executors

PaperExecutor simulates fills against live market data (the "simulated" mode
of the bot). LIVE executors are loaded by import path so wallet and router
code stays outside the core.
"""

import importlib
import logging
import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from core.exceptions import ConfigInvalid, DataUnavailable, ExecutionFailure
from core.interfaces import AcquisitionResult, LiquidationResult, MarketDataProvider, TradeExecutor
from core.models import ONE, ZERO, to_decimal

logger = logging.getLogger(__name__)


class PaperExecutor(TradeExecutor):
    """
    Simulated executor.

    Buys fill at the provider's current price; sells fill `fill_ratio` of the
    requested fraction (1.0 = always full). Holdings are tracked per
    (account, asset) so a sell never exceeds what is left; a holding is
    dropped once fully sold.
    """

    def __init__(self, provider: MarketDataProvider, fill_ratio: float = 1.0):
        if not 0 < fill_ratio <= 1:
            raise ValueError(f"fill_ratio must be in (0, 1], got {fill_ratio}")
        self.provider = provider
        self.fill_ratio = to_decimal(fill_ratio)
        self._holdings: Dict[Tuple[str, str], Dict[str, Decimal]] = {}
        self._lock = threading.Lock()

    def acquire(self, account: str, asset: str, amount: Decimal) -> AcquisitionResult:
        amount = to_decimal(amount)
        if amount is None or amount <= 0:
            raise ExecutionFailure(f"Buy amount must be > 0, got {amount}")

        try:
            snapshot = self.provider.fetch(asset)
        except DataUnavailable as e:
            raise ExecutionFailure(f"No price for {asset}: {e}", e) from e
        if not snapshot.is_complete:
            raise ExecutionFailure(f"Incomplete market data for {asset}, refusing to buy")

        trade_id = f"paper-{uuid.uuid4().hex}"
        with self._lock:
            self._holdings[(account, asset)] = {"amount": amount, "sold": ZERO}

        logger.info(f"Simulated buy: {amount} of {asset} for {account} @ {snapshot.price} ({trade_id})")
        return AcquisitionResult(
            entry_price=snapshot.price,
            entry_volume=snapshot.volume,
            trade_id=trade_id,
        )

    def liquidate(self, account: str, asset: str, fraction: Decimal) -> LiquidationResult:
        fraction = to_decimal(fraction)
        if fraction is None or fraction <= 0:
            raise ExecutionFailure(f"Sell fraction must be > 0, got {fraction}")

        key = (account, asset)
        with self._lock:
            holding = self._holdings.get(key)
            if holding is not None:
                fraction = min(fraction, ONE - holding["sold"])
            confirmed = fraction * self.fill_ratio
            if holding is not None:
                holding["sold"] += confirmed
                if holding["sold"] >= ONE:
                    del self._holdings[key]

        trade_id = f"paper-{uuid.uuid4().hex}"
        logger.info(
            f"Simulated sell: {confirmed * 100}% of {asset} for {account} ({trade_id})"
        )
        return LiquidationResult(confirmed_fraction=confirmed, trade_id=trade_id, requested_fraction=fraction)


def load_executor(class_path: str, options: Optional[Dict[str, Any]] = None, **kwargs) -> TradeExecutor:
    """
    Instantiate an executor from "package.module:ClassName".

    Raises:
        ConfigInvalid: if the path cannot be imported or is not a TradeExecutor
    """
    module_name, sep, class_name = (class_path or "").partition(":")
    if not sep or not module_name or not class_name:
        raise ConfigInvalid(f"executor.class must look like 'module:Class', got {class_path!r}")

    try:
        module = importlib.import_module(module_name)
        executor_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigInvalid(f"Cannot load executor {class_path}: {e}") from e

    if not (isinstance(executor_cls, type) and issubclass(executor_cls, TradeExecutor)):
        raise ConfigInvalid(f"{class_path} is not a TradeExecutor")

    executor = executor_cls(**(options or {}), **kwargs)
    logger.info(f"Loaded executor {class_path}")
    return executor
