"""
Entry: Opening Positions Across Accounts

Call-in for "open a position in asset X". Validates the token against
risk-scaled liquidity/volume floors, sizes the buy, splits it evenly across
accounts, and books each confirmed buy in the ledger.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from core.audit_log import AuditLogger
from core.exceptions import DataError, DuplicatePosition, ExecutionFailure, StateWriteFailure, TokenRejected
from core.interfaces import MarketDataProvider, TradeExecutor
from core.models import MarketSnapshot, PositionRecord
from core.position_ledger import PositionLedger
from infra.alerting import AlertService, AlertSeverity
from tools.config_validator import EntryConfig

logger = logging.getLogger(__name__)


@dataclass
class EntryReport:
    """Outcome of opening one account's share of a position"""
    account: str
    asset: str
    amount: Decimal
    success: bool
    record: Optional[PositionRecord] = None
    trade_id: Optional[str] = None
    error: Optional[str] = None


class EntryService:
    """Opens positions for every configured account."""

    def __init__(self,
                 ledger: PositionLedger,
                 provider: MarketDataProvider,
                 executor: TradeExecutor,
                 entry_config: EntryConfig,
                 accounts: List[str],
                 audit: Optional[AuditLogger] = None,
                 alerts: Optional[AlertService] = None):
        if not accounts:
            raise ValueError("EntryService needs at least one account")
        self.ledger = ledger
        self.provider = provider
        self.executor = executor
        self.config = entry_config
        self.accounts = list(accounts)
        self.audit = audit
        self.alerts = alerts

    @property
    def risk_scale(self) -> Decimal:
        return Decimal(self.config.risk_level) / Decimal(100)

    def total_buy_amount(self) -> Decimal:
        """Risk-scaled buy amount, capped at max_buy_amount."""
        return min(self.config.buy_amount * self.risk_scale, self.config.max_buy_amount)

    def amount_per_account(self) -> Decimal:
        return self.total_buy_amount() / Decimal(len(self.accounts))

    def validate_token(self, asset: str) -> MarketSnapshot:
        """
        Check the token clears the liquidity and volume floors.

        Raises:
            DataUnavailable: if no snapshot could be fetched
            TokenRejected: if the snapshot is incomplete or below the floors
        """
        snapshot = self.provider.fetch(asset)
        if not snapshot.is_complete:
            raise TokenRejected(f"{asset}: incomplete market data")

        min_liquidity = self.config.min_liquidity_usd * self.risk_scale
        min_volume = self.config.min_volume_usd * self.risk_scale
        liquidity = snapshot.liquidity if snapshot.liquidity is not None else Decimal(0)
        if liquidity < min_liquidity or snapshot.volume < min_volume:
            raise TokenRejected(
                f"{asset}: low liquidity or volume (liquidity={liquidity} < {min_liquidity} "
                f"or volume={snapshot.volume} < {min_volume})"
            )
        return snapshot

    def open_position(self, asset: str) -> List[EntryReport]:
        """
        Validate, size and buy `asset` for every account.

        Returns:
            One EntryReport per account (failed buys included)

        Raises:
            TokenRejected: if validation fails (nothing is bought)
            DataUnavailable: if validation data cannot be fetched
            DuplicatePosition: if any account already holds the asset (nothing is bought)
        """
        for account in self.accounts:
            if self.ledger.has(account, asset):
                raise DuplicatePosition(account, asset)

        self.validate_token(asset)

        amount = self.amount_per_account()
        logger.info(f"ENTRY: {asset} total={self.total_buy_amount()} split over {len(self.accounts)} account(s)")

        reports = [self._open_for_account(account, asset, amount) for account in self.accounts]
        opened = sum(1 for r in reports if r.success)
        logger.info(f"ENTRY: {asset} opened for {opened}/{len(reports)} account(s)")
        return reports

    def _open_for_account(self, account: str, asset: str, amount: Decimal) -> EntryReport:
        try:
            trade = self.executor.acquire(account, asset, amount)
        except ExecutionFailure as e:
            logger.warning(f"⚠️ Buy failed for {account}/{asset}: {e}")
            if self.alerts:
                self.alerts.notify_action(account, asset, "failed", "entry", fraction=amount, error=str(e))
            return EntryReport(account=account, asset=asset, amount=amount, success=False, error=str(e))

        try:
            record = self.ledger.open(
                account,
                asset,
                entry_price=trade.entry_price,
                entry_volume=trade.entry_volume,
            )
        except (DataError, DuplicatePosition) as e:
            # The buy went through but there is no record to manage it
            logger.error(f"Bought {account}/{asset} (trade {trade.trade_id}) but could not book it: {e}")
            if self.audit:
                self.audit.log_action(account, asset, "unbooked", "entry", amount, trade_id=trade.trade_id, error=str(e))
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Unbooked entry",
                    f"{account}/{asset} trade {trade.trade_id} bought {amount} but has no position record: {e}",
                )
            return EntryReport(
                account=account,
                asset=asset,
                amount=amount,
                success=False,
                trade_id=trade.trade_id,
                error=str(e),
            )
        except StateWriteFailure as e:
            record = self.ledger.get(account, asset)
            logger.critical(f"Entry {trade.trade_id} for {account}/{asset} booked but not saved: {e}")
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Ledger state not saved",
                    f"{account}/{asset} trade {trade.trade_id} booked in memory only: {e}",
                )

        if self.audit:
            self.audit.log_open(account, asset, trade.entry_price, trade.entry_volume, trade.trade_id)
        if self.alerts:
            self.alerts.notify_action(account, asset, "opened", "entry", fraction=amount, trade_id=trade.trade_id)
        return EntryReport(
            account=account,
            asset=asset,
            amount=amount,
            success=True,
            record=record,
            trade_id=trade.trade_id,
        )

