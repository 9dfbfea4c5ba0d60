"""
Monitor Cycle - One Sweep Over All Open Positions

Implements the per-sweep flow:
1. Claim a position (skip if another sweep holds it)
2. Fetch a market snapshot (skip on failure, no state change)
3. Evaluate exit rules
4. Execute the resolved fraction
5. Book the confirmed fraction in the ledger

Accounts are swept in parallel; positions of one account run in order.
Scheduling (periods, shutdown signals) lives in runner/main_loop.py.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from core.audit_log import AuditLogger
from core.exceptions import DataError, DataUnavailable, ExecutionFailure, StateWriteFailure, UnknownPosition
from core.exit_policy import evaluate
from core.interfaces import MarketDataProvider, TradeExecutor
from core.models import ZERO, resolve_fraction, to_decimal
from core.position_ledger import PositionLedger
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from tools.config_validator import ExitPolicyConfig

logger = logging.getLogger(__name__)

SKIP_DATA_UNAVAILABLE = "data_unavailable"
SKIP_DATA_ERROR = "data_error"
SKIP_IN_FLIGHT = "in_flight"
SKIP_CLOSED = "closed"
SKIP_DEADLINE = "deadline"


@dataclass
class ActionOutcome:
    """What happened to one exit decision"""
    account: str
    asset: str
    reason: str
    requested_fraction: Decimal
    status: str  # "filled", "failed", "unapplied"
    confirmed_fraction: Decimal = ZERO
    trade_id: Optional[str] = None
    liquidated_after: Optional[Decimal] = None  # None once the position is closed
    error: Optional[str] = None


@dataclass
class SweepResult:
    """Result of one monitor sweep"""
    started_at: datetime
    evaluated: int = 0
    outcomes: List[ActionOutcome] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=dict)
    flagged: List[str] = field(default_factory=list)
    deadline_hit: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def filled(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == "filled"]

    @property
    def failures(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status != "filled"]

    def skip(self, cause: str, count: int = 1) -> None:
        self.skipped[cause] = self.skipped.get(cause, 0) + count

    def merge(self, other: "SweepResult") -> None:
        self.evaluated += other.evaluated
        self.outcomes.extend(other.outcomes)
        for cause, count in other.skipped.items():
            self.skip(cause, count)
        self.flagged.extend(other.flagged)
        self.deadline_hit = self.deadline_hit or other.deadline_hit

    def summary(self) -> Dict[str, object]:
        return {
            "evaluated": self.evaluated,
            "filled": len(self.filled),
            "failed": len(self.failures),
            "skipped": dict(self.skipped),
            "flagged": list(self.flagged),
            "deadline_hit": self.deadline_hit,
            "error": self.error,
        }


class MonitorCycle:
    """
    Sweeps every account's open positions once.

    The ledger key is never locked across provider or executor calls: the
    record is read under its lock, the key stays claimed while the external
    calls run, and ledger.apply re-acquires the lock to book the result.
    """

    def __init__(self,
                 ledger: PositionLedger,
                 provider: MarketDataProvider,
                 executor: TradeExecutor,
                 policy: ExitPolicyConfig,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None,
                 alerts: Optional[AlertService] = None,
                 max_workers: int = 4,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the sweep with its collaborators.

        Args:
            ledger: Owner of open positions
            provider: Market data source
            executor: Trade executor
            policy: Validated exit rules
            metrics: Optional Prometheus recorder
            audit: Optional JSONL audit trail
            alerts: Optional outbound notifications
            max_workers: Accounts swept in parallel
            clock: Monotonic clock used for the sweep deadline
        """
        self.ledger = ledger
        self.provider = provider
        self.executor = executor
        self.policy = policy
        self.metrics = metrics
        self.audit = audit
        self.alerts = alerts
        self.max_workers = max(1, int(max_workers))
        self._clock = clock

    def run_sweep(self,
                  deadline: Optional[float] = None,
                  stop_event: Optional[threading.Event] = None,
                  accounts: Optional[List[str]] = None) -> SweepResult:
        """
        Run one sweep.

        Args:
            deadline: Clock value after which no new position is started
            stop_event: Set on shutdown; same effect as a passed deadline
            accounts: Accounts to sweep (default: every account with open positions)

        Returns:
            SweepResult aggregated over all accounts
        """
        result = SweepResult(started_at=datetime.now(timezone.utc))
        self._flush_ledger()
        accounts = list(accounts) if accounts is not None else self.ledger.accounts()
        if not accounts:
            logger.debug("No open positions to sweep")
            return result

        workers = min(self.max_workers, len(accounts))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweep") as pool:
            futures = {
                pool.submit(self.sweep_account, account, deadline, stop_event): account
                for account in accounts
            }
            for future, account in futures.items():
                try:
                    result.merge(future.result())
                except Exception as e:
                    logger.error(f"Sweep failed for account {account}: {e}", exc_info=True)
                    result.error = f"{account}: {e}"

        if self.metrics:
            self.metrics.record_open_positions(len(self.ledger))
        return result

    def _flush_ledger(self) -> None:
        if not self.ledger.needs_flush:
            return
        try:
            self.ledger.flush()
        except StateWriteFailure as e:
            logger.critical(f"Ledger state still not saved: {e}")
            if self.alerts:
                self.alerts.notify(AlertSeverity.CRITICAL, "Ledger state not saved", str(e))

    def _should_stop(self, deadline: Optional[float], stop_event: Optional[threading.Event]) -> bool:
        if stop_event is not None and stop_event.is_set():
            return True
        return deadline is not None and self._clock() >= deadline

    def sweep_account(self,
                      account: str,
                      deadline: Optional[float] = None,
                      stop_event: Optional[threading.Event] = None) -> SweepResult:
        """Evaluate one account's positions in asset order."""
        result = SweepResult(started_at=datetime.now(timezone.utc))
        records = self.ledger.snapshot_all(account)

        for index, record in enumerate(records):
            if self._should_stop(deadline, stop_event):
                remaining = len(records) - index
                logger.warning(f"Sweep deadline reached for {account}, deferring {remaining} position(s)")
                result.deadline_hit = True
                result.skip(SKIP_DEADLINE, remaining)
                self._record_skip(SKIP_DEADLINE, remaining)
                break
            self.process_position(account, record.asset, result)

        return result

    def _record_skip(self, cause: str, count: int = 1) -> None:
        if self.metrics:
            for _ in range(count):
                self.metrics.record_skip(cause)

    def process_position(self, account: str, asset: str, result: SweepResult) -> Optional[ActionOutcome]:
        """
        Run one position through fetch -> evaluate -> execute -> apply.

        Returns:
            The ActionOutcome if an exit was attempted, None otherwise
        """
        with self.ledger.claim(account, asset) as (claimed, record):
            if not claimed:
                result.skip(SKIP_IN_FLIGHT)
                self._record_skip(SKIP_IN_FLIGHT)
                return None
            if record is None:
                # Closed or removed since the account snapshot was taken
                logger.debug(f"{account}/{asset} no longer open, skipping")
                result.skip(SKIP_CLOSED)
                self._record_skip(SKIP_CLOSED)
                return None

            result.evaluated += 1

            try:
                snapshot = self.provider.fetch(asset)
            except DataUnavailable as e:
                logger.warning(f"No market data for {account}/{asset}, skipping this cycle: {e}")
                result.skip(SKIP_DATA_UNAVAILABLE)
                self._record_skip(SKIP_DATA_UNAVAILABLE)
                return None

            try:
                action = evaluate(record, snapshot, self.policy)
            except DataError as e:
                self._flag(account, asset, str(e), result)
                return None

            if action is None:
                return None

            fraction = resolve_fraction(action, record)
            logger.info(
                f"EXIT SIGNAL: {account}/{asset} {action.reason.upper()} - "
                f"price {record.entry_price} → {snapshot.price}, selling {fraction} "
                f"(liquidated so far {record.liquidated_fraction})"
            )

            outcome = self._execute(account, asset, action, fraction)
            result.outcomes.append(outcome)
            self._report(outcome)
            return outcome

    def _execute(self, account, asset, action, fraction: Decimal) -> ActionOutcome:
        outcome = ActionOutcome(
            account=account,
            asset=asset,
            reason=action.reason,
            requested_fraction=fraction,
            status="failed",
        )

        try:
            trade = self.executor.liquidate(account, asset, fraction)
        except ExecutionFailure as e:
            logger.warning(f"⚠️ Exit failed: {account}/{asset} {action.reason} - {e} (retry next cycle)")
            outcome.error = str(e)
            if self.metrics:
                self.metrics.record_execution_failure(action.reason)
            return outcome

        confirmed = to_decimal(trade.confirmed_fraction)
        outcome.trade_id = trade.trade_id
        if confirmed is None or confirmed <= 0:
            logger.warning(f"⚠️ Exit not filled: {account}/{asset} (trade {trade.trade_id}, confirmed={confirmed})")
            outcome.error = "no fill confirmed"
            if self.metrics:
                self.metrics.record_execution_failure(action.reason)
            return outcome
        if confirmed > fraction:
            logger.warning(
                f"Executor confirmed {confirmed} for {account}/{asset} but only {fraction} was requested; booking {fraction}"
            )
            confirmed = fraction
        outcome.confirmed_fraction = confirmed

        try:
            updated = self.ledger.apply(account, asset, action, confirmed, trade_id=trade.trade_id)
        except UnknownPosition as e:
            # Position vanished while the trade was in flight (manual removal)
            logger.error(f"Confirmed trade {trade.trade_id} has no position to book: {e}")
            outcome.status = "unapplied"
            outcome.error = str(e)
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Unbooked exit",
                    f"{account}/{asset} trade {trade.trade_id} confirmed {confirmed} but the position is gone",
                )
            return outcome
        except StateWriteFailure as e:
            # Booked in memory; the state file catches up on the next flush
            updated = self.ledger.get(account, asset)
            outcome.error = str(e)
            logger.critical(f"Exit {trade.trade_id} for {account}/{asset} booked but not saved: {e}")
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Ledger state not saved",
                    f"{account}/{asset} trade {trade.trade_id} booked in memory only: {e}",
                )

        outcome.status = "filled"
        outcome.liquidated_after = updated.liquidated_fraction if updated else None
        logger.info(
            f"✅ Exit filled: {account}/{asset} {action.reason} {confirmed} ({trade.trade_id})"
            + ("" if updated else " - position closed")
        )
        if self.metrics:
            self.metrics.record_exit(action.reason)
        return outcome

    def _flag(self, account: str, asset: str, error: str, result: SweepResult) -> None:
        logger.error(f"FLAGGED for inspection: {account}/{asset} - {error}")
        result.flagged.append(f"{account}/{asset}")
        result.skip(SKIP_DATA_ERROR)
        self._record_skip(SKIP_DATA_ERROR)
        if self.audit:
            self.audit.log_flagged(account, asset, error)
        if self.alerts:
            self.alerts.notify(AlertSeverity.CRITICAL, "Position flagged", f"{account}/{asset}: {error}")

    def _report(self, outcome: ActionOutcome) -> None:
        if self.audit:
            self.audit.log_action(
                outcome.account,
                outcome.asset,
                outcome.status,
                outcome.reason,
                outcome.requested_fraction,
                confirmed_fraction=outcome.confirmed_fraction,
                trade_id=outcome.trade_id,
                liquidated_after=outcome.liquidated_after,
                error=outcome.error,
            )
        if self.alerts:
            self.alerts.notify_action(
                outcome.account,
                outcome.asset,
                outcome.status,
                outcome.reason,
                fraction=outcome.confirmed_fraction if outcome.status == "filled" else outcome.requested_fraction,
                trade_id=outcome.trade_id,
                error=outcome.error,
            )
