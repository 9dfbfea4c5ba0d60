"""
Position Ledger: Open Positions and Partial-Fill Bookkeeping

Owns every open PositionRecord for the process, keyed by (account, asset).

Rules:
- liquidated_fraction only moves on a confirmed executor result (apply)
- a record that reaches 1 (within LEDGER_EPSILON) is removed
- each key has its own lock; unrelated keys never wait on each other
- a key is claimed while its exit decision is in flight, so overlapping sweeps
  cannot double-liquidate
- trade ids already applied are ignored (duplicate confirmation delivery)
- a failed state write keeps the in-memory change and is retried by flush()
"""
import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Set, Tuple

from core.exceptions import DataError, DuplicatePosition, StateWriteFailure, UnknownPosition
from core.models import ONE, ZERO, ExitAction, PositionKey, PositionRecord, to_decimal

logger = logging.getLogger(__name__)

LEDGER_EPSILON = Decimal("1e-9")


class PositionLedger:
    """
    Thread-safe store of open positions.

    Records are immutable; every mutation swaps in a new record under the
    key's lock, so snapshot_all() can hand out references without copying.
    """

    MAX_APPLIED_HISTORY = 10000

    def __init__(self, state_store=None, epsilon: Decimal = LEDGER_EPSILON):
        """
        Initialize PositionLedger.

        Args:
            state_store: Optional StateStore; when set, the ledger restores from
                it at startup and saves after every mutation
            epsilon: Tolerance under 1 at which a position counts as fully liquidated
        """
        self.state_store = state_store
        self.epsilon = epsilon

        self._records: Dict[PositionKey, PositionRecord] = {}
        self._key_locks: Dict[PositionKey, threading.Lock] = {}
        self._in_flight: Set[PositionKey] = set()
        self._applied: "OrderedDict[str, None]" = OrderedDict()
        self._registry_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._dirty = False

        if self.state_store is not None:
            self._restore()

    def _restore(self) -> None:
        records, trade_ids = self.state_store.load_ledger()
        for record in records:
            if record.liquidated_fraction >= ONE - self.epsilon:
                logger.warning(f"Dropping fully liquidated record {record.account}/{record.asset} from state")
                continue
            self._records[record.key] = record
        for trade_id in trade_ids:
            self._applied[trade_id] = None
        logger.info(f"Restored {len(self._records)} open position(s), {len(self._applied)} applied trade id(s)")

    def _persist(self) -> None:
        """
        Write the current records and applied trade ids.

        Raises:
            StateWriteFailure: if the store could not be written; the ledger
                stays marked dirty until a later write succeeds
        """
        if self.state_store is None:
            return
        with self._persist_lock:
            with self._registry_lock:
                records = list(self._records.values())
                trade_ids = list(self._applied.keys())
            try:
                self.state_store.save_ledger(records, trade_ids)
            except OSError as e:
                self._dirty = True
                logger.error(f"Failed to save ledger state ({len(records)} open, {len(trade_ids)} trade ids): {e}")
                raise StateWriteFailure(f"Ledger state not saved: {e}") from e
            self._dirty = False

    @property
    def needs_flush(self) -> bool:
        return self._dirty

    def flush(self) -> None:
        """Retry a failed state write. No-op when the last write succeeded."""
        if self._dirty:
            self._persist()
            logger.info("Ledger state saved after earlier write failure")

    def _lock_for(self, key: PositionKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _remember_trade(self, trade_id: str) -> None:
        with self._registry_lock:
            self._applied[trade_id] = None
            while len(self._applied) > self.MAX_APPLIED_HISTORY:
                self._applied.popitem(last=False)

    def is_applied(self, trade_id: str) -> bool:
        with self._registry_lock:
            return trade_id in self._applied

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def open(
        self,
        account: str,
        asset: str,
        entry_price,
        entry_time: Optional[datetime] = None,
        entry_volume=ZERO,
    ) -> PositionRecord:
        """
        Create a record for a confirmed entry.

        Raises:
            DuplicatePosition: if the key already has a live record
            DataError: if entry price or volume are out of range
            StateWriteFailure: if the state file could not be written (the record stands)
        """
        entry_price = to_decimal(entry_price)
        entry_volume = to_decimal(entry_volume)
        if entry_price is None or entry_price <= 0:
            raise DataError(f"entry_price must be > 0, got {entry_price}", account=account, asset=asset)
        if entry_volume is None or entry_volume < 0:
            raise DataError(f"entry_volume must be >= 0, got {entry_volume}", account=account, asset=asset)

        entry_time = entry_time or datetime.now(timezone.utc)
        if entry_time.tzinfo is None:
            entry_time = entry_time.replace(tzinfo=timezone.utc)

        key = (account, asset)
        record = PositionRecord(
            account=account,
            asset=asset,
            entry_price=entry_price,
            entry_time=entry_time,
            entry_volume=entry_volume,
        )
        with self._lock_for(key):
            with self._registry_lock:
                if key in self._records:
                    raise DuplicatePosition(account, asset)
                self._records[key] = record
            self._persist()

        logger.info(f"OPEN: {account}/{asset} @ {entry_price} (volume={entry_volume})")
        return record

    def apply(
        self,
        account: str,
        asset: str,
        action: Optional[ExitAction],
        confirmed_fraction,
        trade_id: Optional[str] = None,
    ) -> Optional[PositionRecord]:
        """
        Book a confirmed liquidation.

        Args:
            account: Account of the position
            asset: Asset of the position
            action: The exit action that was executed (for logging)
            confirmed_fraction: Fraction of the original size the executor sold
            trade_id: Executor trade id; a repeated id is ignored

        Returns:
            The updated record, or None once the position is fully liquidated

        Raises:
            UnknownPosition: if no record exists for the key
            DataError: if confirmed_fraction is negative
            StateWriteFailure: if the state file could not be written (the booking stands)
        """
        confirmed = to_decimal(confirmed_fraction)
        if confirmed is None or confirmed < 0:
            raise DataError(
                f"confirmed_fraction must be >= 0, got {confirmed_fraction}", account=account, asset=asset
            )

        key = (account, asset)
        reason = getattr(action, "reason", "manual")
        with self._lock_for(key):
            with self._registry_lock:
                record = self._records.get(key)
                duplicate = trade_id is not None and trade_id in self._applied

            if duplicate:
                logger.warning(f"Trade {trade_id} already applied to {account}/{asset}, ignoring")
                return record

            if record is None:
                with self._registry_lock:
                    self._key_locks.pop(key, None)
                raise UnknownPosition(account, asset)

            new_fraction = min(ONE, record.liquidated_fraction + confirmed)
            if trade_id is not None:
                self._remember_trade(trade_id)

            if new_fraction >= ONE - self.epsilon:
                with self._registry_lock:
                    del self._records[key]
                    self._key_locks.pop(key, None)
                updated = None
                logger.info(f"CLOSED: {account}/{asset} ({reason}, +{confirmed})")
            else:
                updated = record.with_liquidated(new_fraction)
                with self._registry_lock:
                    self._records[key] = updated
                logger.info(f"REDUCED: {account}/{asset} ({reason}) liquidated {record.liquidated_fraction} → {new_fraction}")

            self._persist()
            return updated

    def remove(self, account: str, asset: str) -> PositionRecord:
        """
        Drop a record outside the exit flow (manual intervention).

        Raises:
            UnknownPosition: if no record exists for the key
        """
        key = (account, asset)
        with self._lock_for(key):
            with self._registry_lock:
                record = self._records.pop(key, None)
                self._key_locks.pop(key, None)
            if record is None:
                raise UnknownPosition(account, asset)
            self._persist()
        logger.warning(f"REMOVED: {account}/{asset} (manual)")
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, account: str, asset: str) -> Optional[PositionRecord]:
        with self._registry_lock:
            return self._records.get((account, asset))

    def has(self, account: str, asset: str) -> bool:
        return self.get(account, asset) is not None

    def snapshot_all(self, account: str) -> Tuple[PositionRecord, ...]:
        """Point-in-time view of one account's open records, ordered by asset."""
        with self._registry_lock:
            records = [r for (acct, _), r in self._records.items() if acct == account]
        return tuple(sorted(records, key=lambda r: r.asset))

    def accounts(self) -> List[str]:
        with self._registry_lock:
            return sorted({acct for acct, _ in self._records})

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    @contextmanager
    def claim(self, account: str, asset: str) -> Iterator[Tuple[bool, Optional[PositionRecord]]]:
        """
        Mark a key as in flight for the duration of one exit decision.

        Yields (claimed, record). claimed is False when another sweep already
        holds the key; record is None when the key was claimed but no record
        exists any more. The key lock is held only while reading the record,
        not for the body of the with-block.
        """
        key = (account, asset)
        with self._registry_lock:
            if key in self._in_flight:
                logger.debug(f"{account}/{asset} already in flight, skipping")
                claimed = False
            else:
                self._in_flight.add(key)
                claimed = True

        if not claimed:
            yield False, None
            return

        try:
            with self._lock_for(key):
                with self._registry_lock:
                    record = self._records.get(key)
                    if record is None:
                        self._key_locks.pop(key, None)
            yield True, record
        finally:
            with self._registry_lock:
                self._in_flight.discard(key)
