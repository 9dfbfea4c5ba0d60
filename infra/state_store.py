"""
Infrastructure: Ledger State Store

Persistent ledger state with atomic writes. Holds open position records and
the bounded history of applied trade ids, so duplicate confirmations stay
guarded across restarts.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from pathlib import Path
import logging

from core.models import PositionRecord

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "positions": [],  # serialized PositionRecord dicts
    "applied_trade_ids": [],  # most recent last
    "saved_at": None,
}


class StateStore:
    """
    Persistent ledger storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Bounded applied trade id history
    - Serialized writes from concurrent ledger keys
    """

    MAX_APPLIED_HISTORY = 10000

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $LEDGER_STATE_FILE or data/.ledger.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            state_file = os.getenv("LEDGER_STATE_FILE", "data/.ledger.json")
            self.state_file = Path(state_file)

        # Ensure directory exists
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self._write_lock = threading.Lock()
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged
        """
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return dict(DEFAULT_STATE)

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return dict(DEFAULT_STATE)

        if not isinstance(data, dict):
            logger.warning("Invalid state file format, using defaults")
            return dict(DEFAULT_STATE)

        return {**DEFAULT_STATE, **data}

    def load_ledger(self) -> Tuple[List[PositionRecord], List[str]]:
        """Return (records, applied trade ids) from disk. Corrupt entries are skipped and logged."""
        state = self.load()
        records: List[PositionRecord] = []
        for raw in state.get("positions") or []:
            try:
                records.append(PositionRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                logger.error(f"Skipping unreadable position entry {raw!r}: {e}")
        trade_ids = [str(t) for t in state.get("applied_trade_ids") or []]
        return records, trade_ids

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Args:
            state: State dict to save
        """
        with self._write_lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".ledger_",
                suffix=".json.tmp"
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(temp_path, self.state_file)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            logger.debug("Saved ledger state to file")

    def save_ledger(self, records: Iterable[PositionRecord], applied_trade_ids: Iterable[str]) -> None:
        trade_ids = list(applied_trade_ids)[-self.MAX_APPLIED_HISTORY:]
        self.save({
            "positions": [r.to_dict() for r in records],
            "applied_trade_ids": trade_ids,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        })
