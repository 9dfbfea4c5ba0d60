"""
Exit Manager Core: Audit Logger

Structured JSONL trail of every exit decision, its outcome, and every record
flagged for manual inspection.
"""

import json
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Event kinds:
    - action: an exit was executed (filled) or declined (failed)
    - open: a new position was booked
    - flagged: a record or snapshot was impossible and left for inspection
    - sweep: one summary line per monitor sweep

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        # Ensure directory exists
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def _write(self, kind: str, payload: Dict[str, Any]) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            **payload,
        }
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_action(
        self,
        account: str,
        asset: str,
        status: str,
        reason: str,
        requested_fraction: Any,
        confirmed_fraction: Any = None,
        trade_id: Optional[str] = None,
        liquidated_after: Any = None,
        error: Optional[str] = None,
    ) -> None:
        self._write("action", {
            "account": account,
            "asset": asset,
            "status": status,
            "reason": reason,
            "requested_fraction": requested_fraction,
            "confirmed_fraction": confirmed_fraction,
            "trade_id": trade_id,
            "liquidated_after": liquidated_after,
            "error": error,
        })

    def log_open(self, account: str, asset: str, entry_price: Any, entry_volume: Any, trade_id: str) -> None:
        self._write("open", {
            "account": account,
            "asset": asset,
            "entry_price": entry_price,
            "entry_volume": entry_volume,
            "trade_id": trade_id,
        })

    def log_flagged(self, account: str, asset: str, error: str) -> None:
        self._write("flagged", {"account": account, "asset": asset, "error": error})

    def log_sweep(self, ts: datetime, mode: str, summary: Dict[str, Any]) -> None:
        self._write("sweep", {"cycle_started": ts.isoformat(), "mode": mode, **summary})

    def get_recent(self, n: int = 10, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries, optionally filtered by kind.

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if kind and entry.get("kind") != kind:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
