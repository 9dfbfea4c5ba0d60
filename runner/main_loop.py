"""
Exit Manager Runner: Main Loop

Orchestrates periodic exit sweeps over every open position.

Flow per cycle:
1. Sweep all accounts (core/monitor_cycle.py)
2. Record metrics and audit summary
3. Sleep until the next period start

A sweep that runs past the next period's start finishes its current position
but starts no new ones. SIGINT/SIGTERM stop new work, let in-flight provider
and executor calls finish, then exit.
"""

import time
import random
import signal
import threading
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pathlib import Path
import logging

from core.audit_log import AuditLogger
from core.entry import EntryService
from core.execution import PaperExecutor, load_executor
from core.interfaces import MarketDataProvider, TradeExecutor
from core.market_data import DexToolsProvider
from core.monitor_cycle import MonitorCycle, SweepResult
from core.position_ledger import PositionLedger
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder, SweepStats
from infra.state_store import StateStore
from tools.config_validator import load_app_config, load_policy

logger = logging.getLogger(__name__)


class MonitorLoop:
    """
    Main exit-monitor orchestrator.

    Responsibilities:
    - Load and validate config (fail fast)
    - Wire ledger, provider, executor and sweep
    - Run periodic sweeps with a per-sweep deadline
    - Handle shutdown signals without abandoning trade confirmations
    """

    def __init__(self,
                 config_dir: str = "config",
                 provider: Optional[MarketDataProvider] = None,
                 executor: Optional[TradeExecutor] = None,
                 ledger: Optional[PositionLedger] = None,
                 install_signal_handlers: bool = True,
                 configure_logging: bool = True):
        self.config_dir = Path(config_dir)

        # Raises ConfigInvalid before anything starts
        self.policy_config = load_policy(self.config_dir)
        self.app_config = load_app_config(self.config_dir)

        self.mode = self.app_config.app.mode.upper()
        self.accounts: List[str] = list(self.app_config.accounts)
        self.loop_interval_seconds = float(self.policy_config.loop.interval_seconds)
        self.loop_jitter_pct = max(0.0, min(float(self.policy_config.loop.jitter_pct), 20.0))

        if configure_logging:
            self._configure_logging()

        logger.info(f"Starting exit manager in mode={self.mode} for {len(self.accounts)} account(s)")

        self.metrics = MetricsRecorder(
            enabled=self.app_config.monitoring.metrics_enabled,
            port=self.app_config.monitoring.metrics_port,
        )
        self.alerts = AlertService.from_config(self.app_config.alerts)
        self.audit = AuditLogger(self.app_config.audit.file)

        if ledger is None:
            state_file = self.app_config.state.file
            ledger = PositionLedger(state_store=StateStore(state_file) if state_file else None)
        self.ledger = ledger

        self.provider = provider or DexToolsProvider.from_config(self.app_config.market_data.model_dump())
        self.executor = executor or self._build_executor()

        self.cycle = MonitorCycle(
            ledger=self.ledger,
            provider=self.provider,
            executor=self.executor,
            policy=self.policy_config.exits,
            metrics=self.metrics,
            audit=self.audit,
            alerts=self.alerts,
            max_workers=self.policy_config.loop.max_workers,
        )
        self.entry = EntryService(
            ledger=self.ledger,
            provider=self.provider,
            executor=self.executor,
            entry_config=self.policy_config.entry,
            accounts=self.accounts,
            audit=self.audit,
            alerts=self.alerts,
        )

        self.cycle_number = 0
        self.last_result: Optional[SweepResult] = None

        # Shutdown flag
        self._stop_event = threading.Event()
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized MonitorLoop in {self.mode} mode")

    def _configure_logging(self) -> None:
        log_file = self.app_config.logging.file
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, self.app_config.logging.level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build_executor(self) -> TradeExecutor:
        if self.mode == "PAPER":
            fill_ratio = float(self.app_config.executor.options.get("fill_ratio", 1.0))
            logger.info("PAPER mode - trades are simulated")
            return PaperExecutor(self.provider, fill_ratio=fill_ratio)
        return load_executor(self.app_config.executor.class_path, self.app_config.executor.options)

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def _handle_stop(self, *_):
        """Stop after in-flight positions finish; no new positions are started."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - finishing in-flight positions")
        logger.warning("=" * 80)
        self._stop_event.set()

    def stop(self) -> None:
        self._handle_stop()

    def run_cycle(self, deadline: Optional[float] = None) -> SweepResult:
        """
        Run one sweep and record its outcome.

        Args:
            deadline: time.monotonic() value after which no new position starts
        """
        self.cycle_number += 1
        started = time.monotonic()
        cycle_started = datetime.now(timezone.utc)

        result = self.cycle.run_sweep(deadline=deadline, stop_event=self._stop_event)
        elapsed = time.monotonic() - started

        if not result.success:
            status = "error"
        elif result.deadline_hit:
            status = "overrun"
        elif result.outcomes:
            status = "acted"
        else:
            status = "idle"

        self.metrics.observe_sweep(SweepStats(
            status=status,
            evaluated=result.evaluated,
            actions=len(result.filled),
            skipped=sum(result.skipped.values()),
            failures=len(result.failures),
            duration_seconds=elapsed,
        ))
        self.audit.log_sweep(cycle_started, self.mode, {"cycle": self.cycle_number, "status": status, **result.summary()})

        if result.error:
            self.alerts.notify(AlertSeverity.CRITICAL, "Sweep error", result.error)

        logger.info(
            f"Cycle {self.cycle_number} {status}: evaluated={result.evaluated} "
            f"filled={len(result.filled)} failed={len(result.failures)} "
            f"skipped={result.skipped} open={len(self.ledger)} ({elapsed:.2f}s)"
        )
        self.last_result = result
        return result

    def run_forever(self, interval_seconds: Optional[float] = None, max_cycles: Optional[int] = None):
        """
        Run sweeps continuously on a fixed period.

        Args:
            interval_seconds: Seconds between sweep starts (default from policy.yaml)
            max_cycles: Stop after this many sweeps (None = until signalled)
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        self.metrics.start()
        logger.info(f"Starting continuous loop (interval={configured_interval}s, jitter={self.loop_jitter_pct:.1f}%)")

        cycles = 0
        while self.running:
            start = time.monotonic()
            self.run_cycle(deadline=start + configured_interval)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            elapsed = time.monotonic() - start
            jitter = random.uniform(0, self.loop_jitter_pct / 100.0) * configured_interval
            sleep_for = max(0.0, configured_interval - elapsed) + jitter

            logger.debug(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
            # Wakes immediately on shutdown
            self._stop_event.wait(sleep_for)

        logger.info("Exit monitor stopped cleanly.")

    def health_snapshot(self) -> Dict[str, Any]:
        last = self.last_result
        return {
            "mode": self.mode,
            "running": self.running,
            "cycle": self.cycle_number,
            "open_positions": len(self.ledger),
            "last_sweep": last.summary() if last else None,
        }


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Staged exit manager for speculative positions")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps (default: policy.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--open", metavar="ASSET", action="append", default=[],
                        help="Open a position in ASSET before monitoring (repeatable)")

    args = parser.parse_args()

    # Create loop (logging configured in __init__)
    loop = MonitorLoop(config_dir=args.config_dir)

    for asset in args.open:
        for report in loop.entry.open_position(asset):
            status = "opened" if report.success else f"failed ({report.error})"
            logger.info(f"{report.account}: {asset} {status}")

    if args.once:
        loop.run_cycle()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
