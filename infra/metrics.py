"""Prometheus-backed metrics hooks for the exit monitor loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "exitmgr_"


@dataclass
class SweepStats:
    status: str
    evaluated: int
    actions: int
    skipped: int
    failures: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose sweep stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_sweep_stats: Optional[SweepStats] = None
        self._exit_counts: Dict[str, int] = {}
        self._skip_counts: Dict[str, int] = {}

        if not self._enabled:
            self._sweep_summary = None
            self._sweep_counter = None
            self._exit_counter = None
            self._skip_counter = None
            self._execution_failure_counter = None
            self._positions_gauge = None
            return

        self._sweep_summary = Summary(
            f"{METRIC_PREFIX}sweep_duration_seconds",
            "Duration of one monitor sweep over all open positions",
        )
        self._sweep_counter = Counter(
            f"{METRIC_PREFIX}sweep_total",
            "Monitor sweeps by status",
            labelnames=("status",),
        )
        self._exit_counter = Counter(
            f"{METRIC_PREFIX}exits_total",
            "Confirmed exits by reason",
            labelnames=("reason",),
        )
        self._skip_counter = Counter(
            f"{METRIC_PREFIX}skipped_total",
            "Positions skipped in a sweep, grouped by cause",
            labelnames=("cause",),  # data_unavailable, data_error, in_flight, closed, deadline
        )
        self._execution_failure_counter = Counter(
            f"{METRIC_PREFIX}execution_failures_total",
            "Executor declines or errors",
            labelnames=("reason",),
        )
        self._positions_gauge = Gauge(
            f"{METRIC_PREFIX}open_positions",
            "Number of currently open positions",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_sweep(self, stats: SweepStats) -> None:
        if self._enabled:
            self._sweep_summary.observe(stats.duration_seconds)
            self._sweep_counter.labels(status=stats.status).inc()
        self._last_sweep_stats = stats

    def record_exit(self, reason: str) -> None:
        self._exit_counts[reason] = self._exit_counts.get(reason, 0) + 1
        if self._enabled:
            self._exit_counter.labels(reason=reason).inc()

    def record_skip(self, cause: str) -> None:
        self._skip_counts[cause] = self._skip_counts.get(cause, 0) + 1
        if self._enabled:
            self._skip_counter.labels(cause=cause).inc()

    def record_execution_failure(self, reason: str) -> None:
        if self._enabled:
            self._execution_failure_counter.labels(reason=reason).inc()

    def record_open_positions(self, count: int) -> None:
        if self._enabled:
            self._positions_gauge.set(count)

    def last_sweep(self) -> Optional[SweepStats]:
        return self._last_sweep_stats

    def exit_counts(self) -> Dict[str, int]:
        return dict(self._exit_counts)

    def skip_counts(self) -> Dict[str, int]:
        return dict(self._skip_counts)
