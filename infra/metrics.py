"""Prometheus-backed metrics hooks for the control loop, executor and backtests."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "perptrader_"


class MetricsRecorder:
    """
    Expose trading loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        # Last-seen values kept even when Prometheus is disabled (tests, CLI summaries)
        self.counts: Dict[str, int] = {}

        if not self._enabled:
            return

        self._tick_summary = Summary(
            f"{METRIC_PREFIX}tick_duration_seconds",
            "Duration of a control-loop tick across all accounts",
        )
        self._account_cycles = Counter(
            f"{METRIC_PREFIX}account_cycles_total",
            "Per-account cycles by status",
            labelnames=("status",),
        )
        self._decisions = Counter(
            f"{METRIC_PREFIX}decisions_total",
            "Decisions received by action",
            labelnames=("action",),
        )
        self._rejections = Counter(
            f"{METRIC_PREFIX}validator_rejections_total",
            "Open decisions rejected before execution, by check",
            labelnames=("check",),
        )
        self._executions = Counter(
            f"{METRIC_PREFIX}executions_total",
            "Execution outcomes",
            labelnames=("outcome",),
        )
        self._emergency_closes = Counter(
            f"{METRIC_PREFIX}emergency_closes_total",
            "Positions closed because a stop-loss could not be confirmed",
        )
        self._breaker_trips = Counter(
            f"{METRIC_PREFIX}circuit_breaker_trips_total",
            "Circuit breaker trips",
            labelnames=("cause",),
        )
        self._lock_contention = Counter(
            f"{METRIC_PREFIX}lock_contention_total",
            "Lock acquisitions that failed",
            labelnames=("kind",),
        )
        self._open_positions = Gauge(
            f"{METRIC_PREFIX}open_positions",
            "Open positions per account",
            labelnames=("account",),
        )
        self._backtest_chunks = Counter(
            f"{METRIC_PREFIX}backtest_chunks_total",
            "Backtest chunks processed by outcome",
            labelnames=("outcome",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)
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

    def _count(self, key: str) -> None:
        self.counts[key] = self.counts.get(key, 0) + 1

    def observe_tick(self, duration_seconds: float) -> None:
        self._count("ticks")
        if self._enabled:
            self._tick_summary.observe(duration_seconds)

    def record_account_cycle(self, status: str) -> None:
        self._count(f"cycle:{status}")
        if self._enabled:
            self._account_cycles.labels(status=status).inc()

    def record_decision(self, action: str) -> None:
        self._count(f"decision:{action}")
        if self._enabled:
            self._decisions.labels(action=action).inc()

    def record_rejection(self, check: str) -> None:
        self._count(f"rejection:{check}")
        if self._enabled:
            self._rejections.labels(check=check).inc()

    def record_execution(self, outcome: str) -> None:
        self._count(f"execution:{outcome}")
        if self._enabled:
            self._executions.labels(outcome=outcome).inc()

    def record_emergency_close(self) -> None:
        self._count("emergency_close")
        if self._enabled:
            self._emergency_closes.inc()

    def record_breaker_trip(self, cause: str) -> None:
        self._count(f"breaker_trip:{cause}")
        if self._enabled:
            self._breaker_trips.labels(cause=cause).inc()

    def record_lock_contention(self, kind: str) -> None:
        self._count(f"lock_contention:{kind}")
        if self._enabled:
            self._lock_contention.labels(kind=kind).inc()

    def set_open_positions(self, account_id: str, count: int) -> None:
        if self._enabled:
            self._open_positions.labels(account=account_id).set(count)

    def record_backtest_chunk(self, outcome: str) -> None:
        self._count(f"backtest_chunk:{outcome}")
        if self._enabled:
            self._backtest_chunks.labels(outcome=outcome).inc()
