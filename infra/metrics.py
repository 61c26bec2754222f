"""Prometheus-backed metrics hooks for the supervisor loops, risk gate and watchlist."""

from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Last-seen values are also kept in memory so callers (and tests) can read
    them back without scraping.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9090):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9090) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_loop_durations: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._tallies: TallyCounter = TallyCounter()

        if not self._enabled:
            self._loop_summary = None
            self._loop_counter = None
            self._positions_gauge = None
            self._watchlist_gauge = None
            self._daily_pnl_gauge = None
            self._deployable_gauge = None
            self._dead_data_gauge = None
            self._paused_gauge = None
            self._closes_counter = None
            self._partials_counter = None
            self._denials_counter = None
            self._exec_failures_counter = None
            self._watch_transitions_counter = None
            return

        self._loop_summary = Summary(  # type: ignore[assignment]
            "sniper_loop_duration_seconds",
            "Duration of one scheduler tick",
            labelnames=("loop",),
        )
        self._loop_counter = Counter(  # type: ignore[assignment]
            "sniper_loop_ticks_total",
            "Scheduler ticks by loop and status",
            labelnames=("loop", "status"),
        )
        self._positions_gauge = Gauge(  # type: ignore[assignment]
            "sniper_open_positions",
            "Number of currently open positions",
        )
        self._watchlist_gauge = Gauge(  # type: ignore[assignment]
            "sniper_watchlist_size",
            "Opportunities currently on the dip watchlist",
        )
        self._daily_pnl_gauge = Gauge(  # type: ignore[assignment]
            "sniper_daily_pnl_sol",
            "Realized P&L since the last daily reset (SOL)",
        )
        self._deployable_gauge = Gauge(  # type: ignore[assignment]
            "sniper_deployable_capital_sol",
            "Available capital above the reserve floor (SOL)",
        )
        self._dead_data_gauge = Gauge(  # type: ignore[assignment]
            "sniper_dead_data_positions",
            "Open positions currently without a live price",
        )
        self._paused_gauge = Gauge(  # type: ignore[assignment]
            "sniper_paused",
            "Daily-loss pause state (0=trading, 1=paused)",
        )
        self._closes_counter = Counter(  # type: ignore[assignment]
            "sniper_positions_closed_total",
            "Full closes by reason and supervisory mode",
            labelnames=("reason", "mode"),
        )
        self._partials_counter = Counter(  # type: ignore[assignment]
            "sniper_partial_exits_total",
            "Profit-ladder partial exits",
            labelnames=("mode",),
        )
        self._denials_counter = Counter(  # type: ignore[assignment]
            "sniper_gate_denials_total",
            "Entries denied by the risk gate",
            labelnames=("reason",),
        )
        self._exec_failures_counter = Counter(  # type: ignore[assignment]
            "sniper_execution_failures_total",
            "Orders the venue did not fill",
            labelnames=("side",),
        )
        self._watch_transitions_counter = Counter(  # type: ignore[assignment]
            "sniper_watchlist_transitions_total",
            "Watchlist state transitions",
            labelnames=("state",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY

            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith("sniper_") for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def record_loop_tick(self, loop: str, duration: float, status: str = "ok") -> None:
        self._last_loop_durations[loop] = duration
        self._tallies[f"tick:{loop}:{status}"] += 1
        if self._enabled and self._loop_summary and self._loop_counter:
            self._loop_summary.labels(loop=loop).observe(duration)
            self._loop_counter.labels(loop=loop, status=status).inc()

    def record_ledger(self, open_positions: int, daily_pnl_sol: float, deployable_sol: float, paused: bool) -> None:
        """Publish the ledger gauges in one call (done once per slow tick)."""
        self._gauges.update(
            open_positions=open_positions,
            daily_pnl_sol=daily_pnl_sol,
            deployable_sol=deployable_sol,
            paused=1.0 if paused else 0.0,
        )
        if self._enabled and self._positions_gauge:
            self._positions_gauge.set(max(open_positions, 0))
            self._daily_pnl_gauge.set(daily_pnl_sol)
            self._deployable_gauge.set(max(deployable_sol, 0.0))
            self._paused_gauge.set(1 if paused else 0)

    def record_watchlist_size(self, size: int) -> None:
        self._gauges["watchlist"] = size
        if self._enabled and self._watchlist_gauge:
            self._watchlist_gauge.set(max(size, 0))

    def record_dead_data_positions(self, count: int) -> None:
        self._gauges["dead_data"] = count
        if self._enabled and self._dead_data_gauge:
            self._dead_data_gauge.set(max(count, 0))

    def record_close(self, reason: str, mode: str) -> None:
        self._tallies[f"close:{reason}"] += 1
        if self._enabled and self._closes_counter:
            self._closes_counter.labels(reason=reason, mode=mode).inc()

    def record_partial_exit(self, mode: str) -> None:
        self._tallies[f"partial:{mode}"] += 1
        if self._enabled and self._partials_counter:
            self._partials_counter.labels(mode=mode).inc()

    def record_gate_denial(self, reason: str) -> None:
        normalized = self._normalize_denial_reason(reason)
        self._tallies[f"denial:{normalized}"] += 1
        if self._enabled and self._denials_counter:
            self._denials_counter.labels(reason=normalized).inc()

    def record_execution_failure(self, side: str) -> None:
        self._tallies[f"exec_failure:{side}"] += 1
        if self._enabled and self._exec_failures_counter:
            self._exec_failures_counter.labels(side=side).inc()

    def record_watch_transition(self, state: str) -> None:
        self._tallies[f"watch:{state}"] += 1
        if self._enabled and self._watch_transitions_counter:
            self._watch_transitions_counter.labels(state=state).inc()

    def loop_snapshot(self) -> Dict[str, float]:
        return dict(self._last_loop_durations)

    def gauge_snapshot(self) -> Dict[str, float]:
        return dict(self._gauges)

    def count(self, key: str) -> int:
        return self._tallies.get(key, 0)

    @staticmethod
    def _normalize_denial_reason(reason: str) -> str:
        """Normalize denial reasons to keep label cardinality bounded"""
        reason_lower = reason.lower()

        if "daily loss" in reason_lower:
            return "daily_loss"
        elif "pause" in reason_lower:
            return "paused"
        elif "max positions" in reason_lower or "open positions" in reason_lower:
            return "position_cap"
        elif "deployable" in reason_lower or "capital" in reason_lower:
            return "insufficient_capital"
        elif "already" in reason_lower:
            return "duplicate_asset"
        elif "confidence" in reason_lower:
            return "not_actionable"
        else:
            return "other"


__all__ = ["MetricsRecorder"]
