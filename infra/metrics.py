"""Prometheus-backed metrics hooks for the order lifecycle engine."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIXES = ("lifecycle_", "broker_")


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Every record_* call also updates an in-process snapshot so the engine's
    status view works with the exporter disabled.
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

        self._counts: Dict[str, Dict[str, int]] = {}
        self._last_api_event: Optional[Dict[str, str]] = None
        self._realized_usd_total = 0.0
        self._tracked_positions = 0
        self._orphans = 0

        if not self._enabled:
            return

        self._api_latency_summary = Summary(
            "broker_api_latency_seconds",
            "Latency of broker API calls",
            labelnames=("endpoint", "channel", "status"),
        )
        self._quote_failures_counter = Counter(
            "lifecycle_quote_failures_total",
            "Quote acquisition failures by error code",
            labelnames=("code",),
        )
        self._entry_skips_counter = Counter(
            "lifecycle_entry_skips_total",
            "Entry attempts skipped, grouped by reason",
            labelnames=("reason",),
        )
        self._entries_counter = Counter(
            "lifecycle_entries_total",
            "Entry attempts that reached the broker, by outcome",
            labelnames=("outcome",),  # filled, rejected, not_filled, dry_run
        )
        self._exit_actions_counter = Counter(
            "lifecycle_exit_actions_total",
            "Exit management actions taken",
            labelnames=("action",),
        )
        self._realized_pnl_counter = Counter(
            "lifecycle_realized_pnl_events_total",
            "Closed positions by exit reason",
            labelnames=("reason",),
        )
        self._realized_pnl_gauge = Gauge(
            "lifecycle_realized_pnl_usd",
            "Cumulative realized net PnL in USD since start",
        )
        self._tracked_gauge = Gauge(
            "lifecycle_tracked_positions",
            "Number of positions with a live ExitState",
        )
        self._orphans_gauge = Gauge(
            "lifecycle_orphan_positions",
            "Positions without a protective exit after the last reconcile",
        )
        self._reconcile_counter = Counter(
            "lifecycle_reconcile_runs_total",
            "Reconciliation passes by outcome",
            labelnames=("outcome",),
        )
        self._circuit_breaker_gauge = Gauge(
            "broker_circuit_breaker_state",
            "Circuit breaker state (0=closed/safe, 1=open/tripped)",
            labelnames=("breaker",),
        )
        self._circuit_breaker_trips_counter = Counter(
            "broker_circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            labelnames=("breaker",),
        )
        self._limiter_gauge = Gauge(
            "broker_limiter_slots",
            "Concurrency limiter occupancy",
            labelnames=("channel", "kind"),  # kind: in_flight, waiting
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(_METRIC_PREFIXES) for name in names):
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

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)

        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, family: str, label: str) -> None:
        bucket = self._counts.setdefault(family, {})
        bucket[label] = bucket.get(label, 0) + 1

    def record_api_call(self, endpoint: str, channel: str, duration: float, status: str) -> None:
        self._last_api_event = {
            "endpoint": endpoint,
            "channel": channel,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._enabled:
            self._api_latency_summary.labels(endpoint=endpoint, channel=channel, status=status).observe(duration)

    def record_quote_failure(self, code: str) -> None:
        self._bump("quote_failures", code)
        if self._enabled:
            self._quote_failures_counter.labels(code=code).inc()

    def record_entry_skip(self, reason: str) -> None:
        # Reasons come from SkipReason, so label cardinality stays bounded
        self._bump("entry_skips", reason)
        if self._enabled:
            self._entry_skips_counter.labels(reason=reason).inc()

    def record_entry(self, outcome: str) -> None:
        self._bump("entries", outcome)
        if self._enabled:
            self._entries_counter.labels(outcome=outcome).inc()

    def record_exit_action(self, action: str) -> None:
        self._bump("exit_actions", action)
        if self._enabled:
            self._exit_actions_counter.labels(action=action).inc()

    def record_realized_pnl(self, symbol: str, net_usd: float, reason: str) -> None:
        """Per-symbol detail goes to the REALIZED_PNL log line, not a label."""
        self._bump("realized", reason)
        self._realized_usd_total += net_usd
        if self._enabled:
            self._realized_pnl_counter.labels(reason=reason).inc()
            self._realized_pnl_gauge.set(self._realized_usd_total)

    def record_tracked_positions(self, count: int) -> None:
        self._tracked_positions = max(count, 0)
        if self._enabled:
            self._tracked_gauge.set(self._tracked_positions)

    def record_orphans(self, count: int) -> None:
        self._orphans = max(count, 0)
        if self._enabled:
            self._orphans_gauge.set(self._orphans)

    def record_reconcile(self, outcome: str) -> None:
        self._bump("reconcile", outcome)
        if self._enabled:
            self._reconcile_counter.labels(outcome=outcome).inc()

    def record_circuit_breaker_state(self, breaker_name: str, is_open: bool) -> None:
        """Record circuit breaker state (0=closed/safe, 1=open/tripped)"""
        if self._enabled:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1 if is_open else 0)

    def record_circuit_breaker_trip(self, breaker_name: str) -> None:
        self._bump("breaker_trips", breaker_name)
        if self._enabled:
            self._circuit_breaker_gauge.labels(breaker=breaker_name).set(1)
            self._circuit_breaker_trips_counter.labels(breaker=breaker_name).inc()

    def record_limiter(self, channel: str, in_flight: int, waiting: int) -> None:
        if self._enabled:
            self._limiter_gauge.labels(channel=channel, kind="in_flight").set(max(in_flight, 0))
            self._limiter_gauge.labels(channel=channel, kind="waiting").set(max(waiting, 0))

    def last_api_event(self) -> Optional[Dict[str, str]]:
        return dict(self._last_api_event) if self._last_api_event else None

    def snapshot(self) -> Dict[str, object]:
        return {
            "counts": {family: dict(values) for family, values in self._counts.items()},
            "realized_usd_total": round(self._realized_usd_total, 4),
            "tracked_positions": self._tracked_positions,
            "orphans": self._orphans,
            "last_api_event": self.last_api_event(),
        }


__all__ = ["MetricsRecorder"]
