"""
Lifecycle Runner: Main Loop

Wires the broker, quote service, entry signals, lifecycle engine and
reconciler together and drives them on independent timers:

1. Entry scan      (evaluate universe → open positions for ready signals)
2. Exit management (one manage tick per tracked symbol)
3. Reconciliation  (adopt / repair / drop against broker truth)

Each timer runs in its own daemon thread; a slow task never delays another.
Management ticks and entries fan out onto a shared thread pool.
"""

import random
import signal
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging

import yaml

from core.broker_alpaca import AlpacaBroker
from core.entry_signals import EntrySignalEngine
from core.exceptions import ConfigError, TradingError
from core.execution import OrderLifecycleEngine
from core.quotes import QuoteService
from core.reconcile import Reconciler
from infra.cache import ReadThroughCache
from infra.metrics import MetricsRecorder
from infra.symbols import is_crypto, normalize_symbol

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval_seconds`` (+ jitter) on a daemon thread until stopped."""

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], Any],
                 stop_event: threading.Event, jitter_pct: float = 10.0):
        self.name = name
        self.interval_seconds = max(float(interval_seconds), 0.1)
        self.fn = fn
        self.stop_event = stop_event
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))  # Clamp 0-20%
        self.runs = 0
        self.failures = 0
        self.last_duration: Optional[float] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> None:
        start = time.monotonic()
        try:
            self.fn()
        except Exception:
            self.failures += 1
            logger.exception(f"Task {self.name} failed")
        finally:
            self.runs += 1
            self.last_duration = time.monotonic() - start

    def _loop(self) -> None:
        logger.info(f"Starting task {self.name} (interval={self.interval_seconds}s, jitter={self.jitter_pct:.1f}%)")
        while not self.stop_event.is_set():
            self.run_once()
            jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
            sleep_for = max(0.0, self.interval_seconds - (self.last_duration or 0.0)) + jitter
            if self.last_duration and self.last_duration > self.interval_seconds:
                logger.warning(f"Task {self.name} overran its interval ({self.last_duration:.2f}s)")
            self.stop_event.wait(sleep_for)
        logger.info(f"Task {self.name} stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_duration": self.last_duration,
        }


class TradingEngine:
    """
    Process-level orchestrator.

    Responsibilities:
    - Load and validate config
    - Build components and wire the reconciler's entry gate
    - Run the entry, management and reconciliation timers
    - Expose the façade operations (submit/replace/cancel, status, orphans)
    """

    def __init__(self, config_dir: str = "config", *, broker=None, configure_logging: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ConfigError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy = self._load_yaml("policy.yaml")

        self.mode = str(self.app_config.get("app", {}).get("mode", "PAPER")).upper()
        if configure_logging:
            self._configure_logging()

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.entry_interval_seconds = float(loop_cfg.get("entry_interval_seconds", 60))
        self.manage_interval_seconds = float(loop_cfg.get("manage_interval_seconds", 5))
        self.reconcile_interval_seconds = float(
            loop_cfg.get("reconcile_interval_seconds",
                         (self.policy.get("reconcile", {}) or {}).get("interval_seconds", 60))
        )
        self.instrument_refresh_seconds = float(loop_cfg.get("instrument_refresh_seconds", 3600))
        self.jitter_pct = float(loop_cfg.get("jitter_pct", 10.0))
        self.worker_threads = int(loop_cfg.get("worker_threads", 8))

        metrics_cfg = self.app_config.get("metrics", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )

        self.broker = broker or AlpacaBroker.from_config(self.app_config, self.policy, metrics=self.metrics)
        self.quotes = QuoteService(self.broker, self.policy.get("quotes", {}), metrics=self.metrics)

        cache_cfg = self.policy.get("cache", {}) or {}
        self.clock_cache = ReadThroughCache("market_clock", float(cache_cfg.get("clock_ttl_seconds", 30)))
        self.entry_signals = EntrySignalEngine(
            self.broker, self.quotes, self.policy,
            market_clock=self.market_clock, metrics=self.metrics,
        )
        self.engine = OrderLifecycleEngine(
            self.broker, self.quotes, self.policy,
            mode=self.mode, entry_signals=self.entry_signals, metrics=self.metrics,
        )
        self.reconciler = Reconciler(self.engine, self.policy, metrics=self.metrics)
        self.engine.entry_gate = self.reconciler.entry_gate

        universe_cfg = self.policy.get("universe", {}) or {}
        self.configured_symbols = [normalize_symbol(s) for s in universe_cfg.get("symbols", []) or []]
        self.max_universe = int(universe_cfg.get("max_symbols", 20))
        self.universe: List[str] = list(self.configured_symbols)
        self.supported: Dict[str, Dict[str, Any]] = {}

        self._stop = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=self.worker_threads, thread_name_prefix="lifecycle")
        self._pending_entries: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self.tasks: List[PeriodicTask] = []

        logger.info(
            f"Initialized TradingEngine in {self.mode} mode (universe={len(self.universe)} symbols, "
            f"entry={self.entry_interval_seconds}s, manage={self.manage_interval_seconds}s, "
            f"reconcile={self.reconcile_interval_seconds}s)"
        )

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _configure_logging(self) -> None:
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/lifecycle.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def market_clock(self) -> Dict[str, Any]:
        return self.clock_cache.get("clock", self.broker.get_clock)

    # ===== Instruments =====
    def refresh_supported_instruments(self) -> int:
        """Reload tradable assets; returns the resulting universe size."""
        try:
            assets = self.broker.list_assets("crypto")
            if any(not is_crypto(s) for s in self.configured_symbols):
                assets = assets + self.broker.list_assets("us_equity")
        except TradingError as exc:
            logger.warning(f"Instrument refresh failed; keeping previous universe: {exc}")
            return len(self.universe)

        supported = {a["symbol"]: a for a in assets if a.get("tradable", True) and a.get("symbol")}
        self.supported = supported
        self.engine.asset_info = dict(supported)

        if self.configured_symbols:
            universe = [s for s in self.configured_symbols if s in supported]
            dropped = sorted(set(self.configured_symbols) - set(universe))
            if dropped:
                logger.warning(f"Configured symbols not tradable at the broker: {', '.join(dropped)}")
        else:
            universe = sorted(s for s in supported if s.endswith("/USD"))[: self.max_universe]
        self.universe = universe
        logger.info(f"Supported instruments refreshed: {len(supported)} assets, universe={len(universe)}")
        return len(universe)

    # ===== Timers =====
    def run_entry_scan(self) -> int:
        """Scan the universe and hand ready signals to the pool; returns the number submitted."""
        if self.reconciler.entries_halted:
            logger.warning(f"Entry scan skipped: {self.reconciler.entry_gate()}")
            return 0
        self.reconciler.maybe_run("pre_entry")
        if self.reconciler.entries_halted:
            return 0

        tracked = set(self.engine.book.active_symbols())
        with self._pending_lock:
            pending = {s for s, f in self._pending_entries.items() if not f.done()}
        candidates = [s for s in self.universe if s not in tracked and s not in pending]
        if not candidates:
            return 0

        free = self.engine.sizing.max_active_symbols - len(tracked) - len(pending)
        if free <= 0:
            logger.debug("Entry scan skipped: active symbol cap reached")
            return 0

        signals = self.entry_signals.scan(candidates)
        submitted = 0
        for sig in signals[:free]:
            future = self._pool.submit(self.engine.open_position, sig)
            future.add_done_callback(self._log_task_error)
            with self._pending_lock:
                self._pending_entries[sig.symbol] = future
            submitted += 1
        logger.info(f"Entry scan: {len(candidates)} candidates, {len(signals)} ready, {submitted} submitted")
        return submitted

    def run_manage_tick(self) -> int:
        symbols = self.engine.book.tracked_symbols()
        for symbol in symbols:
            future = self._pool.submit(self.engine.manage_tick, symbol)
            future.add_done_callback(self._log_task_error)
        self._sample_metrics()
        return len(symbols)

    def run_reconcile(self) -> None:
        self.reconciler.run_once("scheduled")

    @staticmethod
    def _log_task_error(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    def _sample_metrics(self) -> None:
        for channel, status in self.broker.limiters.status().items():
            self.metrics.record_limiter(channel, status["active"], status["queued"])
        breaker = self.broker.market_data_breaker
        self.metrics.record_circuit_breaker_state(breaker.name, breaker.is_open())

    def run_once(self) -> Dict[str, Any]:
        """One synchronous pass of every timer (``--once``)."""
        self.refresh_supported_instruments()
        self.run_reconcile()
        results = [self._pool.submit(self.engine.open_position, sig)
                   for sig in self.entry_signals.scan(self.universe)] if not self.reconciler.entries_halted else []
        entries = [f.result() for f in results]
        for symbol in self.engine.book.tracked_symbols():
            self.engine.manage_tick(symbol)
        return {"entries": [e.__dict__ for e in entries], "status": self.status_snapshot()}

    def start(self) -> None:
        self.metrics.start()
        self.refresh_supported_instruments()
        self.run_reconcile()
        self.tasks = [
            PeriodicTask("reconcile", self.reconcile_interval_seconds, self.run_reconcile, self._stop, self.jitter_pct),
            PeriodicTask("manage", self.manage_interval_seconds, self.run_manage_tick, self._stop, self.jitter_pct),
            PeriodicTask("entry", self.entry_interval_seconds, self.run_entry_scan, self._stop, self.jitter_pct),
            PeriodicTask("instruments", self.instrument_refresh_seconds, self.refresh_supported_instruments,
                         self._stop, self.jitter_pct),
        ]
        for task in self.tasks:
            task.start()

    def stop(self, timeout: float = 10.0) -> None:
        logger.warning("Stopping TradingEngine; resting exit orders are left in place")
        self._stop.set()
        for task in self.tasks:
            task.join(timeout)
        self._pool.shutdown(wait=True)

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()
        logger.info("Trading engine stopped cleanly.")

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        self._stop.set()

    # ===== Façade =====
    def submit_order(self, symbol: str, side: str, qty: float, **kwargs) -> Dict[str, Any]:
        return self.engine.submit_order(symbol, side, qty, **kwargs)

    def replace_order(self, order_id: str, **kwargs) -> Dict[str, Any]:
        return self.engine.replace_order(order_id, **kwargs)

    def cancel_order(self, order_id: str) -> bool:
        return self.engine.cancel_order(order_id)

    def orphan_report(self) -> Dict[str, Any]:
        return self.reconciler.orphan_report()

    def status_snapshot(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "universe": list(self.universe),
            "engine": self.engine.status_snapshot(),
            "quotes": self.quotes.status_snapshot(),
            "limiters": self.broker.limiters.status(),
            "market_data_breaker": self.broker.market_data_breaker.snapshot(),
            "entry_skips": dict(self.entry_signals.skip_counts),
            "entries_halted": self.reconciler.entries_halted,
            "tasks": {task.name: task.status() for task in self.tasks},
            "metrics": self.metrics.snapshot(),
        }


def main():
    """Entry point"""
    import argparse
    import json

    parser = argparse.ArgumentParser(description="Order lifecycle engine")
    parser.add_argument("--once", action="store_true", help="Run one pass of every task and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    engine = TradingEngine(config_dir=args.config_dir)

    if args.once:
        print(json.dumps(engine.run_once(), indent=2, default=str))
        return

    signal.signal(signal.SIGINT, engine._handle_stop)
    signal.signal(signal.SIGTERM, engine._handle_stop)
    engine.run_forever()


if __name__ == "__main__":
    main()
