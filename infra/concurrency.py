"""
Concurrency primitives for outbound broker traffic.

- ConcurrencyLimiter: bounded in-flight requests with FIFO queueing beyond
  capacity, so scanning many symbols never floods the upstream.
- CircuitBreaker: sliding failure window -> time-boxed cooldown.
- FailureTracker: one CircuitBreaker per key (per-symbol quote failures).

All primitives are thread-safe and take an injectable ``clock`` returning
epoch seconds so tests can drive time explicitly.
"""
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Fixed-size concurrency limiter with FIFO fairness.

    Callers beyond ``max_concurrent`` wait in arrival order; a waiter is only
    admitted when it reaches the head of the queue and a slot is free.

    Usage:
        limiter = ConcurrencyLimiter("trading", 4)
        with limiter.slot():
            response = session.get(...)
    """

    def __init__(self, name: str, max_concurrent: int):
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got {max_concurrent}")
        self.name = name
        self.max_concurrent = int(max_concurrent)
        self._cond = threading.Condition()
        self._active = 0
        self._queue: Deque[object] = deque()
        self._completed = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        ticket = object()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._queue.append(ticket)
            try:
                while not (self._queue[0] is ticket and self._active < self.max_concurrent):
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        return False
                    self._cond.wait(remaining)
                self._queue.popleft()
                self._active += 1
                return True
            finally:
                if ticket in self._queue:
                    self._queue.remove(ticket)
                # Head may have changed; let the next waiter re-check.
                self._cond.notify_all()

    def release(self) -> None:
        with self._cond:
            if self._active <= 0:
                raise RuntimeError(f"Limiter {self.name} released more than acquired")
            self._active -= 1
            self._completed += 1
            self._cond.notify_all()

    @contextmanager
    def slot(self):
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def schedule(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` once a slot is available."""
        with self.slot():
            return fn(*args, **kwargs)

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "name": self.name,
                "max_concurrent": self.max_concurrent,
                "active": self._active,
                "queued": len(self._queue),
                "completed": self._completed,
            }


@dataclass
class ApiLimiters:
    """The two outbound channels: order/account traffic and market data."""

    trading: ConcurrencyLimiter
    market_data: ConcurrencyLimiter

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "ApiLimiters":
        config = config or {}
        return cls(
            trading=ConcurrencyLimiter("trading", int(config.get("trading_max_concurrent", 4))),
            market_data=ConcurrencyLimiter("market_data", int(config.get("market_data_max_concurrent", 4))),
        )

    def for_channel(self, channel: str) -> ConcurrencyLimiter:
        return self.market_data if channel == "market_data" else self.trading

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            "trading": self.trading.status(),
            "market_data": self.market_data.status(),
        }


@dataclass
class CircuitBreaker:
    """
    Failure counter with a time-boxed open state.

    ``threshold`` failures inside ``window_seconds`` open the breaker for
    ``cooldown_seconds``. Opening clears the window so the next cycle starts
    from zero; a success clears it as well.
    """

    name: str
    threshold: int = 3
    window_seconds: float = 60.0
    cooldown_seconds: float = 60.0
    clock: Callable[[], float] = time.time

    failures: Deque[float] = field(init=False, default_factory=deque)
    cooldown_until: float = field(init=False, default=0.0)
    last_error: Optional[str] = field(init=False, default=None)
    last_failure_at: Optional[float] = field(init=False, default=None)
    trips: int = field(init=False, default=0)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock, repr=False)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.failures and self.failures[0] < cutoff:
            self.failures.popleft()

    def is_open(self) -> bool:
        with self._lock:
            return self.cooldown_until > self.clock()

    def remaining_seconds(self) -> float:
        with self._lock:
            return max(0.0, self.cooldown_until - self.clock())

    def record_failure(self, error: Optional[str] = None) -> bool:
        """Record a failure; returns True if this failure opened the breaker."""
        with self._lock:
            now = self.clock()
            self._prune(now)
            self.failures.append(now)
            self.last_error = error
            self.last_failure_at = now
            if len(self.failures) >= self.threshold:
                self.failures.clear()
                self.cooldown_until = now + self.cooldown_seconds
                self.trips += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failures.clear()
            self.cooldown_until = 0.0

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            self._prune(now)
            return {
                "name": self.name,
                "open": self.cooldown_until > now,
                "recent_failures": len(self.failures),
                "threshold": self.threshold,
                "cooldown_until": self.cooldown_until or None,
                "last_error": self.last_error,
                "last_failure_at": self.last_failure_at,
                "trips": self.trips,
            }


class FailureTracker:
    """Per-key circuit breakers sharing one configuration."""

    def __init__(self, threshold: int = 3, window_seconds: float = 60.0,
                 cooldown_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def _breaker(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=key,
                    threshold=self.threshold,
                    window_seconds=self.window_seconds,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self.clock,
                )
                self._breakers[key] = breaker
            return breaker

    def is_cooling(self, key: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(key)
        return breaker is not None and breaker.is_open()

    def remaining_seconds(self, key: str) -> float:
        with self._lock:
            breaker = self._breakers.get(key)
        return breaker.remaining_seconds() if breaker else 0.0

    def record_failure(self, key: str, error: Optional[str] = None) -> bool:
        opened = self._breaker(key).record_failure(error)
        if opened:
            logger.warning(
                f"{key} cooling down {self.cooldown_seconds:.0f}s after "
                f"{self.threshold} consecutive failures (last={error})"
            )
        return opened

    def record_success(self, key: str) -> None:
        with self._lock:
            breaker = self._breakers.get(key)
        if breaker is not None:
            breaker.record_success()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.items())
        return {key: breaker.snapshot() for key, breaker in breakers}
