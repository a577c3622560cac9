"""
Tests for the outbound concurrency limiter and circuit breakers.
"""

import threading
import time

import pytest

from infra.concurrency import ApiLimiters, CircuitBreaker, ConcurrencyLimiter, FailureTracker


class TestConcurrencyLimiter:
    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter("trading", 0)

    def test_bounds_in_flight(self):
        limiter = ConcurrencyLimiter("market_data", 2)
        active = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def work():
            with limiter.slot():
                with lock:
                    active["now"] += 1
                    active["peak"] = max(active["peak"], active["now"])
                time.sleep(0.02)
                with lock:
                    active["now"] -= 1

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert active["peak"] <= 2
        assert limiter.status()["completed"] == 8
        assert limiter.status()["active"] == 0

    def test_fifo_order(self):
        """Waiters are admitted in arrival order"""
        limiter = ConcurrencyLimiter("trading", 1)
        limiter.acquire()
        order = []

        def waiter(i):
            limiter.schedule(order.append, i)

        threads = []
        for i in range(4):
            t = threading.Thread(target=waiter, args=(i,))
            t.start()
            threads.append(t)
            # Let each thread enqueue before starting the next one
            deadline = time.monotonic() + 2
            while limiter.status()["queued"] < i + 1 and time.monotonic() < deadline:
                time.sleep(0.001)

        limiter.release()
        for t in threads:
            t.join()
        assert order == [0, 1, 2, 3]

    def test_acquire_timeout(self):
        limiter = ConcurrencyLimiter("trading", 1)
        assert limiter.acquire()
        assert limiter.acquire(timeout=0.01) is False
        assert limiter.status()["queued"] == 0
        limiter.release()

    def test_release_without_acquire(self):
        with pytest.raises(RuntimeError):
            ConcurrencyLimiter("trading", 1).release()

    def test_api_limiters_from_config(self):
        limiters = ApiLimiters.from_config({"trading_max_concurrent": 2, "market_data_max_concurrent": 6})
        assert limiters.for_channel("market_data").max_concurrent == 6
        assert limiters.for_channel("trading").max_concurrent == 2
        assert set(limiters.status()) == {"trading", "market_data"}


class TestCircuitBreaker:
    def setup_method(self):
        self.now = 1000.0
        self.breaker = CircuitBreaker(name="market_data", threshold=3, window_seconds=60,
                                      cooldown_seconds=30, clock=lambda: self.now)

    def test_opens_at_threshold(self):
        assert not self.breaker.record_failure("timeout")
        assert not self.breaker.record_failure("timeout")
        assert self.breaker.record_failure("timeout")
        assert self.breaker.is_open()
        assert self.breaker.remaining_seconds() == pytest.approx(30)
        assert self.breaker.snapshot()["trips"] == 1

    def test_cooldown_expires(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.now += 31
        assert not self.breaker.is_open()
        assert self.breaker.snapshot()["recent_failures"] == 0

    def test_failures_outside_window_are_pruned(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.now += 61
        assert not self.breaker.record_failure()
        assert not self.breaker.is_open()

    def test_success_resets(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        assert not self.breaker.record_failure()
        assert self.breaker.snapshot()["last_error"] is None


class TestFailureTracker:
    def test_keys_are_independent(self):
        now = {"t": 0.0}
        tracker = FailureTracker(threshold=2, window_seconds=60, cooldown_seconds=60, clock=lambda: now["t"])
        tracker.record_failure("BTC/USD", "no_data")
        assert tracker.record_failure("BTC/USD", "no_data")
        tracker.record_failure("ETH/USD", "no_data")

        assert tracker.is_cooling("BTC/USD")
        assert not tracker.is_cooling("ETH/USD")
        assert not tracker.is_cooling("SOL/USD")
        assert tracker.remaining_seconds("BTC/USD") == pytest.approx(60)
        assert tracker.snapshot()["BTC/USD"]["open"]

        now["t"] = 61.0
        assert not tracker.is_cooling("BTC/USD")

    def test_success_clears(self):
        tracker = FailureTracker(threshold=2, clock=lambda: 0.0)
        tracker.record_failure("BTC/USD")
        tracker.record_success("BTC/USD")
        assert not tracker.record_failure("BTC/USD")
        tracker.record_success("UNKNOWN")
