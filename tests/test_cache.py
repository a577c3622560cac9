"""Tests for the single-flight read-through cache."""

import threading

import pytest

from infra.cache import ReadThroughCache


class TestReadThroughCache:
    def setup_method(self):
        self.now = 100.0
        self.cache = ReadThroughCache("positions", ttl_seconds=2.0, clock=lambda: self.now)

    def test_hit_within_ttl(self):
        loads = []
        self.cache.get("all", lambda: loads.append(1) or ["a"])
        self.now += 1.5
        assert self.cache.get("all", lambda: loads.append(1) or ["b"]) == ["a"]
        assert len(loads) == 1
        assert self.cache.stats()["hits"] == 1

    def test_reload_after_ttl(self):
        self.cache.get("all", lambda: 1)
        self.now += 2.0
        assert self.cache.get("all", lambda: 2) == 2

    def test_zero_max_age_always_reloads(self):
        self.cache.get("all", lambda: 1)
        assert self.cache.get("all", lambda: 2, max_age_seconds=0) == 2

    def test_max_age_cannot_extend_ttl(self):
        self.cache.get("all", lambda: 1)
        self.now += 3
        assert self.cache.get("all", lambda: 2, max_age_seconds=60) == 2

    def test_loader_error_propagates_and_is_not_cached(self):
        def boom():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            self.cache.get("all", boom)
        assert self.cache.stats()["pending"] == 0
        assert self.cache.get("all", lambda: 3) == 3

    def test_concurrent_misses_share_one_load(self):
        cache = ReadThroughCache("account", ttl_seconds=5.0)
        started, release = threading.Event(), threading.Event()
        calls = []

        def loader():
            calls.append(1)
            started.set()
            release.wait(5)
            return {"cash": "100"}

        results = []
        first = threading.Thread(target=lambda: results.append(cache.get("account", loader)))
        first.start()
        assert started.wait(5)
        followers = [threading.Thread(target=lambda: results.append(cache.get("account", loader)))
                     for _ in range(3)]
        for t in followers:
            t.start()
        release.set()
        for t in [first] + followers:
            t.join(5)

        assert len(calls) == 1
        assert results == [{"cash": "100"}] * 4

    def test_invalidate_and_peek(self):
        self.cache.get("a", lambda: 1)
        self.cache.get("b", lambda: 2)
        self.cache.invalidate("a")
        assert self.cache.peek("a") is None
        assert self.cache.peek("b") == 2
        self.cache.invalidate()
        assert self.cache.stats()["entries"] == 0
