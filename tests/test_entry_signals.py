"""
Tests for the entry gate pipeline.

Each gate short-circuits with a structured SkipReason; evaluate() never raises.
"""

import math

import pytest

from core.broker_alpaca import OrderBook
from core.entry_signals import (
    EntryConfig,
    EntrySignalEngine,
    SkipReason,
    barrier_probability,
    depth_within_band,
    ewma_variance,
    vwap_impact_bps,
)
from core.exceptions import HttpError, NetworkError
from core.quotes import QuoteService


def closes(n=40, base=100.0, amplitude=0.05):
    return [base + amplitude * math.sin(i / 3.0) for i in range(n)]


def deep_book(broker, symbol="BTC/USD", bid=99.99, ask=100.01, size=100.0):
    broker.books[symbol] = OrderBook(
        symbol=symbol, bids=[(bid, size), (bid - 0.01, size)], asks=[(ask, size), (ask + 0.01, size)],
    )


class TestEntrySignalEngine:
    def setup_method(self):
        self.policy = {
            "entry": {
                "max_spread_bps": 25,
                "min_bars": 20,
                "bars_limit": 60,
                "min_depth_usd": 5000,
                "min_ev_bps": -1000,
            },
        }

    def _engine(self, broker, fake_time, policy=None, metrics=None):
        quotes = QuoteService(broker, {}, clock=fake_time.time)
        return EntrySignalEngine(broker, quotes, policy or self.policy, metrics=metrics, clock=fake_time.time)

    def test_ready_signal(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.ready, signal.reason
        assert signal.entry_limit_price == pytest.approx(100.01)
        assert signal.required_gross_exit_bps > 0
        assert 0.05 <= signal.probability <= 0.95
        assert signal.stop_loss_bps >= 50
        assert signal.metadata["entry_fee_bps"] == 15.0

    def test_spread_gate(self, broker, fake_time):
        """40 bps spread against a 25 bps cap"""
        broker.set_quote("BTC/USD", 99.8, 100.2)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert not signal.ready
        assert signal.reason == SkipReason.SPREAD_GATE.value
        assert signal.metadata["spread_bps"] == pytest.approx(40.0)
        assert broker.calls["get_bars"] == 0

    def test_quote_unavailable(self, broker, fake_time):
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.QUOTE_UNAVAILABLE.value
        assert signal.metadata["error"] == "no_data"

    def test_stale_quote_is_unavailable(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01, age_seconds=600)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.QUOTE_UNAVAILABLE.value
        assert signal.metadata["error"] == "stale_quote"

    def test_thin_book(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.books["BTC/USD"] = OrderBook(symbol="BTC/USD", bids=[(99.99, 1.0)], asks=[(100.01, 1.0)])
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.INSUFFICIENT_LIQUIDITY.value

    def test_orderbook_failure(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.fail("get_orderbook", HttpError("orderbook_crypto", 500))
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.ORDERBOOK_UNAVAILABLE.value

    def test_missing_book_is_unavailable(self, broker, fake_time):
        """A crypto symbol with no book snapshot is never marked ready"""
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert not signal.ready
        assert signal.reason == SkipReason.ORDERBOOK_UNAVAILABLE.value
        assert signal.metadata["error"] == "empty_book"
        assert broker.calls["get_bars"] == 0

    def test_equity_skips_book_gate(self, broker, fake_time):
        broker.set_quote("AAPL", 189.99, 190.01)
        broker.set_bars("AAPL", closes(base=190.0))
        signal = self._engine(broker, fake_time).evaluate("AAPL")
        assert broker.calls["get_orderbook"] == 0
        assert signal.reason != SkipReason.ORDERBOOK_UNAVAILABLE.value
        assert broker.calls["get_bars"] == 1

    def test_deep_book_passes(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.ready, signal.reason
        assert signal.metadata["bid_depth_usd"] > 5000

    def test_insufficient_bars(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes(5))
        deep_book(broker)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.INSUFFICIENT_BARS.value

    def test_bars_failure(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        deep_book(broker)
        broker.fail("get_bars", NetworkError("bars_crypto", TimeoutError()))
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.INSUFFICIENT_BARS.value

    def test_ev_guard(self, broker, fake_time):
        self.policy["entry"]["min_ev_bps"] = 500
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        signal = self._engine(broker, fake_time).evaluate("BTC/USD")
        assert signal.reason == SkipReason.EV_GUARD.value
        assert signal.expected_value_bps < 500
        assert signal.required_gross_exit_bps > 0

    def test_equity_market_closed(self, broker, fake_time):
        broker.clock_info = {"is_open": False}
        broker.set_quote("AAPL", 189.99, 190.01)
        signal = self._engine(broker, fake_time).evaluate("aapl")
        assert signal.reason == SkipReason.MARKET_CLOSED.value
        assert broker.calls["get_latest_quotes"] == 0

    def test_market_clock_failure_counts_as_closed(self, broker, fake_time):
        broker.fail("get_clock", NetworkError("get_clock", TimeoutError()))
        signal = self._engine(broker, fake_time).evaluate("AAPL")
        assert signal.reason == SkipReason.MARKET_CLOSED.value

    def test_crypto_ignores_market_clock(self, broker, fake_time):
        broker.clock_info = {"is_open": False}
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        assert self._engine(broker, fake_time).evaluate("BTC/USD").ready

    def test_scan_orders_ready_and_counts_skips(self, broker, fake_time, metrics):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        broker.set_quote("ETH/USD", 1990.0, 2010.0)
        engine = self._engine(broker, fake_time, metrics=metrics)
        ready = engine.scan(["BTC/USD", "ETH/USD", "SOL/USD"])
        assert [s.symbol for s in ready] == ["BTC/USD"]
        assert engine.skip_counts["spread_gate"] == 1
        assert engine.skip_counts["quote_unavailable"] == 1
        assert metrics.snapshot()["counts"]["entry_skips"]["spread_gate"] == 1
        assert engine.last_results["ETH/USD"]["ready"] is False
        assert broker.calls["get_latest_quotes"] >= 1

    def test_ewma_state_carries_across_scans(self, broker, fake_time):
        broker.set_quote("BTC/USD", 99.99, 100.01)
        broker.set_bars("BTC/USD", closes())
        deep_book(broker)
        engine = self._engine(broker, fake_time)
        engine.evaluate("BTC/USD")
        first = engine.stats_for("BTC/USD").samples
        engine.evaluate("BTC/USD")
        assert engine.stats_for("BTC/USD").samples == first
        assert engine.stats_for("BTC/USD").ewma_spread_bps == pytest.approx(2.0, abs=0.01)

    def test_record_slippage_ewma(self, broker, fake_time):
        engine = self._engine(broker, fake_time)
        engine.record_slippage("BTC/USD", 10.0)
        engine.record_slippage("BTC/USD", -5.0)
        assert engine.stats_for("BTC/USD").ewma_slippage_bps == pytest.approx(8.0)


class TestSignalMath:
    def test_barrier_probability(self):
        assert barrier_probability(100, 100) == pytest.approx(0.5)
        assert barrier_probability(300, 100) == pytest.approx(0.25)
        assert barrier_probability(1, 10000) == 0.95
        assert barrier_probability(0, 0) == 0.5

    def test_ewma_variance(self):
        assert ewma_variance([], 10) is None
        assert ewma_variance([0.01], 10) == pytest.approx(0.0001)
        seeded = ewma_variance([0.0], 1, seed=0.0004)
        assert seeded == pytest.approx(0.0002)

    def test_depth_within_band(self):
        asks = [(100.0, 10.0), (100.4, 10.0), (102.0, 10.0)]
        assert depth_within_band(asks, 100.0, 50, "ask") == pytest.approx(100.0 * 10 + 100.4 * 10)
        bids = [(99.9, 1.0), (90.0, 100.0)]
        assert depth_within_band(bids, 100.0, 50, "bid") == pytest.approx(99.9)

    def test_vwap_impact(self):
        asks = [(100.0, 5.0), (101.0, 100.0)]
        assert vwap_impact_bps(asks, 400.0) == pytest.approx(0.0)
        assert vwap_impact_bps(asks, 1000.0) > 0
        assert vwap_impact_bps([(100.0, 1.0)], 1000.0) == float("inf")

    def test_entry_config_coerces_types(self):
        config = EntryConfig.from_policy({"entry": {"min_bars": "12", "max_spread_bps": 30, "ev_guard_enabled": 0}})
        assert config.min_bars == 12
        assert config.max_spread_bps == 30.0
        assert config.ev_guard_enabled is False
