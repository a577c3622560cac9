"""Tests for the per-symbol state book and realized PnL math."""

import threading

import pytest

from core.exit_state import ExitState, RealizedPnL, SymbolBook
from core.lifecycle import Effect, Event, LifecycleState


def make_state(symbol="BTC/USD", qty=1.0, entry=100.0, **overrides) -> ExitState:
    values = dict(
        symbol=symbol,
        qty=qty,
        entry_price=entry,
        effective_entry_price=entry,
        entry_time_ms=1_000_000.0,
        fee_bps_round_trip=30.0,
        required_exit_bps=130.37,
        min_net_profit_bps=100.0,
        target_price=101.31,
        breakeven_price=100.31,
        entry_fee_bps=15.0,
        exit_fee_bps=15.0,
    )
    values.update(overrides)
    return ExitState(**values)


class TestExitState:
    def test_sell_order_attach_and_clear(self):
        state = make_state()
        state.attach_sell_order("ord-1", 101.31, 5.0)
        assert (state.sell_order_id, state.sell_order_limit, state.sell_order_submitted_at_ms) == ("ord-1", 101.31, 5.0)
        state.clear_sell_order()
        assert state.sell_order_id is None and state.sell_order_limit is None

    def test_apply_advances_lifecycle(self):
        state = make_state()
        assert state.apply(Event.TICK) == []
        assert state.lifecycle == LifecycleState.MANAGING
        assert state.apply(Event.HARD_STOP)[0] == Effect.CANCEL_EXIT_ORDER
        assert state.lifecycle == LifecycleState.HARD_STOPPED

    def test_to_dict_serializes_lifecycle(self):
        assert make_state().to_dict()["lifecycle"] == "exit_attached"


class TestRealizedPnL:
    def test_profitable_close(self):
        state = make_state()
        pnl = RealizedPnL.from_close(state, 101.31, 1.0, "target_filled", closed_at_ms=1_060_000.0)
        assert pnl.gross_pnl_usd == pytest.approx(1.31)
        assert pnl.fees_usd_estimate == pytest.approx(100.0 * 0.0015 + 101.31 * 0.0015)
        assert pnl.net_pnl_usd == pytest.approx(1.31 - pnl.fees_usd_estimate)
        assert pnl.net_pnl_bps == pytest.approx(pnl.net_pnl_usd / 100.0 * 10000.0)
        assert pnl.hold_seconds == pytest.approx(60.0)

    def test_taker_fee_override(self):
        state = make_state()
        maker = RealizedPnL.from_close(state, 99.0, 1.0, "hard_stop", 1_000_000.0)
        taker = RealizedPnL.from_close(state, 99.0, 1.0, "hard_stop", 1_000_000.0, exit_fee_bps=25.0)
        assert taker.net_pnl_usd < maker.net_pnl_usd < 0


class TestSymbolBook:
    def test_put_get_delete(self):
        book = SymbolBook(clock=lambda: 0.0)
        book.put_state(make_state())
        assert book.get_state("BTC/USD") is not None
        assert book.tracked_symbols() == ["BTC/USD"]
        assert book.delete_state("BTC/USD").symbol == "BTC/USD"
        assert book.get_state("BTC/USD") is None

    def test_in_flight_claim_is_exclusive(self):
        now = {"t": 0.0}
        book = SymbolBook(clock=lambda: now["t"])
        assert book.claim_in_flight("ETH/USD", "entry", ttl_ms=1000)
        assert not book.claim_in_flight("ETH/USD", "entry", ttl_ms=1000)
        assert book.active_symbols() == ["ETH/USD"]

        now["t"] = 1500.0  # expired
        assert book.in_flight("ETH/USD") is None
        assert book.claim_in_flight("ETH/USD", "entry", ttl_ms=1000)
        book.release_in_flight("ETH/USD")
        assert book.in_flight_symbols() == []

    def test_concurrent_claims_admit_one(self):
        book = SymbolBook(clock=lambda: 0.0)
        barrier = threading.Barrier(8)
        wins = []

        def claim():
            barrier.wait()
            if book.claim_in_flight("SOL/USD", "entry", ttl_ms=60000):
                wins.append(1)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1

    def test_locked_is_non_blocking_by_default(self):
        book = SymbolBook()
        with book.locked("BTC/USD") as outer:
            assert outer is not None
            with book.locked("BTC/USD") as inner:
                assert inner is None
        with book.locked("BTC/USD") as again:
            assert again is not None

    def test_mark_action(self):
        book = SymbolBook(clock=lambda: 42.0)
        book.mark_action("BTC/USD")
        assert book.last_action_at("BTC/USD") == 42.0
        assert book.last_action_at("ETH/USD") is None
