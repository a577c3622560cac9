"""
Tests for the reconciliation loop: adoption, orphan handling, vanished
exits and positions that disappear at the broker.
"""

import pytest

from core.exceptions import NetworkError, OrderRejected
from core.execution import OrderLifecycleEngine
from core.quotes import QuoteService
from core.reconcile import Reconciler, flatten_orders

POLICY = {
    "pricing": {"desired_net_bps": 100, "slippage_bps": 0, "spread_buffer_bps": 0, "min_gross_take_profit_bps": 0},
    "reconcile": {"missing_grace_ms": 30000, "min_interval_seconds": 10},
}


def make_engine(broker, fake_time, mode="PAPER"):
    quotes = QuoteService(broker, {}, clock=fake_time.time)
    return OrderLifecycleEngine(
        broker, quotes, POLICY, mode=mode,
        clock=fake_time.ms, sleep=fake_time.sleep, monotonic=fake_time.monotonic,
    )


class TestReconciler:
    def _setup(self, broker, fake_time, metrics=None, **overrides):
        self.engine = make_engine(broker, fake_time)
        policy = {"reconcile": dict(POLICY["reconcile"], **overrides)}
        self.reconciler = Reconciler(self.engine, policy, metrics=metrics, clock=fake_time.ms)
        self.engine.entry_gate = self.reconciler.entry_gate

    def test_adopts_position_with_open_sell(self, broker, fake_time, metrics):
        """Position 10 @ 50 with a resting sell for 10 @ 52 is rebuilt around that order"""
        self._setup(broker, fake_time, metrics)
        broker.set_position("BTC/USD", 10.0, 50.0)
        sell = broker.add_order("BTC/USD", "sell", 10.0, limit_price=52.0)

        report = self.reconciler.run_once()

        assert report.ok
        assert report.adopted == ["BTC/USD"]
        state = self.engine.book.get_state("BTC/USD")
        assert state.adopted
        assert state.sell_order_id == sell["id"]
        assert state.sell_order_limit == 52.0
        assert state.entry_fee_bps == 25.0
        assert not self.reconciler.entries_halted
        assert broker.submitted == []
        assert metrics.snapshot()["counts"]["reconcile"]["ok"] == 1

    def test_adoption_prefers_matching_quantity(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 10.0, 50.0)
        broker.add_order("BTC/USD", "sell", 3.0, limit_price=51.0)
        match = broker.add_order("BTC/USD", "sell", 10.0, limit_price=60.0)

        self.reconciler.run_once()

        assert self.engine.book.get_state("BTC/USD").sell_order_id == match["id"]

    def test_fetch_failure_leaves_state_untouched(self, broker, fake_time, metrics):
        self._setup(broker, fake_time, metrics)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        sell_id = state.sell_order_id
        broker.fail("list_positions", NetworkError("list_positions", TimeoutError()))

        report = self.reconciler.run_once()

        assert not report.ok
        assert report.error.startswith("network_error")
        assert self.engine.book.get_state("BTC/USD") is state
        assert state.sell_order_id == sell_id
        assert state.missing_since_ms is None
        assert metrics.snapshot()["counts"]["reconcile"]["error"] == 1

    def test_orphan_halts_entries_when_not_repaired(self, broker, fake_time, metrics):
        self._setup(broker, fake_time, metrics, repair_orphans=False)
        broker.set_position("ETH/USD", 2.0, 2000.0)

        report = self.reconciler.run_once()

        assert report.orphans == ["ETH/USD"]
        assert report.halted
        assert "ETH/USD" in self.reconciler.entry_gate()
        assert self.reconciler.orphan_report()["orphans"]["ETH/USD"]["qty"] == 2.0
        assert metrics.snapshot()["orphans"] == 1

    def test_orphan_first_seen_is_kept(self, broker, fake_time):
        self._setup(broker, fake_time, repair_orphans=False)
        broker.set_position("ETH/USD", 2.0, 2000.0)
        self.reconciler.run_once()
        first = self.reconciler.orphan_report()["orphans"]["ETH/USD"]["first_seen_ms"]
        fake_time.advance(60)
        self.reconciler.run_once()
        assert self.reconciler.orphan_report()["orphans"]["ETH/USD"]["first_seen_ms"] == first

    def test_orphan_repaired_with_exit(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("ETH/USD", 2.0, 2000.0)
        broker.set_quote("ETH/USD", 2010.0, 2010.5)

        report = self.reconciler.run_once()

        assert report.repaired == ["ETH/USD"]
        assert report.orphans == []
        assert not report.halted
        sells = [o for o in broker.submitted if o["side"] == "sell"]
        assert len(sells) == 1
        assert sells[0]["client_order_id"].startswith("lct-ethusd-sell-exit-")
        assert self.engine.book.get_state("ETH/USD").sell_order_id == sells[0]["id"]

    def test_orphan_unrepaired_in_dry_run(self, broker, fake_time):
        self.engine = make_engine(broker, fake_time, mode="DRY_RUN")
        self.reconciler = Reconciler(self.engine, POLICY, clock=fake_time.ms)
        broker.set_position("ETH/USD", 2.0, 2000.0)

        report = self.reconciler.run_once()

        assert report.orphans == ["ETH/USD"]
        assert broker.submitted == []

    def test_vanished_exit_is_reset(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.orders[state.sell_order_id]["status"] = "canceled"

        report = self.reconciler.run_once()

        assert report.reset == ["BTC/USD"]
        assert state.sell_order_id is None

    def test_filled_exit_left_to_manage_tick(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        sell_id = state.sell_order_id
        broker.orders[sell_id]["status"] = "filled"

        report = self.reconciler.run_once()

        assert report.reset == []
        assert state.sell_order_id == sell_id

    def test_missing_position_dropped_after_grace(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.positions.pop("BTC/USD")

        first = self.reconciler.run_once()
        assert first.removed == []
        assert self.engine.book.get_state("BTC/USD").missing_since_ms == fake_time.ms()

        fake_time.advance(31)
        second = self.reconciler.run_once()
        assert second.removed == ["BTC/USD"]
        assert self.engine.book.get_state("BTC/USD") is None

    def test_position_back_within_grace_clears_marker(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        saved = broker.positions.pop("BTC/USD")
        self.reconciler.run_once()

        broker.positions["BTC/USD"] = saved
        fake_time.advance(31)
        report = self.reconciler.run_once()

        assert report.removed == []
        assert state.missing_since_ms is None

    def test_quantity_follows_broker(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.set_position("BTC/USD", 0.6, 100.0)

        self.reconciler.run_once()

        assert state.qty == pytest.approx(0.6)

    def test_tracked_without_exit_is_repaired(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        broker.fail("submit_order", OrderRejected("insufficient qty", broker_code=422))
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        assert state.sell_order_id is None

        report = self.reconciler.run_once()

        assert report.repaired == ["BTC/USD"]
        assert report.orphans == []
        assert not report.halted
        sells = [o for o in broker.submitted if o["side"] == "sell"]
        assert len(sells) == 1
        assert float(sells[0]["limit_price"]) == pytest.approx(state.target_price)
        assert state.sell_order_id == sells[0]["id"]

    def test_tracked_without_exit_halts_when_not_repaired(self, broker, fake_time):
        self._setup(broker, fake_time, repair_orphans=False)
        broker.set_position("BTC/USD", 1.0, 100.0)
        broker.fail("submit_order", OrderRejected("insufficient qty", broker_code=422))
        self.engine.attach_exit("BTC/USD", 1.0, 100.0)

        report = self.reconciler.run_once()

        assert report.orphans == ["BTC/USD"]
        assert report.halted
        assert "BTC/USD" in self.reconciler.entry_gate()
        assert broker.submitted == []

    def test_lost_submit_response_is_reattached(self, broker, fake_time):
        """The exit reached the broker but its response was lost; no second sell is placed"""
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)

        def lose_response(order):
            broker.on_submit = None
            raise NetworkError("submit_order", TimeoutError())

        broker.on_submit = lose_response
        broker.fail("get_order_by_client_id", NetworkError("get_order_by_client_id", TimeoutError()))
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        assert state.sell_order_id is None
        resting = [o for o in broker.orders.values() if o["side"] == "sell"]
        assert len(resting) == 1

        report = self.reconciler.run_once()

        assert report.reattached == ["BTC/USD"]
        assert report.repaired == []
        assert state.sell_order_id == resting[0]["id"]
        assert state.sell_order_limit == pytest.approx(float(resting[0]["limit_price"]))

        broker.set_quote("BTC/USD", 100.0, 100.02)
        self.engine.manage_tick("BTC/USD")
        assert len([o for o in broker.submitted if o["side"] == "sell"]) == 1

    def test_reattach_prefers_matching_quantity(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        broker.fail("submit_order", OrderRejected("insufficient qty", broker_code=422))
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.add_order("BTC/USD", "sell", 0.25, limit_price=state.target_price)
        match = broker.add_order("BTC/USD", "sell", 1.0, limit_price=105.0)

        self.reconciler.run_once()

        assert state.sell_order_id == match["id"]
        assert state.sell_order_limit == 105.0

    def test_tracked_dust_position_is_dropped(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("BTC/USD", 1.0, 100.0)
        self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.set_position("BTC/USD", 1e-9, 100.0)

        report = self.reconciler.run_once()

        assert report.dust == ["BTC/USD"]
        assert report.removed == ["BTC/USD"]
        assert self.engine.book.get_state("BTC/USD") is None

    def test_quantity_not_changed_while_symbol_locked(self, broker, fake_time):
        self._setup(broker, fake_time, lock_timeout_seconds=0.01)
        broker.set_position("BTC/USD", 1.0, 100.0)
        state = self.engine.attach_exit("BTC/USD", 1.0, 100.0)
        broker.set_position("BTC/USD", 0.6, 100.0)

        with self.engine.book.locked("BTC/USD") as slot:
            assert slot is not None
            report = self.reconciler.run_once()
            assert state.qty == 1.0
            assert report.orphans == []

        self.reconciler.run_once()
        assert state.qty == pytest.approx(0.6)

    def test_dust_is_ignored(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("SOL/USD", 1e-9, 150.0)
        broker.set_position("DOGE/USD", 2.0, 0.1)

        report = self.reconciler.run_once()

        assert sorted(report.dust) == ["DOGE/USD", "SOL/USD"]
        assert report.orphans == []
        assert broker.submitted == []

    def test_entry_in_flight_is_not_an_orphan(self, broker, fake_time):
        self._setup(broker, fake_time)
        broker.set_position("ETH/USD", 2.0, 2000.0)
        self.engine.book.claim_in_flight("ETH/USD", "entry", 60000)

        report = self.reconciler.run_once()

        assert report.orphans == []
        assert report.repaired == []

    def test_maybe_run_respects_min_interval(self, broker, fake_time):
        self._setup(broker, fake_time)
        first = self.reconciler.maybe_run()
        calls = broker.calls["list_positions"]

        fake_time.advance(5)
        assert self.reconciler.maybe_run() is first
        assert broker.calls["list_positions"] == calls

        fake_time.advance(6)
        assert self.reconciler.maybe_run() is not first
        assert broker.calls["list_positions"] == calls + 1


class TestFlattenOrders:
    def test_nested_legs(self):
        orders = [{"id": "a", "legs": [{"id": "a1"}, {"id": "a2"}]}, {"id": "b", "legs": None}]
        assert [o["id"] for o in flatten_orders(orders)] == ["a", "a1", "a2", "b"]

    def test_empty(self):
        assert flatten_orders(None) == []
