"""
Tests for broker status mapping and the poll-with-timeout primitive.
"""

from unittest.mock import Mock

import pytest

from core.exceptions import HttpError, NetworkError
from core.order_state import (
    Filled,
    OrderStatus,
    Terminal,
    TimedOut,
    avg_fill_price,
    filled_qty,
    is_terminal,
    map_broker_status,
    poll_order,
    remaining_qty,
    safe_cancel,
)


class TestStatusMapping:
    @pytest.mark.parametrize("raw,expected", [
        ("new", OrderStatus.OPEN),
        ("accepted", OrderStatus.OPEN),
        ("pending_new", OrderStatus.NEW),
        ("partially_filled", OrderStatus.PARTIAL_FILL),
        ("filled", OrderStatus.FILLED),
        ("canceled", OrderStatus.CANCELED),
        ("expired", OrderStatus.EXPIRED),
        ("rejected", OrderStatus.REJECTED),
        ("replaced", OrderStatus.REPLACED),
        ("FILLED", OrderStatus.FILLED),
        ("something_new", OrderStatus.OPEN),
        (None, OrderStatus.OPEN),
    ])
    def test_map(self, raw, expected):
        assert map_broker_status(raw) == expected

    def test_terminal(self):
        assert is_terminal("filled")
        assert is_terminal(OrderStatus.CANCELED)
        assert not is_terminal("partially_filled")

    def test_fill_helpers(self):
        order = {"qty": "2", "filled_qty": "0.5", "filled_avg_price": "101.2"}
        assert filled_qty(order) == 0.5
        assert avg_fill_price(order) == 101.2
        assert remaining_qty(order) == 1.5
        assert avg_fill_price({"filled_avg_price": None}) is None
        assert filled_qty(None) == 0.0


class TestPollOrder:
    def test_filled(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        broker.fill(order["id"], 100.0)
        result = poll_order(broker, order["id"], timeout_seconds=10, interval_seconds=1,
                            sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, Filled)
        assert result.filled_qty == 1.0
        assert result.avg_price == 100.0

    def test_terminal_with_partial_fill(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        broker.fill(order["id"], 100.0, qty=0.4)
        broker.orders[order["id"]]["status"] = "canceled"
        result = poll_order(broker, order["id"], timeout_seconds=10, interval_seconds=1,
                            sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, Terminal)
        assert result.status == OrderStatus.CANCELED
        assert result.filled_qty == pytest.approx(0.4)

    def test_timeout_cancels(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        result = poll_order(broker, order["id"], timeout_seconds=9, interval_seconds=3,
                            sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, TimedOut)
        assert result.cancel_requested
        assert broker.orders[order["id"]]["status"] == "canceled"
        assert broker.calls["get_order"] == 5  # t=0,3,6,9 plus the post-cancel lookup

    def test_fill_racing_cancel_is_reported(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        broker.fail("cancel_order", HttpError("cancel_order", 422, "not cancelable"))
        original_get = broker.get_order
        calls = {"n": 0}

        def get_order(order_id):
            calls["n"] += 1
            if calls["n"] == 3:
                broker.fill(order_id, 100.0)
            return original_get(order_id)

        broker.get_order = get_order
        result = poll_order(broker, order["id"], timeout_seconds=2, interval_seconds=2,
                            sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, Filled)

    def test_transient_lookup_errors_keep_polling(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        broker.fill(order["id"], 100.0)
        broker.fail("get_order", NetworkError("get_order", TimeoutError("slow")), times=2)
        result = poll_order(broker, order["id"], timeout_seconds=10, interval_seconds=1,
                            sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, Filled)

    def test_no_cancel_when_disabled(self, broker, fake_time):
        order = broker.add_order("BTC/USD", "buy", 1.0, limit_price=100.0)
        result = poll_order(broker, order["id"], timeout_seconds=1, interval_seconds=1,
                            cancel_on_timeout=False, sleep=fake_time.sleep, clock=fake_time.monotonic)
        assert isinstance(result, TimedOut)
        assert not result.cancel_requested
        assert broker.calls["cancel_order"] == 0


class TestSafeCancel:
    def test_already_closed_is_not_raised(self):
        broker = Mock()
        broker.cancel_order.side_effect = HttpError("cancel_order", 422, "filled")
        assert safe_cancel(broker, "abc") is False

    def test_network_error_is_not_raised(self):
        broker = Mock()
        broker.cancel_order.side_effect = NetworkError("cancel_order", TimeoutError())
        assert safe_cancel(broker, "abc") is False

    def test_success(self):
        broker = Mock()
        broker.cancel_order.return_value = True
        assert safe_cancel(broker, "abc") is True
