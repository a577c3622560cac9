"""Tests for MetricsRecorder: singleton behaviour, snapshot counts and the Prometheus registry."""

from unittest.mock import patch

from prometheus_client import REGISTRY

from infra.metrics import MetricsRecorder


def test_singleton():
    assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)


def test_snapshot_counts_without_exporter():
    metrics = MetricsRecorder(enabled=False)
    metrics.record_entry_skip("spread_gate")
    metrics.record_entry_skip("spread_gate")
    metrics.record_entry("filled")
    metrics.record_realized_pnl("BTC/USD", 1.25, "target_filled")
    metrics.record_realized_pnl("ETH/USD", -0.5, "hard_stop")
    metrics.record_tracked_positions(-3)
    metrics.record_orphans(2)

    snapshot = metrics.snapshot()
    assert snapshot["counts"]["entry_skips"]["spread_gate"] == 2
    assert snapshot["counts"]["entries"]["filled"] == 1
    assert snapshot["counts"]["realized"] == {"target_filled": 1, "hard_stop": 1}
    assert snapshot["realized_usd_total"] == 0.75
    assert snapshot["tracked_positions"] == 0
    assert snapshot["orphans"] == 2


def test_last_api_event():
    metrics = MetricsRecorder(enabled=False)
    assert metrics.last_api_event() is None
    metrics.record_api_call("get_account", "trading", 0.05, "200")
    event = metrics.last_api_event()
    assert event["endpoint"] == "get_account"
    assert event["status"] == "200"


def test_enabled_registers_and_counts():
    metrics = MetricsRecorder(enabled=True)
    metrics.record_exit_action("reprice_exit")
    metrics.record_circuit_breaker_trip("market_data")
    metrics.record_limiter("trading", 2, 1)

    value = REGISTRY.get_sample_value("lifecycle_exit_actions_total", {"action": "reprice_exit"})
    assert value == 1.0
    trips = REGISTRY.get_sample_value("broker_circuit_breaker_trips_total", {"breaker": "market_data"})
    assert trips == 1.0
    waiting = REGISTRY.get_sample_value("broker_limiter_slots", {"channel": "trading", "kind": "waiting"})
    assert waiting == 1.0


def test_reset_unregisters_collectors():
    MetricsRecorder(enabled=True)
    MetricsRecorder._reset_for_testing()
    # Registering the same names again must not raise
    MetricsRecorder(enabled=True).record_entry("dry_run")


def test_start_disabled_is_noop():
    metrics = MetricsRecorder(enabled=False)
    with patch("infra.metrics.start_http_server") as server:
        metrics.start()
        server.assert_not_called()


def test_start_falls_back_to_next_port():
    metrics = MetricsRecorder(enabled=True, port=9200)
    with patch("infra.metrics.start_http_server", side_effect=[OSError("in use"), None]) as server:
        metrics.start()
        metrics.start()
    assert server.call_count == 2
    assert server.call_args.args[0] == 9201
