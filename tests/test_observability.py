"""
Metrics recorder: singleton behaviour and the counters the loop relies on.
"""

from prometheus_client import REGISTRY

from infra.metrics import MetricsRecorder


def test_singleton_returns_same_instance():
    first = MetricsRecorder(enabled=False)
    second = MetricsRecorder(enabled=True, port=1234)

    assert first is second
    assert not second.is_enabled()


def test_counts_kept_when_disabled():
    metrics = MetricsRecorder(enabled=False)

    metrics.record_account_cycle("hold")
    metrics.record_account_cycle("hold")
    metrics.record_rejection("SYMBOL_LOCK")
    metrics.record_emergency_close()
    metrics.observe_tick(0.25)

    assert metrics.counts == {
        "cycle:hold": 2,
        "rejection:SYMBOL_LOCK": 1,
        "emergency_close": 1,
        "ticks": 1,
    }


def test_start_is_noop_when_disabled():
    metrics = MetricsRecorder(enabled=False)

    metrics.start()

    assert not metrics.is_enabled()


def test_enabled_recorder_exports_prometheus_counters():
    metrics = MetricsRecorder(enabled=True)

    metrics.record_execution("opened")
    metrics.record_breaker_trip("losses")
    metrics.set_open_positions("a1", 2)

    assert REGISTRY.get_sample_value("perptrader_executions_total", {"outcome": "opened"}) == 1.0
    assert REGISTRY.get_sample_value("perptrader_circuit_breaker_trips_total", {"cause": "losses"}) == 1.0
    assert REGISTRY.get_sample_value("perptrader_open_positions", {"account": "a1"}) == 2.0


def test_reset_allows_reregistration():
    MetricsRecorder(enabled=True)
    MetricsRecorder._reset_for_testing()

    metrics = MetricsRecorder(enabled=True)
    metrics.record_decision("HOLD")

    assert REGISTRY.get_sample_value("perptrader_decisions_total", {"action": "HOLD"}) == 1.0
