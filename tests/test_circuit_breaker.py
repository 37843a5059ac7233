"""Tests for circuit breaker state transitions."""

from datetime import datetime, timedelta, timezone

from core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    enter_cooldown,
    record_ai_failure,
    record_ai_success,
    record_trade_outcome,
    should_allow_trading,
)

NOW = datetime(2024, 11, 1, 12, 0, tzinfo=timezone.utc)
CONFIG = CircuitBreakerConfig(cooldown_minutes=30, max_consecutive_ai_failures=3, max_consecutive_losses=2)


def test_active_allows_trading():
    permission = should_allow_trading(CircuitBreakerState(), 30, NOW)
    assert permission.allowed
    assert not permission.enter_cooldown


def test_third_ai_failure_trips():
    state = CircuitBreakerState()
    for _ in range(2):
        state = record_ai_failure(state, CONFIG, NOW)
        assert state.state == "active"

    state = record_ai_failure(state, CONFIG, NOW)

    assert state.state == "tripped"
    assert state.tripped_at == NOW
    assert state.consecutive_ai_failures == 3


def test_tripped_blocks_until_cooldown_elapses():
    state = CircuitBreakerState(state="tripped", tripped_at=NOW)

    blocked = should_allow_trading(state, 30, NOW + timedelta(minutes=10))
    assert not blocked.allowed
    assert "20 minute(s) remaining" in blocked.reason

    elapsed = should_allow_trading(state, 30, NOW + timedelta(minutes=30))
    assert elapsed.allowed
    assert elapsed.enter_cooldown


def test_tripped_without_timestamp_enters_cooldown():
    permission = should_allow_trading(CircuitBreakerState(state="tripped"), 30, NOW)
    assert permission.allowed and permission.enter_cooldown


def test_success_in_cooldown_promotes_to_active():
    state = enter_cooldown(CircuitBreakerState(state="tripped", tripped_at=NOW, consecutive_ai_failures=3))
    assert state.state == "cooldown"

    state = record_ai_success(state)

    assert state.state == "active"
    assert state.consecutive_ai_failures == 0


def test_success_does_not_untrip():
    state = record_ai_success(CircuitBreakerState(state="tripped", tripped_at=NOW))
    assert state.state == "tripped"


def test_losses_trip_independently_of_ai_failures():
    state = record_ai_failure(CircuitBreakerState(), CONFIG, NOW)
    state = record_trade_outcome(state, CONFIG, won=False, now=NOW)
    assert state.state == "active"

    state = record_trade_outcome(state, CONFIG, won=False, now=NOW)
    assert state.state == "tripped"
    assert state.consecutive_ai_failures == 1


def test_win_resets_loss_streak():
    state = record_trade_outcome(CircuitBreakerState(), CONFIG, won=False, now=NOW)
    state = record_trade_outcome(state, CONFIG, won=True, now=NOW)
    assert state.consecutive_losses == 0


def test_state_round_trips_through_dict():
    state = CircuitBreakerState(state="tripped", consecutive_ai_failures=3, tripped_at=NOW)
    assert CircuitBreakerState.from_dict(state.to_dict()) == state
    assert CircuitBreakerState.from_dict(None) == CircuitBreakerState()


def test_config_from_dict_defaults():
    config = CircuitBreakerConfig.from_dict({"cooldown_minutes": 5})
    assert config.cooldown_minutes == 5
    assert config.max_consecutive_ai_failures == 3
