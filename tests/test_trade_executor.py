"""
Tests for opening and closing positions through the executor.

Covers the stop-loss safety path (retry, emergency close), take-profit
best effort, protection verification and close reconciliation.
"""

import pytest

from ai.schemas import Close, OpenLong, OpenShort
from core.accounts import AccountConfig, AccountRepository
from core.audit_log import AuditLogger
from core.circuit_breaker import CircuitBreakerConfig
from core.exceptions import ExchangeError
from core.models import Position, Side, TradeAction
from core.position_manager import PositionManager
from core.trade_executor import (
    ALREADY_CLOSED_REASON,
    EMERGENCY_CLOSE_REASON,
    ExecutorConfig,
    TradeExecutor,
)
from core.trade_limits import TradeCooldownCache
from infra.metrics import MetricsRecorder
from infra.state_store import SYSTEM_LOGS
from tests.helpers import FakeExchange


@pytest.fixture
def executor_env(store, clock):
    accounts = AccountRepository(store, clock=clock)
    accounts.save(AccountConfig(
        account_id="acct-1",
        breaker_config=CircuitBreakerConfig(max_consecutive_losses=2),
    ))
    positions = PositionManager(store)
    sleeps = []
    executor = TradeExecutor(
        positions,
        accounts,
        AuditLogger(store, clock=clock),
        TradeCooldownCache(clock=clock),
        metrics=MetricsRecorder(enabled=False),
        config=ExecutorConfig(protective_max_attempts=3, protective_backoff_seconds=1.0),
        clock=clock,
        sleep=sleeps.append,
    )
    return executor, positions, accounts, sleeps


def _logs(store, level):
    return [row for _, row in store.scan(SYSTEM_LOGS) if row["level"] == level]


def test_open_places_entry_and_both_protective_orders(executor_env):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()

    outcome = executor.execute_open(
        "acct-1", exchange,
        OpenLong(symbol="BTC", size_usd=1_200.0, leverage=5, stop_loss=58_000.0, take_profit=63_000.0),
    )

    assert outcome.status == "opened"
    assert outcome.stop_loss_placed and outcome.take_profit_placed
    assert exchange.positions["BTC"].szi == pytest.approx(0.02)
    assert {o.order_type for o in exchange.orders} == {"Stop Market", "Take Profit Market"}
    (position,) = positions.list_positions("acct-1")
    assert position.stop_loss == 58_000.0
    assert position.stop_loss_order_id is not None
    assert position.take_profit_order_id is not None
    (trade,) = positions.list_trades("acct-1")
    assert trade.action is TradeAction.OPEN
    assert trade.size_usd == pytest.approx(1_200.0)


def test_open_sanitizes_wrong_side_stop(executor_env):
    executor, positions, _, _ = executor_env

    executor.execute_open(
        "acct-1", FakeExchange(),
        OpenShort(symbol="ETH", size_usd=600.0, leverage=3, stop_loss=2_900.0),
    )

    (position,) = positions.list_positions("acct-1")
    assert position.stop_loss == pytest.approx(3_090.0)
    assert position.take_profit is None


def test_entry_failure_persists_nothing(executor_env, store):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    exchange.fail["place_order"] = ExchangeError("place_order", "insufficient margin")

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "failed"
    assert positions.list_positions("acct-1") == []
    assert positions.list_trades("acct-1") == []
    assert _logs(store, "ERROR")


def test_stop_loss_retried_then_succeeds(executor_env):
    executor, _, _, sleeps = executor_env
    exchange = FakeExchange()
    exchange.fail["place_stop_loss"] = [ExchangeError("place_stop_loss", "busy"), None]

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "opened"
    assert exchange.calls.count("place_stop_loss") == 2
    assert sleeps == [1.0]


def test_stop_loss_failure_triggers_emergency_close(executor_env, store):
    executor, positions, _, sleeps = executor_env
    exchange = FakeExchange()
    exchange.fail["place_stop_loss"] = ExchangeError("place_stop_loss", "rejected")

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "emergency_closed"
    assert exchange.calls.count("place_stop_loss") == 3
    assert sleeps == [1.0, 2.0]
    assert exchange.positions == {}
    assert positions.list_positions("acct-1") == []
    actions = [t.action for t in positions.list_trades("acct-1")]
    assert actions == [TradeAction.OPEN, TradeAction.CLOSE]
    assert positions.list_trades("acct-1")[1].reason == EMERGENCY_CLOSE_REASON
    assert any("Emergency close" in row["message"] for row in _logs(store, "CRITICAL"))
    assert MetricsRecorder().counts["emergency_close"] == 1


def test_failed_emergency_close_reports_unprotected(executor_env, store):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    exchange.fail["place_stop_loss"] = ExchangeError("place_stop_loss", "rejected")
    exchange.fail["close_position"] = ExchangeError("close_position", "rejected")

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "unprotected"
    assert "BTC" in exchange.positions
    assert len(positions.list_positions("acct-1")) == 1
    assert any("UNPROTECTED POSITION" in row["message"] for row in _logs(store, "CRITICAL"))


def test_unexpected_stop_loss_error_still_closes_position(executor_env):
    executor, positions, _, sleeps = executor_env
    exchange = FakeExchange()
    exchange.fail["place_stop_loss"] = ValueError("float_to_wire causes rounding")

    outcome = executor.execute_open(
        "acct-1", exchange, OpenLong(symbol="BTC", size_usd=1_000.0, leverage=5, stop_loss=58_000.0),
    )

    assert outcome.status == "emergency_closed"
    assert exchange.calls.count("place_stop_loss") == 3
    assert "close_position" in exchange.calls
    assert sleeps == [1.0, 2.0]
    assert exchange.positions == {}
    assert positions.list_positions("acct-1") == []


def test_unexpected_emergency_close_error_reports_unprotected(executor_env, store):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    exchange.fail["place_stop_loss"] = KeyError("BTC")
    exchange.fail["close_position"] = KeyError("BTC")

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "unprotected"
    assert len(positions.list_positions("acct-1")) == 1
    assert any("UNPROTECTED POSITION" in row["message"] for row in _logs(store, "CRITICAL"))


def test_take_profit_failure_keeps_position_with_warning(executor_env, store):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    exchange.fail["place_take_profit"] = ExchangeError("place_take_profit", "rejected")

    outcome = executor.execute_open(
        "acct-1", exchange,
        OpenLong(symbol="BTC", size_usd=600.0, leverage=2, stop_loss=58_000.0, take_profit=63_000.0),
    )

    assert outcome.status == "opened"
    assert outcome.stop_loss_placed and not outcome.take_profit_placed
    (position,) = positions.list_positions("acct-1")
    assert position.take_profit is None
    assert any("without TP" in row["message"] for row in _logs(store, "WARNING"))


def test_retry_detects_stop_that_already_landed(executor_env):
    executor, _, _, _ = executor_env
    exchange = FakeExchange()

    original = exchange.place_stop_loss

    def place_then_timeout(*args, **kwargs):
        original(*args, **kwargs)
        if exchange.calls.count("place_stop_loss") == 1:
            raise ExchangeError("place_stop_loss", "timeout after submit")
        raise AssertionError("stop-loss must not be submitted twice")

    exchange.place_stop_loss = place_then_timeout

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "opened"
    assert sum(1 for o in exchange.orders if o.is_stop_loss) == 1


def test_invisible_stop_loss_logged_critical(executor_env, store):
    executor, _, _, _ = executor_env
    exchange = FakeExchange()
    exchange.show_trigger_orders = False

    outcome = executor.execute_open("acct-1", exchange, OpenLong(symbol="BTC", size_usd=600.0, leverage=2))

    assert outcome.status == "opened"
    assert any("not visible" in row["message"] for row in _logs(store, "CRITICAL"))


def _open(executor, exchange, symbol="BTC"):
    executor.execute_open("acct-1", exchange, OpenLong(symbol=symbol, size_usd=600.0, leverage=2))


def test_close_uses_exchange_size_and_records_pnl(executor_env):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    _open(executor, exchange)
    exchange.prices["BTC"] = 63_000.0

    outcome = executor.execute_close("acct-1", exchange, Close(symbol="BTC", reasoning="target reached"))

    assert outcome.status == "closed"
    assert outcome.pnl == pytest.approx(30.0)
    assert exchange.positions == {}
    assert exchange.orders == []
    assert positions.list_positions("acct-1") == []
    close_trade = positions.list_trades("acct-1")[-1]
    assert close_trade.action is TradeAction.CLOSE
    assert close_trade.pnl_pct == pytest.approx(10.0)


def test_close_without_any_position_is_skipped(executor_env):
    executor, _, _, _ = executor_env

    outcome = executor.execute_close("acct-1", FakeExchange(), Close(symbol="SOL"))

    assert outcome.status == "skipped"


def test_close_of_position_already_gone_on_exchange(executor_env, clock):
    executor, positions, _, _ = executor_env
    positions.save_position(Position(
        account_id="acct-1", symbol="ETH", side=Side.LONG, size_usd=600.0, leverage=2.0,
        entry_price=3_000.0, current_price=3_150.0, liquidation_price=1_500.0, opened_at=clock(),
    ))

    outcome = executor.execute_close("acct-1", FakeExchange(), Close(symbol="ETH"))

    assert outcome.status == "already_closed"
    assert outcome.pnl == pytest.approx(30.0)
    assert positions.list_positions("acct-1") == []
    assert positions.list_trades("acct-1")[-1].reason == ALREADY_CLOSED_REASON


def test_close_read_failure_propagates(executor_env):
    executor, positions, _, _ = executor_env
    exchange = FakeExchange()
    _open(executor, exchange)
    exchange.fail["get_positions"] = ExchangeError("get_positions", "down")

    with pytest.raises(ExchangeError):
        executor.execute_close("acct-1", exchange, Close(symbol="BTC"))

    assert len(positions.list_positions("acct-1")) == 1


def test_losing_closes_trip_breaker(executor_env):
    executor, _, accounts, _ = executor_env
    exchange = FakeExchange()

    for symbol in ("BTC", "ETH"):
        _open(executor, exchange, symbol)
        exchange.prices[symbol] *= 0.99
        executor.execute_close("acct-1", exchange, Close(symbol=symbol))

    assert accounts.get("acct-1").breaker.state == "tripped"
    assert MetricsRecorder().counts["breaker_trip:losses"] == 1
