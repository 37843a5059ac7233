"""
Tests for the ordered pre-trade validation pipeline.

Each check is exercised in isolation by making every earlier check pass.
"""

from datetime import timedelta

from ai.schemas import OpenLong, OpenShort
from core.audit_log import AuditLogger
from core.exceptions import ExchangeError
from core.lock_manager import LockManager
from core.models import OpenOrder, Position, Side, Trade, TradeAction
from core.position_manager import PositionManager
from core.position_validator import PositionValidator, ValidatorConfig
from core.trade_limits import TradeCooldownCache
from core.trading_config import TradingLimits
from tests.helpers import FakeExchange

LIMITS = TradingLimits(
    max_positions=3,
    max_same_direction=2,
    min_position_usd=100.0,
    max_leverage=10.0,
    max_position_size=0.5,
)


def _validator(store, clock, config=ValidatorConfig()):
    positions = PositionManager(store)
    cooldowns = TradeCooldownCache(clock=clock)
    validator = PositionValidator(
        LockManager(store, clock=clock),
        positions,
        cooldowns,
        AuditLogger(store, clock=clock),
        config=config,
        clock=clock,
    )
    return validator, positions, cooldowns


def _position(clock, symbol, side=Side.LONG):
    return Position(
        account_id="acct-1", symbol=symbol, side=side, size_usd=500.0, leverage=5.0,
        entry_price=100.0, current_price=100.0, liquidation_price=80.0, opened_at=clock(),
    )


def _long(symbol="BTC", size_usd=500.0):
    return OpenLong(symbol=symbol, size_usd=size_usd, leverage=5, stop_loss=58_000, take_profit=62_000)


def test_clean_account_passes(store, clock):
    validator, _, _ = _validator(store, clock)

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.allowed
    assert result.check_name == "ALL_PASSED"


def test_second_attempt_blocked_by_symbol_lock(store, clock):
    validator, _, _ = _validator(store, clock)
    exchange = FakeExchange()

    validator.validate_open("acct-1", exchange, _long(), LIMITS)
    second = validator.validate_open("acct-1", exchange, _long(), LIMITS)

    assert not second.allowed
    assert second.check_name == "SYMBOL_LOCK"


def test_exchange_position_blocks(store, clock):
    validator, _, _ = _validator(store, clock)
    exchange = FakeExchange()
    exchange.set_position("BTC", szi=0.01, entry_price=60_000.0)

    result = validator.validate_open("acct-1", exchange, _long(), LIMITS)

    assert result.check_name == "HYPERLIQUID_POSITION"
    assert "0.01" in result.reason


def test_pending_order_blocks(store, clock):
    validator, _, _ = _validator(store, clock)
    exchange = FakeExchange()
    exchange.orders.append(OpenOrder(symbol="BTC", order_id="o1", side="buy", size=0.01, price=59_000.0))

    result = validator.validate_open("acct-1", exchange, _long(), LIMITS)

    assert result.check_name == "OPEN_ORDERS"


def test_exchange_read_failure_does_not_block(store, clock):
    validator, _, _ = _validator(store, clock)
    exchange = FakeExchange()
    exchange.fail["get_positions"] = ExchangeError("get_positions", "timeout")
    exchange.fail["get_open_orders"] = ExchangeError("get_open_orders", "timeout")

    result = validator.validate_open("acct-1", exchange, _long(), LIMITS)

    assert result.allowed


def test_in_memory_guard(store, clock):
    validator, _, cooldowns = _validator(store, clock)
    cooldowns.record("acct-1", "BTC", "LONG")
    clock.advance(seconds=20)

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.check_name == "IN_MEMORY"


def test_local_duplicate_position(store, clock):
    validator, positions, _ = _validator(store, clock)
    positions.save_position(_position(clock, "BTC", Side.SHORT))

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.check_name == "DUPLICATE_POSITION"


def test_max_positions(store, clock):
    validator, positions, _ = _validator(store, clock)
    for symbol, side in (("ETH", Side.LONG), ("SOL", Side.SHORT), ("DOGE", Side.SHORT)):
        positions.save_position(_position(clock, symbol, side))

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.check_name == "MAX_POSITIONS"
    assert "3/3" in result.reason


def test_same_direction_limit(store, clock):
    validator, positions, _ = _validator(store, clock)
    positions.save_position(_position(clock, "ETH", Side.LONG))
    positions.save_position(_position(clock, "SOL", Side.LONG))

    long_result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)
    short_result = validator.validate_open(
        "acct-1", FakeExchange(), OpenShort(symbol="BTC", size_usd=500.0, leverage=5), LIMITS
    )

    assert long_result.check_name == "SAME_DIRECTION"
    assert short_result.allowed


def test_min_size(store, clock):
    validator, _, _ = _validator(store, clock)

    result = validator.validate_open("acct-1", FakeExchange(), _long(size_usd=50.0), LIMITS)

    assert result.check_name == "MIN_SIZE"


def _record_open(positions, clock, seconds_ago):
    positions.record_trade(Trade(
        account_id="acct-1", symbol="BTC", action=TradeAction.OPEN, side=Side.LONG,
        size_usd=500.0, leverage=5.0, price=60_000.0,
        executed_at=clock() - timedelta(seconds=seconds_ago),
    ))


def test_duplicate_guard_for_very_recent_open(store, clock):
    validator, positions, _ = _validator(store, clock)
    _record_open(positions, clock, seconds_ago=30)

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.check_name == "DUPLICATE_GUARD"


def test_cooldown_for_recent_open(store, clock):
    validator, positions, _ = _validator(store, clock)
    _record_open(positions, clock, seconds_ago=150)

    result = validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS)

    assert result.check_name == "COOLDOWN"
    assert "2min ago" in result.reason


def test_cooldown_expires(store, clock):
    validator, positions, _ = _validator(store, clock)
    _record_open(positions, clock, seconds_ago=301)

    assert validator.validate_open("acct-1", FakeExchange(), _long(), LIMITS).allowed


def test_rejection_is_logged_as_warning(store, clock):
    validator, _, _ = _validator(store, clock)
    audit = AuditLogger(store, clock=clock)

    validator.validate_open("acct-1", FakeExchange(), _long(size_usd=10.0), LIMITS)

    (log,) = audit.get_system_logs("acct-1")
    assert log["level"] == "WARNING"
    assert log["category"] == "validator"
    assert log["message"].startswith("MIN_SIZE")
