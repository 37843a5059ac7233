"""
Test helpers for the live loop and backtests.

FakeExchange is an in-memory ExchangeClient with failure injection: set
`fail` to an operation name -> exception (or a list of them, consumed one per
call) to make that operation raise.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from backtest.data_loader import Candle
from core.exceptions import ExchangeError
from core.exchange import ExchangeClient
from core.models import AccountState, ExchangePosition, OpenOrder, OrderResult


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class FakeExchange(ExchangeClient):
    """In-memory exchange for one account."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, account_value: float = 10_000.0):
        self.prices = dict(prices or {"BTC": 60_000.0, "ETH": 3_000.0, "SOL": 150.0})
        self.account_value = account_value
        self.positions: Dict[str, ExchangePosition] = {}
        self.orders: List[OpenOrder] = []
        self.fail: Dict[str, object] = {}
        self.calls: List[str] = []
        # When False, protective orders report success but never show up in get_open_orders
        self.show_trigger_orders = True
        self._next_id = 0

    # ─── Failure injection ────────────────────────────────────────────────

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        failure = self.fail.get(operation)
        if failure is None:
            return
        if isinstance(failure, list):
            if not failure:
                return
            failure = failure.pop(0)
            if failure is None:
                return
        raise failure

    def _order_id(self) -> str:
        self._next_id += 1
        return f"oid-{self._next_id}"

    # ─── Reads ────────────────────────────────────────────────────────────

    def get_positions(self) -> List[ExchangePosition]:
        self._maybe_fail("get_positions")
        return list(self.positions.values())

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        self._maybe_fail("get_open_orders")
        orders = [o for o in self.orders if symbol is None or o.symbol == symbol]
        if not self.show_trigger_orders:
            orders = [o for o in orders if not o.is_trigger]
        return orders

    def get_market_price(self, symbol: str) -> float:
        self._maybe_fail("get_market_price")
        if symbol not in self.prices:
            raise ExchangeError("get_market_price", f"no price for {symbol}")
        return self.prices[symbol]

    def get_account_state(self) -> AccountState:
        self._maybe_fail("get_account_state")
        margin = sum(p.position_value / p.leverage for p in self.positions.values() if p.leverage)
        return AccountState(
            account_value=self.account_value,
            total_margin_used=margin,
            withdrawable=self.account_value - margin,
            total_notional=sum(p.position_value for p in self.positions.values()),
            positions=list(self.positions.values()),
        )

    # ─── Writes ───────────────────────────────────────────────────────────

    def place_order(self, symbol: str, is_buy: bool, size: float, leverage: float, price: float) -> OrderResult:
        self._maybe_fail("place_order")
        fill = self.prices[symbol]
        szi = size if is_buy else -size
        self.positions[symbol] = ExchangePosition(
            symbol=symbol,
            szi=szi,
            entry_price=fill,
            leverage=leverage,
            position_value=size * fill,
        )
        return OrderResult(success=True, order_id=self._order_id(), filled_size=size, avg_price=fill)

    def _trigger(self, operation: str, order_type: str, symbol: str, size: float, trigger_price: float,
                 is_long_position: bool) -> OrderResult:
        self._maybe_fail(operation)
        order_id = self._order_id()
        self.orders.append(OpenOrder(
            symbol=symbol,
            order_id=order_id,
            side="sell" if is_long_position else "buy",
            size=size,
            price=trigger_price,
            is_trigger=True,
            trigger_price=trigger_price,
            reduce_only=True,
            order_type=order_type,
        ))
        return OrderResult(success=True, order_id=order_id)

    def place_stop_loss(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        return self._trigger("place_stop_loss", "Stop Market", symbol, size, trigger_price, is_long_position)

    def place_take_profit(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        return self._trigger("place_take_profit", "Take Profit Market", symbol, size, trigger_price, is_long_position)

    def cancel_orders_for_symbol(self, symbol: str) -> int:
        self._maybe_fail("cancel_orders_for_symbol")
        before = len(self.orders)
        self.orders = [o for o in self.orders if o.symbol != symbol]
        return before - len(self.orders)

    def close_position(self, symbol: str, size: float, is_buy: bool) -> OrderResult:
        self._maybe_fail("close_position")
        position = self.positions.pop(symbol, None)
        if position is None:
            return OrderResult(success=False, error=f"no position for {symbol}")
        return OrderResult(success=True, order_id=self._order_id(), filled_size=size, avg_price=self.prices[symbol])

    # ─── Test conveniences ────────────────────────────────────────────────

    def set_position(self, symbol: str, szi: float, entry_price: float, leverage: float = 5.0) -> None:
        self.positions[symbol] = ExchangePosition(
            symbol=symbol,
            szi=szi,
            entry_price=entry_price,
            leverage=leverage,
            position_value=abs(szi) * entry_price,
        )


# ─── Candle factories ─────────────────────────────────────────────────────

START_MS = 1_730_419_200_000  # 2024-11-01T00:00:00Z
FIVE_MIN_MS = 300_000


def make_candles(rows, start_ms: int = START_MS, interval_ms: int = FIVE_MIN_MS) -> List[Candle]:
    """rows: iterable of (open, high, low, close) tuples or single prices (flat candle)."""
    candles = []
    for idx, row in enumerate(rows):
        if isinstance(row, (int, float)):
            row = (row, row, row, row)
        o, h, l, c = row
        candles.append(Candle(t=start_ms + idx * interval_ms, open=o, high=h, low=l, close=c, volume=1.0))
    return candles


def flat_candles(price: float, count: int, start_ms: int = START_MS, interval_ms: int = FIVE_MIN_MS) -> List[Candle]:
    return make_candles([price] * count, start_ms, interval_ms)


def trending_closes(start: float, step_pct: float, count: int = 60) -> List[float]:
    closes = []
    price = start
    for _ in range(count):
        closes.append(price)
        price *= 1 + step_pct / 100
    return closes
