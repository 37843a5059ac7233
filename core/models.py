"""
perptrader Core: Domain Models

Positions, ledger trades and exchange-side views shared by the live loop,
the reconciler and the executor. Local rows are a cache of exchange state.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def is_buy(self) -> bool:
        return self is Side.LONG

    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class TradeAction(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    SYNC_CLOSE = "SYNC_CLOSE"


@dataclass
class Position:
    """Local replica of one open position. size_usd is notional."""
    account_id: str
    symbol: str
    side: Side
    size_usd: float
    leverage: float
    entry_price: float
    current_price: float
    liquidation_price: float
    opened_at: datetime
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    invalidation_condition: Optional[str] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    entry_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def margin_usd(self) -> float:
        return self.size_usd / self.leverage if self.leverage else self.size_usd

    def pnl_at(self, price: float) -> float:
        """Unrealized PnL in USD at the given price."""
        if self.entry_price <= 0:
            return 0.0
        move = (price - self.entry_price) / self.entry_price
        if self.side is Side.SHORT:
            move = -move
        return move * self.size_usd

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["opened_at"] = _dt_to_str(self.opened_at)
        data.pop("id", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: Optional[str] = None) -> "Position":
        payload = dict(data)
        payload["side"] = Side(payload["side"])
        payload["opened_at"] = _dt_from_str(payload["opened_at"])
        payload["id"] = key
        return cls(**payload)


@dataclass
class Trade:
    """Append-only ledger entry."""
    account_id: str
    symbol: str
    action: TradeAction
    side: Side
    size_usd: float
    leverage: float
    price: float
    executed_at: datetime
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    reason: Optional[str] = None
    confidence: Optional[float] = None
    order_id: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["side"] = self.side.value
        data["executed_at"] = _dt_to_str(self.executed_at)
        data.pop("id", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: Optional[str] = None) -> "Trade":
        payload = dict(data)
        payload["action"] = TradeAction(payload["action"])
        payload["side"] = Side(payload["side"])
        payload["executed_at"] = _dt_from_str(payload["executed_at"])
        payload["id"] = key
        return cls(**payload)


@dataclass
class ExchangePosition:
    """Position as reported by the exchange. szi is signed base size."""
    symbol: str
    szi: float
    entry_price: float
    leverage: float
    position_value: float = 0.0
    unrealized_pnl: float = 0.0
    liquidation_price: Optional[float] = None

    @property
    def side(self) -> Side:
        return Side.LONG if self.szi > 0 else Side.SHORT

    @property
    def size(self) -> float:
        return abs(self.szi)


@dataclass
class OpenOrder:
    symbol: str
    order_id: str
    side: str  # "buy" | "sell"
    size: float
    price: float
    is_trigger: bool = False
    trigger_price: Optional[float] = None
    reduce_only: bool = False
    order_type: str = "limit"

    @property
    def is_stop_loss(self) -> bool:
        return self.is_trigger and "stop" in self.order_type.lower()

    @property
    def is_take_profit(self) -> bool:
        return self.is_trigger and "take profit" in self.order_type.lower()


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    filled_size: float = 0.0
    avg_price: Optional[float] = None
    error: Optional[str] = None


@dataclass
class AccountState:
    account_value: float
    total_margin_used: float = 0.0
    withdrawable: float = 0.0
    total_notional: float = 0.0
    positions: List[ExchangePosition] = field(default_factory=list)


def estimate_liquidation_price(side: Side, entry_price: float, leverage: float) -> float:
    """Rough isolated-margin liquidation estimate ignoring maintenance margin."""
    if leverage <= 0:
        return 0.0
    if side is Side.LONG:
        return entry_price * (1 - 1 / leverage)
    return entry_price * (1 + 1 / leverage)
