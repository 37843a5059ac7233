"""
Decision schemas.

Defines the contract between the control loop and the decision source.
Every response is reduced to exactly one of Hold, OpenLong, OpenShort or
Close before the loop acts on it.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Union

from core.models import Side


@dataclass(frozen=True)
class Hold:
    reasoning: str = ""
    confidence: float = 0.0
    action = "HOLD"

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, **asdict(self)}


@dataclass(frozen=True)
class _OpenDecision:
    symbol: str
    size_usd: float             # notional in USD
    leverage: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    confidence: float = 0.5
    reasoning: str = ""

    @property
    def side(self) -> Side:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, **asdict(self)}


@dataclass(frozen=True)
class OpenLong(_OpenDecision):
    action = "OPEN_LONG"

    @property
    def side(self) -> Side:
        return Side.LONG


@dataclass(frozen=True)
class OpenShort(_OpenDecision):
    action = "OPEN_SHORT"

    @property
    def side(self) -> Side:
        return Side.SHORT


@dataclass(frozen=True)
class Close:
    symbol: str
    confidence: float = 0.5
    reasoning: str = ""
    action = "CLOSE"

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, **asdict(self)}


Decision = Union[Hold, OpenLong, OpenShort, Close]
OpenDecision = Union[OpenLong, OpenShort]


def is_open(decision: Decision) -> bool:
    return isinstance(decision, (OpenLong, OpenShort))


@dataclass
class DecisionContext:
    """Market and account context handed to the decision source."""
    account_id: str
    account_value: float
    available_margin: float
    symbols: List[str]
    prices: Dict[str, float]
    positions: List[Dict[str, Any]]
    performance: Dict[str, Any]
    max_leverage: float
    market_data: Optional[Dict[str, Any]] = None
