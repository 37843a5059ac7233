"""
perptrader Core: Circuit Breaker

Pure state transitions over an account's breaker state. No I/O: callers load
the state, apply a transition and persist the returned copy.

States:
- active:   normal operation
- tripped:  trading blocked until the cooldown window elapses
- cooldown: probation; the next successful decision promotes back to active

AI failures and realized losses are counted separately and trip independently.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Literal, Optional

BreakerStatus = Literal["active", "cooldown", "tripped"]

DEFAULT_COOLDOWN_MINUTES = 30
DEFAULT_MAX_AI_FAILURES = 3
DEFAULT_MAX_CONSECUTIVE_LOSSES = 5


@dataclass(frozen=True)
class CircuitBreakerConfig:
    cooldown_minutes: float = DEFAULT_COOLDOWN_MINUTES
    max_consecutive_ai_failures: int = DEFAULT_MAX_AI_FAILURES
    max_consecutive_losses: int = DEFAULT_MAX_CONSECUTIVE_LOSSES

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitBreakerConfig":
        data = data or {}
        return cls(
            cooldown_minutes=float(data.get("cooldown_minutes", DEFAULT_COOLDOWN_MINUTES)),
            max_consecutive_ai_failures=int(data.get("max_consecutive_ai_failures", DEFAULT_MAX_AI_FAILURES)),
            max_consecutive_losses=int(data.get("max_consecutive_losses", DEFAULT_MAX_CONSECUTIVE_LOSSES)),
        )


@dataclass(frozen=True)
class CircuitBreakerState:
    state: BreakerStatus = "active"
    consecutive_ai_failures: int = 0
    consecutive_losses: int = 0
    tripped_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_ai_failures": self.consecutive_ai_failures,
            "consecutive_losses": self.consecutive_losses,
            "tripped_at": self.tripped_at.isoformat() if self.tripped_at else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitBreakerState":
        data = data or {}
        tripped_at = data.get("tripped_at")
        if isinstance(tripped_at, str):
            tripped_at = datetime.fromisoformat(tripped_at)
        return cls(
            state=data.get("state", "active"),
            consecutive_ai_failures=int(data.get("consecutive_ai_failures", 0)),
            consecutive_losses=int(data.get("consecutive_losses", 0)),
            tripped_at=tripped_at,
        )


@dataclass(frozen=True)
class TradingPermission:
    allowed: bool
    reason: str
    enter_cooldown: bool = False


def should_allow_trading(
    state: CircuitBreakerState,
    cooldown_minutes: float,
    now: datetime,
) -> TradingPermission:
    """
    Decide whether the loop may trade for this account.

    When a tripped breaker's cooldown has elapsed the result carries
    enter_cooldown=True; the caller persists enter_cooldown(state).
    """
    if state.state in ("active", "cooldown"):
        return TradingPermission(True, f"Circuit breaker is {state.state}")

    if state.state == "tripped":
        if state.tripped_at is None:
            return TradingPermission(True, "Tripped without timestamp, entering cooldown", enter_cooldown=True)
        cooldown_seconds = cooldown_minutes * 60
        elapsed = (now - state.tripped_at).total_seconds()
        if elapsed >= cooldown_seconds:
            return TradingPermission(True, "Cooldown period elapsed, entering cooldown state", enter_cooldown=True)
        remaining = math.ceil((cooldown_seconds - elapsed) / 60)
        return TradingPermission(
            False, f"Circuit breaker tripped. {remaining} minute(s) remaining in cooldown"
        )

    return TradingPermission(True, f"Unknown circuit breaker state: {state.state}")


def enter_cooldown(state: CircuitBreakerState) -> CircuitBreakerState:
    return replace(state, state="cooldown")


def record_ai_failure(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    now: datetime,
) -> CircuitBreakerState:
    failures = state.consecutive_ai_failures + 1
    if failures >= config.max_consecutive_ai_failures:
        return replace(state, consecutive_ai_failures=failures, state="tripped", tripped_at=now)
    return replace(state, consecutive_ai_failures=failures)


def record_ai_success(state: CircuitBreakerState) -> CircuitBreakerState:
    new_status = "active" if state.state == "cooldown" else state.state
    return replace(state, consecutive_ai_failures=0, state=new_status)


def record_trade_outcome(
    state: CircuitBreakerState,
    config: CircuitBreakerConfig,
    won: bool,
    now: datetime,
) -> CircuitBreakerState:
    if won:
        return replace(state, consecutive_losses=0)
    losses = state.consecutive_losses + 1
    if losses >= config.max_consecutive_losses:
        return replace(state, consecutive_losses=losses, state="tripped", tripped_at=now)
    return replace(state, consecutive_losses=losses)
