"""
perptrader Core: Accounts

Per-account trading configuration plus persisted circuit-breaker state.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    enter_cooldown,
    record_ai_failure,
    record_ai_success,
    record_trade_outcome,
)
from core.models import utc_now
from infra.state_store import ACCOUNTS, Store

logger = logging.getLogger(__name__)


@dataclass
class AccountConfig:
    account_id: str
    name: str = ""
    wallet_address: Optional[str] = None
    private_key_env: Optional[str] = None
    is_active: bool = True
    testnet: bool = True
    symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    initial_capital: float = 1000.0
    # Per-account overrides; None falls back to policy.yaml
    max_leverage: Optional[float] = None
    max_position_size: Optional[float] = None
    max_positions: Optional[int] = None
    max_same_direction: Optional[int] = None
    min_position_usd: Optional[float] = None
    breaker_config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    started_at: Optional[datetime] = None
    invocation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "wallet_address": self.wallet_address,
            "private_key_env": self.private_key_env,
            "is_active": self.is_active,
            "testnet": self.testnet,
            "symbols": list(self.symbols),
            "initial_capital": self.initial_capital,
            "max_leverage": self.max_leverage,
            "max_position_size": self.max_position_size,
            "max_positions": self.max_positions,
            "max_same_direction": self.max_same_direction,
            "min_position_usd": self.min_position_usd,
            "breaker_config": {
                "cooldown_minutes": self.breaker_config.cooldown_minutes,
                "max_consecutive_ai_failures": self.breaker_config.max_consecutive_ai_failures,
                "max_consecutive_losses": self.breaker_config.max_consecutive_losses,
            },
            "breaker": self.breaker.to_dict(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "invocation_count": self.invocation_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountConfig":
        started_at = data.get("started_at")
        if isinstance(started_at, str):
            started_at = datetime.fromisoformat(started_at)
        return cls(
            account_id=data["account_id"],
            name=data.get("name", ""),
            wallet_address=data.get("wallet_address"),
            private_key_env=data.get("private_key_env"),
            is_active=bool(data.get("is_active", True)),
            testnet=bool(data.get("testnet", True)),
            symbols=list(data.get("symbols") or ["BTC", "ETH", "SOL"]),
            initial_capital=float(data.get("initial_capital", 1000.0)),
            max_leverage=data.get("max_leverage"),
            max_position_size=data.get("max_position_size"),
            max_positions=data.get("max_positions"),
            max_same_direction=data.get("max_same_direction"),
            min_position_usd=data.get("min_position_usd"),
            breaker_config=CircuitBreakerConfig.from_dict(data.get("breaker_config")),
            breaker=CircuitBreakerState.from_dict(data.get("breaker")),
            started_at=started_at,
            invocation_count=int(data.get("invocation_count", 0)),
        )

    @classmethod
    def from_app_config(
        cls,
        raw: Dict[str, Any],
        breaker_defaults: Optional[Dict[str, Any]] = None,
        testnet: bool = True,
    ) -> "AccountConfig":
        """Build from an `accounts:` entry in app.yaml."""
        wallet = raw.get("wallet_address")
        if not wallet and raw.get("wallet_address_env"):
            wallet = os.getenv(raw["wallet_address_env"])
        return cls.from_dict({
            "account_id": raw["id"],
            "name": raw.get("name", raw["id"]),
            "wallet_address": wallet,
            "private_key_env": raw.get("private_key_env"),
            "is_active": raw.get("is_active", True),
            "testnet": raw.get("testnet", testnet),
            "symbols": raw.get("symbols"),
            "initial_capital": raw.get("initial_capital", 1000.0),
            "max_leverage": raw.get("max_leverage"),
            "max_position_size": raw.get("max_position_size"),
            "max_positions": raw.get("max_positions"),
            "max_same_direction": raw.get("max_same_direction"),
            "min_position_usd": raw.get("min_position_usd"),
            "breaker_config": {**(breaker_defaults or {}), **(raw.get("circuit_breaker") or {})},
        })


class AccountRepository:
    """Loads and persists AccountConfig rows, including breaker transitions."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def get(self, account_id: str) -> Optional[AccountConfig]:
        data = self.store.get(ACCOUNTS, account_id)
        return AccountConfig.from_dict(data) if data else None

    def list_active(self) -> List[AccountConfig]:
        return [
            AccountConfig.from_dict(data)
            for _, data in self.store.scan(ACCOUNTS)
            if data.get("is_active", True)
        ]

    def save(self, account: AccountConfig) -> None:
        self.store.put(ACCOUNTS, account.to_dict(), key=account.account_id)

    def upsert(self, account: AccountConfig) -> AccountConfig:
        """Write config fields while keeping persisted breaker state and counters."""
        existing = self.get(account.account_id)
        if existing is not None:
            account.breaker = existing.breaker
            account.started_at = existing.started_at
            account.invocation_count = existing.invocation_count
        if account.started_at is None:
            account.started_at = self.clock()
        self.save(account)
        return account

    def increment_invocations(self, account: AccountConfig) -> AccountConfig:
        current = self.get(account.account_id) or account
        current.invocation_count += 1
        self.save(current)
        return current

    def _transition(
        self,
        account: AccountConfig,
        transition: Callable[[AccountConfig], CircuitBreakerState],
    ) -> AccountConfig:
        # Apply against the stored row so a concurrent trip is never overwritten
        current = self.get(account.account_id) or account
        previous = current.breaker.state
        new_state = transition(current)
        current.breaker = new_state
        self.save(current)
        if previous != new_state.state:
            logger.warning(
                f"Circuit breaker for {current.account_id}: {previous} -> {new_state.state} "
                f"(ai_failures={new_state.consecutive_ai_failures}, losses={new_state.consecutive_losses})"
            )
        return current

    def enter_cooldown(self, account: AccountConfig) -> AccountConfig:
        return self._transition(account, lambda a: enter_cooldown(a.breaker))

    def record_ai_failure(self, account: AccountConfig) -> AccountConfig:
        return self._transition(
            account, lambda a: record_ai_failure(a.breaker, a.breaker_config, self.clock())
        )

    def record_ai_success(self, account: AccountConfig) -> AccountConfig:
        return self._transition(account, lambda a: record_ai_success(a.breaker))

    def record_trade_outcome(self, account_id: str, won: bool) -> Optional[AccountConfig]:
        account = self.get(account_id)
        if account is None:
            logger.warning(f"Trade outcome for unknown account {account_id}")
            return None
        return self._transition(
            account,
            lambda a: record_trade_outcome(a.breaker, a.breaker_config, won, self.clock()),
        )
