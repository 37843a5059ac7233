"""
perptrader Core: Trading Limits Resolution

Single place where effective per-account limits are computed from built-in
defaults, policy.yaml and per-account overrides. Any disagreement between
layers is recorded on the result and logged once per account and field.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from core.accounts import AccountConfig

logger = logging.getLogger(__name__)

BUILTIN_DEFAULTS: Dict[str, float] = {
    "max_positions": 3,
    "max_same_direction": 2,
    "min_position_usd": 200.0,
    "min_position_pct_of_account": 10.0,
    "max_leverage": 10.0,
    "max_position_size": 0.5,
}


@dataclass
class TradingLimits:
    max_positions: int
    max_same_direction: int
    min_position_usd: float
    max_leverage: float
    max_position_size: float
    discrepancies: List[str] = field(default_factory=list)


class TradingLimitsResolver:
    """Resolves TradingLimits for an account against a loaded policy dict."""

    def __init__(self, policy: Optional[Dict[str, Any]] = None):
        policy = policy or {}
        validator = policy.get("validator", {}) or {}
        risk = policy.get("risk", {}) or {}
        self._policy_values: Dict[str, Optional[float]] = {
            "max_positions": validator.get("max_positions"),
            "max_same_direction": validator.get("max_same_direction"),
            "min_position_usd": validator.get("min_position_usd"),
            "min_position_pct_of_account": validator.get("min_position_pct_of_account"),
            "max_leverage": risk.get("max_leverage"),
            "max_position_size": risk.get("max_position_size"),
        }
        self._reported: Set[Tuple[str, str]] = set()

    def _pick(self, account: AccountConfig, name: str, discrepancies: List[str]) -> float:
        builtin = BUILTIN_DEFAULTS[name]
        policy_value = self._policy_values.get(name)
        account_value = getattr(account, name, None)

        value = builtin
        if policy_value is not None:
            if float(policy_value) != builtin:
                discrepancies.append(f"{name}: policy={policy_value} differs from built-in default {builtin}")
            value = float(policy_value)
        if account_value is not None:
            if float(account_value) != value:
                discrepancies.append(f"{name}: account override={account_value} differs from policy {value}")
            value = float(account_value)
        return value

    def resolve(self, account: AccountConfig, account_value: float) -> TradingLimits:
        discrepancies: List[str] = []
        min_usd_cap = self._pick(account, "min_position_usd", discrepancies)
        min_pct = self._pick(account, "min_position_pct_of_account", discrepancies)
        limits = TradingLimits(
            max_positions=int(self._pick(account, "max_positions", discrepancies)),
            max_same_direction=int(self._pick(account, "max_same_direction", discrepancies)),
            min_position_usd=min(min_usd_cap, account_value * min_pct / 100),
            max_leverage=self._pick(account, "max_leverage", discrepancies),
            max_position_size=self._pick(account, "max_position_size", discrepancies),
            discrepancies=discrepancies,
        )
        for note in discrepancies:
            key = (account.account_id, note)
            if key not in self._reported:
                self._reported.add(key)
                logger.warning(f"Trading limit discrepancy for {account.account_id}: {note}")
        return limits


def resolve_trading_limits(
    account: AccountConfig,
    policy: Optional[Dict[str, Any]],
    account_value: float,
) -> TradingLimits:
    return TradingLimitsResolver(policy).resolve(account, account_value)
