"""
perptrader Core: Risk Caps

Hard caps applied to an open decision after the validator pipeline.
NO decision source output can exceed these.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ai.schemas import OpenDecision
from core.trading_config import TradingLimits

logger = logging.getLogger(__name__)


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = field(default_factory=list)


def check_open_risk(decision: OpenDecision, limits: TradingLimits, account_value: float) -> RiskCheckResult:
    """Reject notional above account_value * max_position_size or leverage above max_leverage."""
    violated: List[str] = []
    reasons: List[str] = []

    max_size_usd = account_value * limits.max_position_size
    if decision.size_usd > max_size_usd:
        violated.append("max_position_size")
        reasons.append(f"position size ${decision.size_usd:.2f} exceeds max ${max_size_usd:.2f}")

    if decision.leverage > limits.max_leverage:
        violated.append("max_leverage")
        reasons.append(f"leverage {decision.leverage:g}x exceeds max {limits.max_leverage:g}x")

    if violated:
        reason = "; ".join(reasons)
        logger.info(f"Risk rejected {decision.action} {decision.symbol}: {reason}")
        return RiskCheckResult(approved=False, reason=reason, violated_checks=violated)
    return RiskCheckResult(approved=True)
