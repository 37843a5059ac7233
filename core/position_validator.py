"""
perptrader Core: Position Validator

Ordered pre-trade checks for an open decision. The first failing check
aborts the open with a labelled reason; only the symbol trade lock taken
by the first check persists as a side effect.

Checks, in order:
    SYMBOL_LOCK, HYPERLIQUID_POSITION, OPEN_ORDERS, IN_MEMORY,
    DUPLICATE_POSITION, MAX_POSITIONS, SAME_DIRECTION, MIN_SIZE,
    COOLDOWN / DUPLICATE_GUARD

Exchange read failures in the position/order checks are logged and the
pipeline continues; the durable lock and ledger checks still apply.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ai.schemas import OpenDecision
from core.audit_log import AuditLogger
from core.exceptions import ExchangeError
from core.exchange import ExchangeClient
from core.lock_manager import LockManager
from core.models import utc_now
from core.position_manager import PositionManager
from core.trade_limits import TradeCooldownCache
from core.trading_config import TradingLimits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    allowed: bool
    reason: str
    check_name: str


@dataclass(frozen=True)
class ValidatorConfig:
    memory_guard_seconds: int = 60
    cooldown_seconds: int = 300
    duplicate_guard_seconds: int = 60


class PositionValidator:
    """Runs the pre-trade pipeline for one account's open decision."""

    def __init__(
        self,
        locks: LockManager,
        positions: PositionManager,
        cooldowns: TradeCooldownCache,
        audit: AuditLogger,
        config: ValidatorConfig = ValidatorConfig(),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.locks = locks
        self.positions = positions
        self.cooldowns = cooldowns
        self.audit = audit
        self.config = config
        self.clock = clock

    def _reject(self, account_id: str, check_name: str, reason: str, details: Optional[dict] = None) -> ValidationResult:
        self.audit.system_log(
            "WARNING", "validator", f"{check_name}: {reason}", account_id=account_id, details=details
        )
        return ValidationResult(False, reason, check_name)

    def validate_open(
        self,
        account_id: str,
        exchange: ExchangeClient,
        decision: OpenDecision,
        limits: TradingLimits,
    ) -> ValidationResult:
        symbol = decision.symbol
        side = decision.side.value
        symbol_key = f"{symbol}-{side}"

        # 1. Symbol+side lease
        lock = self.locks.acquire_symbol_trade_lock(account_id, symbol, side)
        if not lock.success:
            if lock.reason == "race_condition_lost":
                reason = "Lost symbol lock race to a concurrent attempt"
            else:
                reason = f"Symbol locked ({lock.seconds_remaining}s remaining)"
            return self._reject(account_id, "SYMBOL_LOCK", reason, {"symbol": symbol, "side": side})

        # 2. Exchange position (authoritative)
        try:
            existing = [p for p in exchange.get_positions() if p.symbol == symbol and p.szi != 0]
            if existing:
                return self._reject(
                    account_id, "HYPERLIQUID_POSITION",
                    f"Position already exists on exchange (size: {existing[0].szi})",
                    {"symbol": symbol, "szi": existing[0].szi},
                )
        except ExchangeError as e:
            logger.error(f"Failed to query exchange positions for {account_id}: {e}")

        # 3. Exchange open orders
        try:
            pending = exchange.get_open_orders(symbol)
            if pending:
                return self._reject(
                    account_id, "OPEN_ORDERS", "Pending order exists on exchange",
                    {"symbol": symbol, "side": pending[0].side, "size": pending[0].size},
                )
        except ExchangeError as e:
            logger.error(f"Failed to query open orders for {account_id}: {e}")

        # 4. Process-local fast path
        since = self.cooldowns.seconds_since(account_id, symbol, side)
        if since is not None and since < self.config.memory_guard_seconds:
            return self._reject(
                account_id, "IN_MEMORY", f"In-memory duplicate ({int(since)}s ago)", {"key": symbol_key}
            )

        local = self.positions.list_positions(account_id)

        # 5. Local duplicate
        duplicate = next((p for p in local if p.symbol == symbol), None)
        if duplicate is not None:
            return self._reject(
                account_id, "DUPLICATE_POSITION",
                f"Already have {duplicate.side.value} position on {symbol}",
            )

        # 6. Total positions
        if len(local) >= limits.max_positions:
            return self._reject(
                account_id, "MAX_POSITIONS",
                f"Position limit reached: {len(local)}/{limits.max_positions}",
            )

        # 7. Same direction
        same_direction = sum(1 for p in local if p.side is decision.side)
        if same_direction >= limits.max_same_direction:
            return self._reject(
                account_id, "SAME_DIRECTION",
                f"Same-direction limit: {same_direction}/{limits.max_same_direction} {side}",
            )

        # 8. Minimum size
        if decision.size_usd < limits.min_position_usd:
            return self._reject(
                account_id, "MIN_SIZE",
                f"Position too small: ${decision.size_usd:.2f} < ${limits.min_position_usd:.2f}",
            )

        # 9. Ledger cooldown and duplicate guard
        now = self.clock()
        recent = self.positions.recent_opens(
            account_id, symbol, now - timedelta(seconds=self.config.cooldown_seconds)
        )
        if recent:
            last = max(recent, key=lambda t: t.executed_at)
            elapsed = (now - last.executed_at).total_seconds()
            if elapsed < self.config.duplicate_guard_seconds:
                return self._reject(
                    account_id, "DUPLICATE_GUARD", f"Duplicate guard: opened {int(elapsed)}s ago"
                )
            return self._reject(
                account_id, "COOLDOWN", f"Symbol cooldown: traded {int(elapsed // 60)}min ago"
            )

        logger.info(
            f"Validation passed for {account_id} {symbol} {decision.action} "
            f"(positions {len(local)}/{limits.max_positions}, same-direction "
            f"{same_direction}/{limits.max_same_direction}, size ${decision.size_usd:.2f})"
        )
        return ValidationResult(True, "All validation checks passed", "ALL_PASSED")
