"""
perptrader Core: Position Reconciler

Merges authoritative exchange positions into the local replica:
- local rows missing on the exchange are removed once past a grace window,
  with a SYNC_CLOSE ledger entry at the last known price
- exchange positions with no local row are backfilled (stop-loss unset)
- matching rows get price/leverage/PnL refreshed

A failed exchange read (None) skips reconciliation entirely; an outage is
never treated as "no positions".
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.audit_log import AuditLogger
from core.models import ExchangePosition, Position, Trade, TradeAction, estimate_liquidation_price, utc_now
from core.position_manager import PositionManager

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_SECONDS = 180


@dataclass
class ReconcileResult:
    skipped: bool = False
    removed: List[str] = field(default_factory=list)
    backfilled: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)
    in_grace: List[str] = field(default_factory=list)


class PositionReconciler:
    """Keeps the local position replica aligned with exchange truth."""

    def __init__(
        self,
        positions: PositionManager,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        grace_period_seconds: int = DEFAULT_GRACE_PERIOD_SECONDS,
    ):
        self.positions = positions
        self.audit = audit
        self.clock = clock
        self.grace_period = timedelta(seconds=grace_period_seconds)

    def reconcile(
        self,
        account_id: str,
        exchange_positions: Optional[List[ExchangePosition]],
        prices: Optional[Dict[str, float]] = None,
    ) -> ReconcileResult:
        if exchange_positions is None:
            logger.warning(f"Skipping reconciliation for {account_id}: exchange read failed")
            return ReconcileResult(skipped=True)

        prices = prices or {}
        now = self.clock()
        result = ReconcileResult()
        live = {p.symbol: p for p in exchange_positions if p.szi != 0}
        local = self.positions.list_positions(account_id)
        local_symbols = {p.symbol for p in local}

        for position in local:
            exchange_position = live.get(position.symbol)
            if exchange_position is None:
                age = now - position.opened_at
                if age < self.grace_period:
                    logger.info(
                        f"{account_id} {position.symbol} missing on exchange but only "
                        f"{age.total_seconds():.0f}s old; keeping"
                    )
                    result.in_grace.append(position.symbol)
                    continue
                self._remove_stale(position, prices.get(position.symbol), now)
                result.removed.append(position.symbol)
            else:
                self._refresh(position, exchange_position, prices.get(position.symbol))
                result.refreshed.append(position.symbol)

        for symbol, exchange_position in live.items():
            if symbol not in local_symbols:
                self._backfill(account_id, exchange_position, prices.get(symbol), now)
                result.backfilled.append(symbol)

        if result.removed or result.backfilled:
            logger.info(
                f"Reconciled {account_id}: removed={result.removed} backfilled={result.backfilled}"
            )
        return result

    def _remove_stale(self, position: Position, price: Optional[float], now: datetime) -> None:
        exit_price = price or position.current_price or position.entry_price
        pnl = position.pnl_at(exit_price)
        margin = position.margin_usd
        self.positions.record_trade(Trade(
            account_id=position.account_id,
            symbol=position.symbol,
            action=TradeAction.SYNC_CLOSE,
            side=position.side,
            size_usd=position.size_usd,
            leverage=position.leverage,
            price=exit_price,
            executed_at=now,
            pnl=pnl,
            pnl_pct=(pnl / margin * 100) if margin else 0.0,
            reason="position_closed_on_exchange",
        ))
        self.positions.delete_position(position)
        if self.audit:
            self.audit.system_log(
                "INFO", "position_sync",
                f"Removed {position.symbol} {position.side.value}: closed on exchange",
                account_id=position.account_id,
                details={"exit_price": exit_price, "pnl": pnl},
            )

    def _refresh(self, position: Position, exchange_position: ExchangePosition, price: Optional[float]) -> None:
        current_price = price
        if current_price is None and exchange_position.size > 0 and exchange_position.position_value:
            current_price = exchange_position.position_value / exchange_position.size
        if current_price:
            position.current_price = current_price
        position.leverage = exchange_position.leverage or position.leverage
        if exchange_position.liquidation_price:
            position.liquidation_price = exchange_position.liquidation_price
        position.unrealized_pnl = position.pnl_at(position.current_price)
        margin = position.margin_usd
        position.unrealized_pnl_pct = (position.unrealized_pnl / margin * 100) if margin else 0.0
        self.positions.save_position(position)

    def _backfill(
        self,
        account_id: str,
        exchange_position: ExchangePosition,
        price: Optional[float],
        now: datetime,
    ) -> None:
        side = exchange_position.side
        leverage = exchange_position.leverage or 1.0
        entry = exchange_position.entry_price
        current = price or entry
        position = Position(
            account_id=account_id,
            symbol=exchange_position.symbol,
            side=side,
            size_usd=exchange_position.size * entry,
            leverage=leverage,
            entry_price=entry,
            current_price=current,
            liquidation_price=(
                exchange_position.liquidation_price
                or estimate_liquidation_price(side, entry, leverage)
            ),
            opened_at=now,
            stop_loss=None,
            take_profit=None,
            reasoning="Backfilled from exchange",
        )
        position.unrealized_pnl = position.pnl_at(current)
        self.positions.save_position(position)
        message = (
            f"Backfilled {exchange_position.symbol} {side.value} from exchange; "
            f"stop-loss unknown, needs operator attention"
        )
        if self.audit:
            self.audit.system_log(
                "WARNING", "position_sync", message, account_id=account_id,
                details={"szi": exchange_position.szi, "entry_price": entry, "leverage": leverage},
            )
        else:
            logger.warning(message)
