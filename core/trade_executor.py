"""
perptrader Core: Trade Executor

Opens and closes perp positions on the exchange and keeps the local replica
and the trade ledger in step with what actually happened.

Open path:
    price -> sanitize SL/TP -> entry order -> persist trade + position
    -> stop-loss (mandatory, retried, emergency close on failure)
    -> take-profit (best effort, retried) -> verify both are visible

Close path:
    fresh exchange read -> cancel resting orders -> reduce-only close sized to
    the exchange position -> ledger + local cleanup -> breaker feed
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ai.schemas import Close, OpenDecision
from core.accounts import AccountRepository
from core.audit_log import AuditLogger
from core.exceptions import ExchangeError
from core.exchange import ExchangeClient
from core.models import (
    ExchangePosition,
    OrderResult,
    Position,
    Side,
    Trade,
    TradeAction,
    estimate_liquidation_price,
    utc_now,
)
from core.position_manager import PositionManager
from core.protective_orders import ProtectiveConfig, generate_invalidation_condition, sanitize_protective_prices
from core.trade_limits import TradeCooldownCache
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

EMERGENCY_CLOSE_REASON = "emergency_close_stop_loss_failed"
ALREADY_CLOSED_REASON = "position_already_closed_on_exchange"


@dataclass(frozen=True)
class ExecutorConfig:
    protective_max_attempts: int = 3
    protective_backoff_seconds: float = 2.0
    protective: ProtectiveConfig = ProtectiveConfig()


@dataclass
class ExecutionOutcome:
    """
    Result of one executor call.

    status values:
        opened, closed, already_closed, emergency_closed, unprotected,
        failed, skipped
    """
    status: str
    symbol: str
    message: str = ""
    position: Optional[Position] = None
    trades: List[Trade] = field(default_factory=list)
    stop_loss_placed: bool = False
    take_profit_placed: bool = False
    pnl: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.status in ("opened", "closed", "already_closed")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "symbol": self.symbol,
            "message": self.message,
            "stop_loss_placed": self.stop_loss_placed,
            "take_profit_placed": self.take_profit_placed,
            "pnl": self.pnl,
        }


class TradeExecutor:
    """Places orders for one decision at a time. Callers hold the account lock."""

    def __init__(
        self,
        positions: PositionManager,
        accounts: AccountRepository,
        audit: AuditLogger,
        cooldowns: TradeCooldownCache,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        config: ExecutorConfig = ExecutorConfig(),
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.positions = positions
        self.accounts = accounts
        self.audit = audit
        self.cooldowns = cooldowns
        self.alerts = alerts or AlertService.disabled()
        self.metrics = metrics
        self.config = config
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def execute_open(self, account_id: str, exchange: ExchangeClient, decision: OpenDecision) -> ExecutionOutcome:
        symbol = decision.symbol
        side = decision.side

        # Price read failures propagate; nothing has been committed yet
        price = exchange.get_market_price(symbol)
        protective = sanitize_protective_prices(
            side, price, decision.stop_loss, decision.take_profit, self.config.protective
        )
        if protective.adjustments:
            logger.warning(f"{account_id} {symbol}: protective prices adjusted: {'; '.join(protective.adjustments)}")

        size = decision.size_usd / price
        logger.info(
            f"Opening {side.value} {symbol} for {account_id}: ${decision.size_usd:.2f} "
            f"({size:.6f} @ ~{price:.4f}) x{decision.leverage:g} SL={protective.stop_loss:.4f} "
            f"TP={protective.take_profit if protective.take_profit is not None else 'none'}"
        )

        try:
            entry = exchange.place_order(symbol, side.is_buy, size, decision.leverage, price)
        except ExchangeError as e:
            entry = OrderResult(success=False, error=str(e))
        if not entry.success:
            self.audit.system_log(
                "ERROR", "executor", f"Entry order failed for {symbol}: {entry.error}",
                account_id=account_id, details={"symbol": symbol, "side": side.value},
            )
            self._record_execution("entry_failed")
            return ExecutionOutcome("failed", symbol, f"Entry order failed: {entry.error}")

        fill_price = entry.avg_price or price
        filled_size = entry.filled_size or size
        notional = filled_size * fill_price
        now = self.clock()

        self.cooldowns.record(account_id, symbol, side.value)

        # Persist before protection so the position is tracked whatever happens next
        open_trade = self.positions.record_trade(Trade(
            account_id=account_id,
            symbol=symbol,
            action=TradeAction.OPEN,
            side=side,
            size_usd=notional,
            leverage=decision.leverage,
            price=fill_price,
            executed_at=now,
            reason=decision.reasoning,
            confidence=decision.confidence,
            order_id=entry.order_id,
        ))
        position = self.positions.save_position(Position(
            account_id=account_id,
            symbol=symbol,
            side=side,
            size_usd=notional,
            leverage=decision.leverage,
            entry_price=fill_price,
            current_price=fill_price,
            liquidation_price=estimate_liquidation_price(side, fill_price, decision.leverage),
            opened_at=now,
            stop_loss=protective.stop_loss,
            take_profit=protective.take_profit,
            invalidation_condition=generate_invalidation_condition(symbol, side, fill_price, protective.stop_loss),
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            entry_order_id=entry.order_id,
        ))
        outcome = ExecutionOutcome("opened", symbol, position=position, trades=[open_trade])

        sl_result = self._place_protective(
            exchange, "stop_loss", symbol, filled_size, protective.stop_loss, side
        )
        if sl_result is None:
            return self._emergency_close(account_id, exchange, position, filled_size, outcome)
        outcome.stop_loss_placed = True
        position.stop_loss_order_id = sl_result.order_id

        if protective.take_profit is not None:
            tp_result = self._place_protective(
                exchange, "take_profit", symbol, filled_size, protective.take_profit, side
            )
            if tp_result is None:
                self.audit.system_log(
                    "WARNING", "executor", "Take-profit placement failed - position open without TP",
                    account_id=account_id, details={"symbol": symbol, "take_profit": protective.take_profit},
                )
                position.take_profit = None
            else:
                outcome.take_profit_placed = True
                position.take_profit_order_id = tp_result.order_id

        self.positions.save_position(position)
        self._verify_protection(account_id, exchange, position, outcome)

        self._safe_notify(
            self.alerts.notify_trade_opened,
            account_id, symbol, side.value, notional, decision.leverage,
            fill_price, position.stop_loss, position.take_profit,
        )
        self._record_execution("opened")
        logger.info(
            f"Opened {side.value} {symbol} for {account_id} @ {fill_price:.4f} "
            f"(SL {'ok' if outcome.stop_loss_placed else 'missing'}, "
            f"TP {'ok' if outcome.take_profit_placed else 'none'})"
        )
        return outcome

    def _place_protective(
        self,
        exchange: ExchangeClient,
        kind: str,
        symbol: str,
        size: float,
        trigger_price: float,
        side: Side,
    ) -> Optional[OrderResult]:
        """Place a stop-loss or take-profit with bounded retries. None when all attempts fail."""
        attempts = self.config.protective_max_attempts
        place = exchange.place_stop_loss if kind == "stop_loss" else exchange.place_take_profit
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                landed = self._find_protective(exchange, kind, symbol)
                if landed is not None:
                    logger.info(f"{kind} for {symbol} already on book from a previous attempt ({landed})")
                    return OrderResult(success=True, order_id=landed)
            try:
                result = place(symbol, size, trigger_price, side is Side.LONG)
                if result.success:
                    return result
                logger.warning(f"{kind} attempt {attempt}/{attempts} for {symbol} rejected: {result.error}")
            except ExchangeError as e:
                logger.warning(f"{kind} attempt {attempt}/{attempts} for {symbol} failed: {e}")
            except Exception as e:
                # SDK-side errors (wire rounding, unknown asset) escape the exchange wrapper
                logger.exception(f"{kind} attempt {attempt}/{attempts} for {symbol} raised {type(e).__name__}: {e}")
            if attempt < attempts:
                self.sleep(self.config.protective_backoff_seconds * 2 ** (attempt - 1))
        logger.error(f"{kind} for {symbol} failed after {attempts} attempts")
        return None

    @staticmethod
    def _find_protective(exchange: ExchangeClient, kind: str, symbol: str) -> Optional[str]:
        try:
            orders = exchange.get_open_orders(symbol)
        except Exception as e:
            logger.warning(f"Could not check open orders for {symbol} before retry: {e}")
            return None
        for order in orders:
            if kind == "stop_loss" and order.is_stop_loss:
                return order.order_id
            if kind == "take_profit" and order.is_take_profit:
                return order.order_id
        return None

    def _emergency_close(
        self,
        account_id: str,
        exchange: ExchangeClient,
        position: Position,
        size: float,
        outcome: ExecutionOutcome,
    ) -> ExecutionOutcome:
        symbol = position.symbol
        logger.critical(f"Stop-loss could not be placed for {account_id} {symbol}; closing position at market")
        if self.metrics is not None:
            self.metrics.record_emergency_close()

        try:
            result = exchange.close_position(symbol, size, position.side.opposite().is_buy)
        except Exception as e:
            result = OrderResult(success=False, error=f"{type(e).__name__}: {e}")

        if not result.success:
            self.audit.system_log(
                "CRITICAL", "executor",
                f"UNPROTECTED POSITION: {symbol} open without stop-loss and emergency close failed",
                account_id=account_id, details={"symbol": symbol, "error": result.error},
            )
            self._safe_notify(
                self.alerts.notify_risk_alert, account_id, "UNPROTECTED POSITION",
                f"{symbol} {position.side.value} is open without a stop-loss; emergency close failed: {result.error}",
            )
            self._record_execution("unprotected")
            outcome.status = "unprotected"
            outcome.message = "Stop-loss failed and emergency close failed"
            return outcome

        exit_price = result.avg_price or self._mark_price(exchange, symbol) or position.entry_price
        pnl = position.pnl_at(exit_price)
        close_trade = self.positions.record_trade(Trade(
            account_id=account_id,
            symbol=symbol,
            action=TradeAction.CLOSE,
            side=position.side,
            size_usd=position.size_usd,
            leverage=position.leverage,
            price=exit_price,
            executed_at=self.clock(),
            pnl=pnl,
            pnl_pct=self._pnl_pct(pnl, position),
            reason=EMERGENCY_CLOSE_REASON,
            order_id=result.order_id,
        ))
        self.positions.delete_positions_for_symbol(account_id, symbol)
        self.audit.system_log(
            "CRITICAL", "executor",
            f"Emergency close of {symbol}: stop-loss could not be placed",
            account_id=account_id, details={"symbol": symbol, "exit_price": exit_price, "pnl": pnl},
        )
        self._safe_notify(
            self.alerts.notify_risk_alert, account_id, "Emergency close",
            f"{symbol} {position.side.value} closed because its stop-loss could not be placed",
            {"exit_price": exit_price, "pnl": pnl},
        )
        self._record_execution("emergency_closed")
        outcome.status = "emergency_closed"
        outcome.message = "Stop-loss failed; position closed at market"
        outcome.position = None
        outcome.trades.append(close_trade)
        outcome.pnl = pnl
        return outcome

    def _verify_protection(
        self,
        account_id: str,
        exchange: ExchangeClient,
        position: Position,
        outcome: ExecutionOutcome,
    ) -> None:
        try:
            orders = exchange.get_open_orders(position.symbol)
        except ExchangeError as e:
            self.audit.system_log(
                "WARNING", "executor", f"Could not verify protective orders for {position.symbol}: {e}",
                account_id=account_id,
            )
            return

        if not any(o.is_stop_loss for o in orders):
            self.audit.system_log(
                "CRITICAL", "executor",
                f"Stop-loss for {position.symbol} reported placed but not visible on exchange",
                account_id=account_id, details={"symbol": position.symbol, "stop_loss": position.stop_loss},
            )
            self._safe_notify(
                self.alerts.notify_risk_alert, account_id, "Stop-loss not visible",
                f"{position.symbol} stop-loss at {position.stop_loss} is not on the order book",
            )
        if outcome.take_profit_placed and not any(o.is_take_profit for o in orders):
            self.audit.system_log(
                "WARNING", "executor",
                f"Take-profit for {position.symbol} reported placed but not visible on exchange",
                account_id=account_id, details={"symbol": position.symbol, "take_profit": position.take_profit},
            )

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def execute_close(self, account_id: str, exchange: ExchangeClient, decision: Close) -> ExecutionOutcome:
        symbol = decision.symbol
        local = self.positions.get_position(account_id, symbol)

        # Authoritative read; failure aborts the close untouched
        live: Optional[ExchangePosition] = next(
            (p for p in exchange.get_positions() if p.symbol == symbol and p.szi != 0), None
        )

        if live is None:
            if local is None:
                logger.info(f"Close requested for {symbol} on {account_id} but no position exists")
                return ExecutionOutcome("skipped", symbol, "No position to close")
            return self._reconcile_already_closed(account_id, local, decision)

        try:
            cancelled = exchange.cancel_orders_for_symbol(symbol)
            if cancelled:
                logger.info(f"Cancelled {cancelled} resting orders for {symbol}")
        except ExchangeError as e:
            logger.warning(f"Failed to cancel resting orders for {symbol}: {e}")

        side = live.side
        try:
            result = exchange.close_position(symbol, live.size, side.opposite().is_buy)
        except ExchangeError as e:
            result = OrderResult(success=False, error=str(e))
        if not result.success:
            self.audit.system_log(
                "ERROR", "executor", f"Close order failed for {symbol}: {result.error}",
                account_id=account_id, details={"symbol": symbol, "size": live.size},
            )
            self._record_execution("close_failed")
            return ExecutionOutcome("failed", symbol, f"Close order failed: {result.error}", position=local)

        exit_price = self._mark_price(exchange, symbol) or result.avg_price or live.entry_price
        if local is not None:
            tracked = local
        else:
            tracked = Position(
                account_id=account_id,
                symbol=symbol,
                side=side,
                size_usd=live.size * live.entry_price,
                leverage=live.leverage,
                entry_price=live.entry_price,
                current_price=exit_price,
                liquidation_price=live.liquidation_price or 0.0,
                opened_at=self.clock(),
            )
        pnl = tracked.pnl_at(exit_price)
        pnl_pct = self._pnl_pct(pnl, tracked)

        trade = self.positions.record_trade(Trade(
            account_id=account_id,
            symbol=symbol,
            action=TradeAction.CLOSE,
            side=side,
            size_usd=tracked.size_usd,
            leverage=tracked.leverage,
            price=exit_price,
            executed_at=self.clock(),
            pnl=pnl,
            pnl_pct=pnl_pct,
            reason=decision.reasoning,
            confidence=decision.confidence,
            order_id=result.order_id,
        ))
        self.positions.delete_positions_for_symbol(account_id, symbol)

        self._safe_notify(
            self.alerts.notify_trade_closed,
            account_id, symbol, side.value, tracked.entry_price, exit_price, pnl, pnl_pct,
        )
        self._feed_breaker(account_id, pnl)
        self._record_execution("closed")
        logger.info(f"Closed {side.value} {symbol} for {account_id} @ {exit_price:.4f} PnL ${pnl:.2f} ({pnl_pct:+.2f}%)")
        return ExecutionOutcome("closed", symbol, trades=[trade], pnl=pnl)

    def _reconcile_already_closed(self, account_id: str, local: Position, decision: Close) -> ExecutionOutcome:
        exit_price = local.current_price or local.entry_price
        pnl = local.pnl_at(exit_price)
        trade = self.positions.record_trade(Trade(
            account_id=account_id,
            symbol=local.symbol,
            action=TradeAction.CLOSE,
            side=local.side,
            size_usd=local.size_usd,
            leverage=local.leverage,
            price=exit_price,
            executed_at=self.clock(),
            pnl=pnl,
            pnl_pct=self._pnl_pct(pnl, local),
            reason=ALREADY_CLOSED_REASON,
            confidence=decision.confidence,
        ))
        self.positions.delete_positions_for_symbol(account_id, local.symbol)
        logger.warning(
            f"{local.symbol} for {account_id} already closed on exchange; recorded reconciling close "
            f"at last known price {exit_price:.4f}"
        )
        self._record_execution("already_closed")
        return ExecutionOutcome("already_closed", local.symbol, "Position already closed on exchange",
                                trades=[trade], pnl=pnl)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_price(exchange: ExchangeClient, symbol: str) -> Optional[float]:
        try:
            return exchange.get_market_price(symbol)
        except ExchangeError as e:
            logger.warning(f"Could not fetch mark price for {symbol}: {e}")
            return None

    @staticmethod
    def _pnl_pct(pnl: float, position: Position) -> float:
        margin = position.margin_usd
        return pnl / margin * 100 if margin else 0.0

    def _feed_breaker(self, account_id: str, pnl: float) -> None:
        account = self.accounts.get(account_id)
        before = account.breaker.state if account is not None else None
        updated = self.accounts.record_trade_outcome(account_id, won=pnl >= 0)
        if updated is not None and updated.breaker.state == "tripped" and before != "tripped":
            if self.metrics is not None:
                self.metrics.record_breaker_trip("losses")
            self._safe_notify(
                self.alerts.notify_risk_alert, account_id, "Circuit breaker tripped",
                f"{updated.breaker.consecutive_losses} consecutive losing trades",
            )

    def _safe_notify(self, fn: Callable[..., bool], *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning(f"Notification failed (ignored): {e}")

    def _record_execution(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_execution(outcome)
