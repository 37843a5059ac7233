"""
perptrader Runner: Main Loop

Orchestrates one control-loop tick across all active accounts.

Per account, in order:
1. Circuit breaker gate (tripped -> skip; elapsed cooldown -> probation)
2. Trading lock (one in-flight iteration per account)
3. Market data and account state
4. Position sync against the exchange (skipped when the read fails)
5. Performance metrics for the decision context
6. Decision request (failures feed the breaker)
7. AI log
8. Non-HOLD: trend guard -> validator -> risk caps -> executor
9. Lock release in finally

A failure for one account is logged, alerted and isolated; other accounts in
the same tick still run.
"""

import logging
import random
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from ai.llm_client import DecisionSource, ScriptedDecisionSource, create_decision_source
from ai.schemas import Close, DecisionContext, Hold, is_open
from backtest.data_loader import HyperliquidCandleLoader
from core.accounts import AccountConfig, AccountRepository
from core.audit_log import AuditLogger
from core.circuit_breaker import should_allow_trading
from core.exceptions import DecisionSourceError, ExchangeError
from core.exchange import ExchangeClient, HyperliquidExchange
from core.lock_manager import LockManager
from core.models import ExchangePosition, Position, utc_now
from core.performance import compute_performance
from core.position_manager import PositionManager
from core.position_reconciler import PositionReconciler
from core.position_validator import PositionValidator, ValidatorConfig
from core.protective_orders import ProtectiveConfig
from core.risk import check_open_risk
from core.trade_executor import ExecutionOutcome, ExecutorConfig, TradeExecutor
from core.trade_limits import TradeCooldownCache
from core.trading_config import TradingLimitsResolver
from core.trend_guard import TrendGuard, analyze_trend
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import Store, create_store_from_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class LoopConfig:
    interval_seconds: float = 180.0
    jitter_pct: float = 10.0
    position_sync_interval_seconds: float = 60.0
    dry_run: bool = False

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]], dry_run: bool = False) -> "LoopConfig":
        loop = (policy or {}).get("loop") or {}
        return cls(
            interval_seconds=float(loop.get("interval_seconds", 180.0)),
            jitter_pct=float(loop.get("jitter_pct", 10.0)),
            position_sync_interval_seconds=float(loop.get("position_sync_interval_seconds", 60.0)),
            dry_run=dry_run,
        )


@dataclass
class AccountCycleResult:
    """
    Outcome of one account's iteration.

    status values:
        blocked, locked, skipped, hold, executed, rejected, dry_run, ai_error, failed
    """
    account_id: str
    status: str
    action: Optional[str] = None
    symbol: Optional[str] = None
    message: str = ""
    execution: Optional[ExecutionOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "status": self.status,
            "action": self.action,
            "symbol": self.symbol,
            "message": self.message,
            "execution": self.execution.to_dict() if self.execution else None,
        }


@dataclass
class TickResult:
    started_at: datetime
    duration_seconds: float = 0.0
    accounts: List[AccountCycleResult] = field(default_factory=list)

    def by_status(self, status: str) -> List[AccountCycleResult]:
        return [r for r in self.accounts if r.status == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "accounts": [r.to_dict() for r in self.accounts],
        }


def _position_summary(position: Position) -> Dict[str, Any]:
    pnl_pct = 0.0
    if position.current_price and position.margin_usd > 0:
        pnl_pct = position.pnl_at(position.current_price) / position.margin_usd * 100
    return {
        "symbol": position.symbol,
        "side": position.side.value,
        "size_usd": position.size_usd,
        "leverage": position.leverage,
        "entry_price": position.entry_price,
        "current_price": position.current_price,
        "unrealized_pnl_pct": round(pnl_pct, 2),
        "stop_loss": position.stop_loss,
        "take_profit": position.take_profit,
    }


class ControlLoop:
    """
    Control loop orchestrator.

    Responsibilities:
    - Run one tick across all active accounts
    - Keep per-account failures isolated
    - Run the position-sync job between ticks
    """

    def __init__(
        self,
        store: Store,
        decision_source: DecisionSource,
        exchange_factory: Callable[[AccountConfig], ExchangeClient],
        policy: Optional[Dict[str, Any]] = None,
        loop_config: Optional[LoopConfig] = None,
        closes: Optional[Callable[[str], List[float]]] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        policy = policy or {}
        self.store = store
        self.decision_source = decision_source
        self.exchange_factory = exchange_factory
        self.policy = policy
        self.config = loop_config or LoopConfig.from_policy(policy)
        self.clock = clock
        self._sleep = sleep
        self.alerts = alerts or AlertService.disabled()
        self.metrics = metrics
        self.audit = audit or AuditLogger(store, clock=clock)

        locks_cfg = policy.get("locks") or {}
        validator_cfg = policy.get("validator") or {}
        executor_cfg = policy.get("executor") or {}
        trend_cfg = policy.get("trend_guard") or {}
        reconciler_cfg = policy.get("reconciler") or {}

        self.accounts = AccountRepository(store, clock=clock)
        self.positions = PositionManager(store)
        self.cooldowns = TradeCooldownCache(clock=clock)
        self.locks = LockManager(
            store,
            clock=clock,
            trading_lock_ttl_seconds=int(locks_cfg.get("trading_lock_ttl_seconds", 120)),
            symbol_lock_ttl_seconds=int(locks_cfg.get("symbol_lock_ttl_seconds", 120)),
        )
        self.reconciler = PositionReconciler(
            self.positions,
            self.audit,
            clock=clock,
            grace_period_seconds=int(reconciler_cfg.get("grace_period_seconds", 180)),
        )
        self.validator = PositionValidator(
            self.locks,
            self.positions,
            self.cooldowns,
            self.audit,
            ValidatorConfig(
                memory_guard_seconds=int(validator_cfg.get("memory_guard_seconds", 60)),
                cooldown_seconds=int(validator_cfg.get("cooldown_seconds", 300)),
                duplicate_guard_seconds=int(validator_cfg.get("duplicate_guard_seconds", 60)),
            ),
            clock=clock,
        )
        self.executor = TradeExecutor(
            self.positions,
            self.accounts,
            self.audit,
            self.cooldowns,
            alerts=self.alerts,
            metrics=metrics,
            config=ExecutorConfig(
                protective_max_attempts=int(executor_cfg.get("protective_max_attempts", 3)),
                protective_backoff_seconds=float(executor_cfg.get("protective_backoff_seconds", 2.0)),
                protective=ProtectiveConfig(
                    default_stop_loss_pct=float(executor_cfg.get("default_stop_loss_pct", 3.0)),
                    default_take_profit_pct=float(executor_cfg.get("default_take_profit_pct", 0.8)),
                    percent_threshold_ratio=float(executor_cfg.get("percent_threshold_ratio", 0.1)),
                ),
            ),
            clock=clock,
            sleep=sleep,
        )
        self.closes = closes
        self.trend_guard = TrendGuard(
            closes or (lambda symbol: []),
            self.audit,
            min_strength=int(trend_cfg.get("min_strength", 6)),
            enabled=bool(trend_cfg.get("enabled", True)) and closes is not None,
        )
        self.limits = TradingLimitsResolver(policy)
        self._running = True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def run_control_loop_tick(self) -> TickResult:
        started = time.monotonic()
        result = TickResult(started_at=self.clock())
        swept = self.locks.sweep_expired()
        if swept:
            logger.info(f"Swept {swept} expired lock(s)")

        accounts = self.accounts.list_active()
        if not accounts:
            logger.warning("No active accounts; nothing to do")

        for account in accounts:
            cycle = self._run_account(account)
            result.accounts.append(cycle)
            self.audit.log_cycle(result.started_at, account.account_id, cycle.to_dict())
            if self.metrics is not None:
                self.metrics.record_account_cycle(cycle.status)

        result.duration_seconds = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.observe_tick(result.duration_seconds)
        summary = ", ".join(f"{r.account_id}={r.status}" for r in result.accounts) or "none"
        logger.info(f"Tick complete in {result.duration_seconds:.2f}s: {summary}")
        return result

    def _breaker_gate(self, account: AccountConfig) -> Tuple[AccountConfig, Optional[AccountCycleResult]]:
        permission = should_allow_trading(account.breaker, account.breaker_config.cooldown_minutes, self.clock())
        if permission.enter_cooldown:
            account = self.accounts.enter_cooldown(account)
        if permission.allowed:
            return account, None
        self.audit.system_log(
            "WARNING", "circuit_breaker", f"Trading blocked: {permission.reason}", account_id=account.account_id,
            details=account.breaker.to_dict(),
        )
        return account, AccountCycleResult(account.account_id, "blocked", message=permission.reason)

    def _run_account(self, account: AccountConfig) -> AccountCycleResult:
        account_id = account.account_id

        # 1. Circuit breaker
        account, blocked = self._breaker_gate(account)
        if blocked is not None:
            return blocked

        # 2. Trading lock
        lock = self.locks.acquire_trading_lock(account_id)
        if not lock.success:
            if self.metrics is not None:
                self.metrics.record_lock_contention("trading")
            return AccountCycleResult(
                account_id, "locked", message=f"Trading lock held ({lock.seconds_remaining}s remaining)"
            )

        try:
            # The row may have changed between the scan and the lock
            fresh = self.accounts.get(account_id)
            if fresh is None or not fresh.is_active:
                return AccountCycleResult(account_id, "skipped", message="Account removed or deactivated")
            account, blocked = self._breaker_gate(fresh)
            if blocked is not None:
                return blocked
            return self._trade_account(account)
        except DecisionSourceError as e:
            return AccountCycleResult(account_id, "ai_error", message=str(e))
        except Exception as e:
            logger.exception(f"Cycle failed for {account_id}: {e}")
            self.audit.system_log(
                "ERROR", "trading_loop", f"Trading cycle failed: {e}", account_id=account_id,
                details={"error_type": type(e).__name__},
            )
            self._safe_alert(AlertSeverity.WARNING, "Trading cycle failed", f"{account_id}: {e}")
            return AccountCycleResult(account_id, "failed", message=str(e))
        finally:
            self.locks.release_trading_lock(lock.token)

    def _trade_account(self, account: AccountConfig) -> AccountCycleResult:
        account_id = account.account_id
        exchange = self.exchange_factory(account)

        # 3. Market data and account state (critical)
        state = exchange.get_account_state()
        prices = {symbol: exchange.get_market_price(symbol) for symbol in account.symbols}
        self.audit.account_snapshot(account_id, state)

        # 4. Position sync, then backfill
        self.reconciler.reconcile(account_id, self._read_positions(exchange, account_id), prices)
        local_positions = self.positions.list_positions(account_id)
        if self.metrics is not None:
            self.metrics.set_open_positions(account_id, len(local_positions))

        # 5. Performance
        account = self.accounts.increment_invocations(account)
        performance = compute_performance(
            account, state.account_value, self.positions.list_trades(account_id), self.clock()
        )
        limits = self.limits.resolve(account, state.account_value)

        context = DecisionContext(
            account_id=account_id,
            account_value=state.account_value,
            available_margin=state.withdrawable,
            symbols=list(account.symbols),
            prices=prices,
            positions=[_position_summary(p) for p in local_positions],
            performance=performance.to_dict(),
            max_leverage=limits.max_leverage,
            market_data=self._market_data(account.symbols),
        )

        # 6. Decision
        try:
            response = self.decision_source.request_decision(context)
        except DecisionSourceError as e:
            self.audit.ai_log(account_id, getattr(self.decision_source, "model", "unknown"), None, None,
                              error=str(e))
            before = account.breaker.state
            account = self.accounts.record_ai_failure(account)
            self.audit.system_log("ERROR", "ai", f"Decision request failed: {e}", account_id=account_id)
            if account.breaker.state == "tripped" and before != "tripped":
                if self.metrics is not None:
                    self.metrics.record_breaker_trip("ai_failures")
                self._safe_alert(
                    AlertSeverity.CRITICAL, "Circuit breaker tripped",
                    f"{account_id}: {account.breaker.consecutive_ai_failures} consecutive AI failures",
                )
            raise
        account = self.accounts.record_ai_success(account)

        # 7. AI log
        decision = response.decision
        self.audit.ai_log(
            account_id,
            response.model,
            response.raw_response,
            decision.to_dict(),
            thinking=response.thinking,
            duration_ms=response.duration_ms,
            warnings=response.warnings,
        )
        if self.metrics is not None:
            self.metrics.record_decision(decision.action)

        # 8. Act
        if isinstance(decision, Hold):
            return AccountCycleResult(account_id, "hold", action=decision.action, message=decision.reasoning)

        if isinstance(decision, Close):
            if self.config.dry_run:
                logger.info(f"DRY_RUN: would close {decision.symbol} for {account_id}")
                return AccountCycleResult(account_id, "dry_run", decision.action, decision.symbol)
            outcome = self.executor.execute_close(account_id, exchange, decision)
            return self._executed(account_id, decision.action, decision.symbol, outcome)

        if not is_open(decision):
            return AccountCycleResult(account_id, "hold", action=decision.action)

        trend = self.trend_guard.check(account_id, decision)
        if not trend.allowed:
            return self._rejected(account_id, decision, "TREND_GUARD", trend.reason)

        validation = self.validator.validate_open(account_id, exchange, decision, limits)
        if not validation.allowed:
            return self._rejected(account_id, decision, validation.check_name, validation.reason)

        risk = check_open_risk(decision, limits, state.account_value)
        if not risk.approved:
            self.audit.system_log(
                "WARNING", "risk", f"Risk check rejected {decision.action} {decision.symbol}: {risk.reason}",
                account_id=account_id, details={"violated_checks": risk.violated_checks},
            )
            check = risk.violated_checks[0] if risk.violated_checks else "RISK"
            return self._rejected(account_id, decision, check, risk.reason)

        if self.config.dry_run:
            logger.info(
                f"DRY_RUN: would {decision.action} {decision.symbol} ${decision.size_usd:,.2f} "
                f"x{decision.leverage:g} for {account_id}"
            )
            return AccountCycleResult(account_id, "dry_run", decision.action, decision.symbol)

        outcome = self.executor.execute_open(account_id, exchange, decision)
        return self._executed(account_id, decision.action, decision.symbol, outcome)

    def _executed(self, account_id: str, action: str, symbol: str, outcome: ExecutionOutcome) -> AccountCycleResult:
        status = "executed" if outcome.success else "failed"
        return AccountCycleResult(account_id, status, action, symbol, outcome.message, outcome)

    def _rejected(self, account_id: str, decision, check: str, reason: str) -> AccountCycleResult:
        if self.metrics is not None:
            self.metrics.record_rejection(check)
        logger.info(f"{account_id} {decision.action} {decision.symbol} rejected by {check}: {reason}")
        return AccountCycleResult(account_id, "rejected", decision.action, decision.symbol, f"{check}: {reason}")

    def _read_positions(self, exchange: ExchangeClient, account_id: str) -> Optional[List[ExchangePosition]]:
        try:
            return exchange.get_positions()
        except ExchangeError as e:
            logger.warning(f"Position read failed for {account_id}, sync skipped: {e}")
            return None

    def _market_data(self, symbols: List[str]) -> Optional[Dict[str, Any]]:
        if self.closes is None:
            return None
        lines = []
        for symbol in symbols:
            try:
                trend = analyze_trend(self.closes(symbol) or [])
            except Exception as e:
                logger.warning(f"Market data for {symbol} unavailable: {e}")
                continue
            if trend is None:
                continue
            lines.append(
                f"{symbol}: {trend.direction} trend, strength {trend.strength}/10, RSI {trend.rsi:.1f}, "
                f"price vs EMA20 {trend.price_vs_ema20_pct:+.2f}%, EMA20 vs EMA50 {trend.ema20_vs_ema50_pct:+.2f}%"
            )
        return {"summary": "\n".join(lines)} if lines else None

    def _safe_alert(self, severity: AlertSeverity, title: str, message: str) -> None:
        try:
            self.alerts.notify(severity, title, message)
        except Exception as e:
            logger.warning(f"Alert failed (ignored): {e}")

    # ------------------------------------------------------------------
    # Position sync job
    # ------------------------------------------------------------------

    def run_position_sync(self) -> Dict[str, str]:
        """Reconcile every active account that has local positions. Failures stay per account."""
        results: Dict[str, str] = {}
        for account in self.accounts.list_active():
            account_id = account.account_id
            local = self.positions.list_positions(account_id)
            if not local:
                continue
            try:
                exchange = self.exchange_factory(account)
                prices = {}
                for position in local:
                    try:
                        prices[position.symbol] = exchange.get_market_price(position.symbol)
                    except ExchangeError as e:
                        logger.warning(f"Price read failed for {position.symbol}: {e}")
                outcome = self.reconciler.reconcile(account_id, self._read_positions(exchange, account_id), prices)
                results[account_id] = "skipped" if outcome.skipped else "synced"
            except Exception as e:
                logger.error(f"Position sync failed for {account_id}: {e}")
                self.audit.system_log("ERROR", "position_sync", f"Position sync failed: {e}", account_id=account_id)
                results[account_id] = "failed"
        return results

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def stop(self, *_) -> None:
        logger.warning("Shutdown requested; stopping after the current tick")
        self._running = False

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Run ticks on the configured interval with jitter, syncing positions in between."""
        interval = max(float(interval_seconds or self.config.interval_seconds), 1.0)
        sync_interval = max(self.config.position_sync_interval_seconds, 1.0)
        logger.info(
            f"Starting continuous loop (interval={interval}s, jitter={self.config.jitter_pct:.1f}%, "
            f"position sync every {sync_interval}s)"
        )

        next_tick = time.monotonic()
        next_sync = next_tick + sync_interval
        while self._running:
            now = time.monotonic()
            if now >= next_tick:
                self.run_control_loop_tick()
                jitter = random.uniform(0, self.config.jitter_pct / 100.0) * interval
                next_tick = time.monotonic() + interval + jitter
            elif now >= next_sync:
                self.run_position_sync()
                next_sync = time.monotonic() + sync_interval
            if not self._running:
                break
            self._sleep(max(0.5, min(next_tick, next_sync) - time.monotonic()))

        logger.info("Control loop stopped cleanly.")


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def setup_logging(app_config: Dict[str, Any]) -> None:
    log_cfg = app_config.get("logging") or {}
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class ExchangeRegistry:
    """One HyperliquidExchange per account, created on first use."""

    def __init__(self, testnet: bool = True):
        self.testnet = testnet
        self._clients: Dict[str, ExchangeClient] = {}

    def __call__(self, account: AccountConfig) -> ExchangeClient:
        client = self._clients.get(account.account_id)
        if client is None:
            if not account.wallet_address:
                raise ValueError(f"Account {account.account_id} has no wallet address")
            client = HyperliquidExchange.from_env(
                account.wallet_address, account.private_key_env, testnet=account.testnet
            )
            self._clients[account.account_id] = client
        return client


def build_control_loop(config_dir: str = "config", dry_run: bool = False) -> ControlLoop:
    """Validate configs and wire a ControlLoop from app.yaml / policy.yaml."""
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs(config_dir)
    if errors:
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        logger.error("=" * 80)
        raise ValueError(f"Invalid configuration: {len(errors)} error(s) found")

    config_path = Path(config_dir)
    app_config = _load_yaml(config_path / "app.yaml")
    policy = _load_yaml(config_path / "policy.yaml")

    mode = str((app_config.get("app") or {}).get("mode", "DRY_RUN")).upper()
    dry_run = dry_run or mode != "LIVE"

    store = create_store_from_config(app_config.get("store"))
    exchange_cfg = app_config.get("exchange") or {}
    testnet = bool(exchange_cfg.get("testnet", True))

    repository = AccountRepository(store)
    for raw in app_config.get("accounts") or []:
        repository.upsert(AccountConfig.from_app_config(raw, policy.get("circuit_breaker"), testnet=testnet))

    monitoring = app_config.get("monitoring") or {}
    metrics = MetricsRecorder(
        enabled=bool(monitoring.get("metrics_enabled", False)),
        port=int(monitoring.get("metrics_port", 9100)),
    )
    metrics.start()

    source_cfg = app_config.get("decision_source") or {}
    try:
        decision_source = create_decision_source(source_cfg)
    except ValueError as e:
        if not dry_run:
            raise
        logger.warning(f"{e}; DRY_RUN falls back to an always-HOLD decision source")
        decision_source = ScriptedDecisionSource()

    trend_cfg = policy.get("trend_guard") or {}
    candles = HyperliquidCandleLoader(testnet=testnet, timeout=float(exchange_cfg.get("timeout_seconds", 10)))
    interval = str(trend_cfg.get("interval", "1h"))
    lookback = int(trend_cfg.get("lookback_candles", 60))

    log_cfg = app_config.get("logging") or {}
    return ControlLoop(
        store=store,
        decision_source=decision_source,
        exchange_factory=ExchangeRegistry(testnet=testnet),
        policy=policy,
        loop_config=LoopConfig.from_policy(policy, dry_run=dry_run),
        closes=lambda symbol: candles.recent_closes(symbol, interval, lookback),
        alerts=AlertService.from_config(app_config.get("alerts")),
        metrics=metrics,
        audit=AuditLogger(store, audit_file=log_cfg.get("audit_file")),
    )


def main(argv=None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="perptrader control loop")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (default: policy)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--dry-run", action="store_true", help="Decide but never place orders")
    args = parser.parse_args(argv)

    config_path = Path(args.config_dir)
    app_path = config_path / "app.yaml"
    setup_logging(_load_yaml(app_path) if app_path.exists() else {})

    try:
        loop = build_control_loop(args.config_dir, dry_run=args.dry_run)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        return 1

    logger.info(f"Initialized ControlLoop ({'DRY_RUN' if loop.config.dry_run else 'LIVE'})")
    if args.once:
        loop.run_control_loop_tick()
        return 0

    signal.signal(signal.SIGINT, loop.stop)
    signal.signal(signal.SIGTERM, loop.stop)
    loop.run_forever(interval_seconds=args.interval)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
