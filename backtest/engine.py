"""
perptrader Backtest: Engine

Chunked perp simulation driven by a decision source.

A run replays fine-grained candles (5m by default) from a cursor. Every
`step_size` candles the decision source is consulted while flat; every
candle checks funding, liquidation and stop-loss / take-profit on the open
position. A chunk stops when it hits the AI-call budget or the wall-clock
budget and hands back a SimulationSnapshot that the next chunk resumes from.
"""

import json
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ai.llm_client import DecisionSource
from ai.schemas import DecisionContext, is_open
from backtest.data_loader import INTERVAL_MS, Candle
from backtest.slippage_model import SlippageModel
from core.cost_model import CostConfig, CostModel
from core.exceptions import DecisionSourceError, SnapshotVersionError
from core.models import Side
from core.protective_orders import ProtectiveConfig, sanitize_protective_prices

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
HOUR_MS = 3_600_000


@dataclass
class BacktestConfig:
    """Simulation constants (policy.yaml `backtest` section)"""
    interval: str = "5m"
    step_size: int = 6
    warmup_candles: int = 50
    min_candles: int = 10
    max_ai_calls_per_chunk: int = 12
    chunk_time_budget_seconds: float = 240.0
    progress_every_steps: int = 5
    max_margin_fraction: float = 0.2
    default_leverage: float = 5.0
    min_capital_fraction: float = 0.1
    sharpe_annualization: int = 252
    protective: ProtectiveConfig = field(default_factory=ProtectiveConfig)

    @classmethod
    def from_policy(cls, policy: Optional[Dict[str, Any]]) -> "BacktestConfig":
        policy = policy or {}
        data = policy.get("backtest") or {}
        executor = policy.get("executor") or {}
        defaults = cls()
        return cls(
            interval=str(data.get("interval", defaults.interval)),
            step_size=int(data.get("step_size", defaults.step_size)),
            warmup_candles=int(data.get("warmup_candles", defaults.warmup_candles)),
            min_candles=int(data.get("min_candles", defaults.min_candles)),
            max_ai_calls_per_chunk=int(data.get("max_ai_calls_per_chunk", defaults.max_ai_calls_per_chunk)),
            chunk_time_budget_seconds=float(
                data.get("chunk_time_budget_seconds", defaults.chunk_time_budget_seconds)
            ),
            progress_every_steps=int(data.get("progress_every_steps", defaults.progress_every_steps)),
            max_margin_fraction=float(data.get("max_margin_fraction", defaults.max_margin_fraction)),
            default_leverage=float(data.get("default_leverage", defaults.default_leverage)),
            min_capital_fraction=float(data.get("min_capital_fraction", defaults.min_capital_fraction)),
            sharpe_annualization=int(data.get("sharpe_annualization", defaults.sharpe_annualization)),
            protective=ProtectiveConfig(
                default_stop_loss_pct=float(executor.get("default_stop_loss_pct", 3.0)),
                default_take_profit_pct=float(executor.get("default_take_profit_pct", 0.8)),
            ),
        )


@dataclass
class BacktestParams:
    symbol: str
    start_ms: int
    end_ms: int
    initial_capital: float = 1000.0
    max_leverage: float = 10.0
    model: str = "scripted"
    account_id: str = "backtest"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestParams":
        return cls(
            symbol=data["symbol"],
            start_ms=int(data["start_ms"]),
            end_ms=int(data["end_ms"]),
            initial_capital=float(data.get("initial_capital", 1000.0)),
            max_leverage=float(data.get("max_leverage", 10.0)),
            model=data.get("model", "scripted"),
            account_id=data.get("account_id", "backtest"),
        )


@dataclass
class CandleSet:
    """Simulation candles plus 1h / 4h context series."""
    fine: List[Candle]
    hourly: List[Candle] = field(default_factory=list)
    four_hour: List[Candle] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fine": [c.to_dict() for c in self.fine],
            "hourly": [c.to_dict() for c in self.hourly],
            "four_hour": [c.to_dict() for c in self.four_hour],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandleSet":
        return cls(
            fine=[Candle.from_dict(c) for c in data.get("fine", [])],
            hourly=[Candle.from_dict(c) for c in data.get("hourly", [])],
            four_hour=[Candle.from_dict(c) for c in data.get("four_hour", [])],
        )


@dataclass
class SimPosition:
    side: Side
    entry_price: float
    margin: float
    leverage: float
    stop_loss: float
    take_profit: float
    entry_time_ms: int
    last_funding_ms: int
    entry_fee: float = 0.0
    accrued_funding: float = 0.0
    confidence: float = 0.0
    reasoning: str = ""

    @property
    def notional(self) -> float:
        return self.margin * self.leverage

    def gross_pnl(self, price: float) -> float:
        move = (price - self.entry_price) / self.entry_price
        if self.side is Side.SHORT:
            move = -move
        return move * self.notional

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimPosition":
        data = dict(data)
        data["side"] = Side(data["side"])
        return cls(**data)


@dataclass
class SimulationSnapshot:
    """
    Full mutable state of a run between chunks.

    Sharpe inputs are kept as running sums of per-trade pnl %, so the return
    series never has to be held.
    """
    initial_capital: float
    capital: float
    peak_capital: float
    cursor: int
    total_steps: int
    step_count: int = 0
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    total_fees: float = 0.0
    total_funding: float = 0.0
    trade_count: int = 0
    win_count: int = 0
    liquidation_count: int = 0
    returns_sum: float = 0.0
    returns_sq_sum: float = 0.0
    ai_calls: int = 0
    chunk_count: int = 0
    position: Optional[SimPosition] = None

    @classmethod
    def initial(cls, initial_capital: float, candle_count: int, config: BacktestConfig) -> "SimulationSnapshot":
        remaining = max(0, candle_count - config.warmup_candles)
        return cls(
            initial_capital=initial_capital,
            capital=initial_capital,
            peak_capital=initial_capital,
            cursor=config.warmup_candles,
            total_steps=math.ceil(remaining / config.step_size),
        )

    def encode(self) -> str:
        data = asdict(self)
        data["position"] = self.position.to_dict() if self.position else None
        data["version"] = SNAPSHOT_VERSION
        return json.dumps(data)

    @classmethod
    def decode(cls, raw: str) -> "SimulationSnapshot":
        data = json.loads(raw)
        version = data.pop("version", None)
        if version != SNAPSHOT_VERSION:
            raise SnapshotVersionError(f"Unsupported snapshot version: {version}")
        position = data.pop("position", None)
        snapshot = cls(**data)
        snapshot.position = SimPosition.from_dict(position) if position else None
        return snapshot


@dataclass
class BacktestResults:
    total_pnl: float
    total_pnl_pct: float
    win_rate: float
    total_trades: int
    max_drawdown: float
    max_drawdown_pct: float
    sharpe_ratio: float
    final_capital: float
    total_fees: float
    total_funding: float
    liquidation_count: int
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_snapshot(
        cls, snapshot: SimulationSnapshot, annualization: int = 252, duration_ms: int = 0
    ) -> "BacktestResults":
        total_pnl = snapshot.capital - snapshot.initial_capital
        return cls(
            total_pnl=total_pnl,
            total_pnl_pct=total_pnl / snapshot.initial_capital * 100 if snapshot.initial_capital else 0.0,
            win_rate=snapshot.win_count / snapshot.trade_count * 100 if snapshot.trade_count else 0.0,
            total_trades=snapshot.trade_count,
            max_drawdown=snapshot.max_drawdown,
            max_drawdown_pct=snapshot.max_drawdown_pct,
            sharpe_ratio=running_sharpe(
                snapshot.returns_sum, snapshot.returns_sq_sum, snapshot.trade_count, annualization
            ),
            final_capital=snapshot.capital,
            total_fees=snapshot.total_fees,
            total_funding=snapshot.total_funding,
            liquidation_count=snapshot.liquidation_count,
            duration_ms=duration_ms,
        )


def running_sharpe(total: float, sq_total: float, count: int, annualization: int = 252) -> float:
    """Annualized Sharpe from running sums (sample variance). 0 with fewer than 2 trades."""
    if count < 2:
        return 0.0
    variance = (sq_total - total * total / count) / (count - 1)
    std = math.sqrt(variance) if variance > 0 else 0.0
    if std == 0:
        return 0.0
    return (total / count) / std * math.sqrt(annualization)


@dataclass
class ChunkResult:
    status: str                  # "continue" | "completed"
    snapshot: SimulationSnapshot
    ai_calls: int = 0
    candles_processed: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class BacktestSink:
    """Receives closed trades and progress while a chunk runs. The default discards both."""

    def record_trade(self, trade: Dict[str, Any]) -> None:
        pass

    def record_progress(self, pct: int, message: str, snapshot: SimulationSnapshot) -> None:
        pass


class ListSink(BacktestSink):
    def __init__(self) -> None:
        self.trades: List[Dict[str, Any]] = []
        self.progress: List[int] = []

    def record_trade(self, trade: Dict[str, Any]) -> None:
        self.trades.append(trade)

    def record_progress(self, pct: int, message: str, snapshot: SimulationSnapshot) -> None:
        self.progress.append(pct)


def _sma(values: Sequence[float], period: int) -> Optional[float]:
    if len(values) < period:
        return None
    return sum(values[-period:]) / period


def _change_pct(candles: Sequence[Candle]) -> Optional[float]:
    if len(candles) < 2 or candles[0].close <= 0:
        return None
    return (candles[-1].close - candles[0].close) / candles[0].close * 100


class BacktestEngine:
    """
    Perp simulation over a CandleSet.

    Per candle, in order:
    1. accrue funding for each whole hour since the last checkpoint
    2. liquidate when equity at the worst price <= maintenance margin
    3. stop-loss / take-profit against high / low (stop wins a tie)
    4. on step candles while flat, ask the decision source and open
    """

    def __init__(
        self,
        decision_source: DecisionSource,
        config: Optional[BacktestConfig] = None,
        cost_model: Optional[CostModel] = None,
        slippage: Optional[SlippageModel] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.decision_source = decision_source
        self.config = config or BacktestConfig()
        self.cost_model = cost_model or CostModel(CostConfig())
        self.slippage = slippage or SlippageModel()
        self._monotonic = monotonic

    def new_snapshot(self, params: BacktestParams, candles: CandleSet) -> SimulationSnapshot:
        return SimulationSnapshot.initial(params.initial_capital, len(candles.fine), self.config)

    def run_chunk(
        self,
        params: BacktestParams,
        candles: CandleSet,
        snapshot: SimulationSnapshot,
        sink: Optional[BacktestSink] = None,
    ) -> ChunkResult:
        """Advance the snapshot until the candles run out or a chunk budget is hit."""
        sink = sink or BacktestSink()
        cfg = self.config
        fine = candles.fine
        started = self._monotonic()
        ai_calls = 0
        processed = 0
        snapshot.chunk_count += 1

        while snapshot.cursor < len(fine):
            index = snapshot.cursor
            is_step = (index - cfg.warmup_candles) % cfg.step_size == 0

            if is_step and processed > 0:
                if ai_calls >= cfg.max_ai_calls_per_chunk:
                    logger.info(f"Chunk AI budget reached ({ai_calls} calls) at candle {index}")
                    return ChunkResult("continue", snapshot, ai_calls, processed)
                if self._monotonic() - started >= cfg.chunk_time_budget_seconds:
                    logger.info(f"Chunk time budget reached at candle {index}")
                    return ChunkResult("continue", snapshot, ai_calls, processed)

            candle = fine[index]
            if snapshot.position is not None:
                self._accrue_funding(params, snapshot, candle)
                if not self._check_liquidation(params, snapshot, candle, sink):
                    self._check_exits(params, snapshot, candle, sink)

            snapshot.cursor += 1
            processed += 1

            if not is_step:
                continue

            snapshot.step_count += 1
            if cfg.progress_every_steps and snapshot.step_count % cfg.progress_every_steps == 0:
                pct = min(100, round(snapshot.step_count / max(1, snapshot.total_steps) * 100))
                sink.record_progress(
                    pct,
                    f"Step {snapshot.step_count}/{snapshot.total_steps}, capital ${snapshot.capital:,.2f}",
                    snapshot,
                )

            if snapshot.position is None:
                if snapshot.capital < snapshot.initial_capital * cfg.min_capital_fraction:
                    logger.warning(
                        f"Capital ${snapshot.capital:,.2f} below "
                        f"{cfg.min_capital_fraction:.0%} of initial, stopping simulation"
                    )
                    snapshot.cursor = len(fine)
                    break
                ai_calls += 1
                snapshot.ai_calls += 1
                self._decide_and_open(params, candles, index, snapshot, sink)

        self._finish(params, fine, snapshot, sink)
        return ChunkResult("completed", snapshot, ai_calls, processed)

    def run(
        self,
        params: BacktestParams,
        candles: CandleSet,
        sink: Optional[BacktestSink] = None,
    ) -> BacktestResults:
        """Run every chunk back to back."""
        started = time.monotonic()
        snapshot = self.new_snapshot(params, candles)
        result = self.run_chunk(params, candles, snapshot, sink)
        while not result.completed:
            snapshot = SimulationSnapshot.decode(result.snapshot.encode())
            result = self.run_chunk(params, candles, snapshot, sink)
        duration_ms = int((time.monotonic() - started) * 1000)
        return BacktestResults.from_snapshot(result.snapshot, self.config.sharpe_annualization, duration_ms)

    # ─── Position lifecycle ───────────────────────────────────────────────

    def _accrue_funding(self, params: BacktestParams, snapshot: SimulationSnapshot, candle: Candle) -> None:
        position = snapshot.position
        hours = (candle.t - position.last_funding_ms) // HOUR_MS
        if hours <= 0:
            return
        cost = self.cost_model.funding(params.symbol, position.side, position.notional, hours)
        position.accrued_funding += cost
        position.last_funding_ms += hours * HOUR_MS
        snapshot.total_funding += cost

    def _check_liquidation(
        self, params: BacktestParams, snapshot: SimulationSnapshot, candle: Candle, sink: BacktestSink
    ) -> bool:
        position = snapshot.position
        worst = candle.low if position.side is Side.LONG else candle.high
        raw = position.gross_pnl(worst) - position.accrued_funding
        equity = position.margin + raw
        maintenance = self.cost_model.maintenance_margin(params.symbol, position.notional)
        if equity > maintenance:
            return False

        liquidation_fee = self.cost_model.liquidation_fee(position.notional)
        pnl = max(raw, -position.margin) - position.entry_fee - liquidation_fee
        logger.warning(
            f"Liquidated {position.side.value} {params.symbol} at {worst:.4f} "
            f"(equity {equity:.2f} <= maintenance {maintenance:.2f})"
        )
        snapshot.liquidation_count += 1
        self._close(params, snapshot, candle, worst, pnl, liquidation_fee, "liquidation", sink)
        return True

    def _check_exits(
        self, params: BacktestParams, snapshot: SimulationSnapshot, candle: Candle, sink: BacktestSink
    ) -> None:
        position = snapshot.position
        if position.side is Side.LONG:
            hit_sl = candle.low <= position.stop_loss
            hit_tp = candle.high >= position.take_profit
        else:
            hit_sl = candle.high >= position.stop_loss
            hit_tp = candle.low <= position.take_profit

        if hit_sl:
            level, kind, reason = position.stop_loss, "stop", "stop_loss"
        elif hit_tp:
            level, kind, reason = position.take_profit, "take_profit", "take_profit"
        else:
            return

        tier = self.cost_model.asset(params.symbol).tier
        exit_price = self.slippage.fill_price(
            level,
            is_buy=not position.side.is_buy,
            tier=tier,
            notional_usd=position.notional,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            kind=kind,
        )
        exit_fee = self.cost_model.fee(position.notional)
        pnl = position.gross_pnl(exit_price) - position.entry_fee - exit_fee - position.accrued_funding
        self._close(params, snapshot, candle, exit_price, pnl, exit_fee, reason, sink)

    def _finish(self, params: BacktestParams, fine: Sequence[Candle], snapshot: SimulationSnapshot,
                sink: BacktestSink) -> None:
        position = snapshot.position
        if position is None or not fine:
            return
        last = fine[-1]
        exit_fee = self.cost_model.fee(position.notional)
        pnl = position.gross_pnl(last.close) - position.entry_fee - exit_fee - position.accrued_funding
        self._close(params, snapshot, last, last.close, pnl, exit_fee, "end_of_period", sink)

    def _close(
        self,
        params: BacktestParams,
        snapshot: SimulationSnapshot,
        candle: Candle,
        exit_price: float,
        pnl: float,
        exit_fee: float,
        reason: str,
        sink: BacktestSink,
    ) -> None:
        position = snapshot.position
        pnl_pct = pnl / position.margin * 100 if position.margin else 0.0

        snapshot.capital += pnl
        snapshot.total_fees += position.entry_fee + exit_fee
        snapshot.trade_count += 1
        if pnl > 0:
            snapshot.win_count += 1
        snapshot.returns_sum += pnl_pct
        snapshot.returns_sq_sum += pnl_pct * pnl_pct

        if snapshot.capital > snapshot.peak_capital:
            snapshot.peak_capital = snapshot.capital
        drawdown = snapshot.peak_capital - snapshot.capital
        if drawdown > snapshot.max_drawdown:
            snapshot.max_drawdown = drawdown
            snapshot.max_drawdown_pct = drawdown / snapshot.peak_capital * 100 if snapshot.peak_capital else 0.0

        logger.debug(
            f"Closed {position.side.value} {params.symbol} @ {exit_price:.4f} ({reason}): "
            f"pnl ${pnl:.2f} ({pnl_pct:+.2f}%)"
        )
        sink.record_trade({
            "symbol": params.symbol,
            "side": position.side.value,
            "entry_price": position.entry_price,
            "exit_price": exit_price,
            "entry_time_ms": position.entry_time_ms,
            "exit_time_ms": candle.t,
            "margin": position.margin,
            "leverage": position.leverage,
            "size_usd": position.notional,
            "stop_loss": position.stop_loss,
            "take_profit": position.take_profit,
            "pnl": pnl,
            "pnl_pct": pnl_pct,
            "fees": position.entry_fee + exit_fee,
            "funding": position.accrued_funding,
            "exit_reason": reason,
            "confidence": position.confidence,
            "reasoning": position.reasoning,
        })
        snapshot.position = None

    def _decide_and_open(
        self,
        params: BacktestParams,
        candles: CandleSet,
        index: int,
        snapshot: SimulationSnapshot,
        sink: BacktestSink,
    ) -> None:
        candle = candles.fine[index]
        max_leverage = min(params.max_leverage, self.cost_model.asset(params.symbol).max_leverage)
        context = DecisionContext(
            account_id=params.account_id,
            account_value=snapshot.capital,
            available_margin=snapshot.capital,
            symbols=[params.symbol],
            prices={params.symbol: candle.close},
            positions=[],
            performance={
                "capital": round(snapshot.capital, 2),
                "trades": snapshot.trade_count,
                "wins": snapshot.win_count,
            },
            max_leverage=max_leverage,
            market_data={"summary": self.market_summary(params.symbol, candles, index, snapshot.capital,
                                                        max_leverage)},
        )
        try:
            response = self.decision_source.request_decision(context)
        except DecisionSourceError as e:
            logger.error(f"Backtest decision failed at candle {index}: {e}")
            return

        decision = response.decision
        if not is_open(decision) or decision.symbol != params.symbol:
            return

        side = decision.side
        cfg = self.config
        leverage = self.cost_model.clamp_leverage(
            params.symbol, decision.leverage or cfg.default_leverage, params.max_leverage
        )
        max_margin = snapshot.capital * cfg.max_margin_fraction
        requested = decision.size_usd / decision.leverage if decision.size_usd and decision.leverage else 0.0
        margin = min(max_margin, requested) if requested > 0 else max_margin
        notional = margin * leverage

        tier = self.cost_model.asset(params.symbol).tier
        entry_price = self.slippage.fill_price(
            candle.close,
            is_buy=side.is_buy,
            tier=tier,
            notional_usd=notional,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            kind="entry",
        )
        protective = sanitize_protective_prices(
            side, entry_price, decision.stop_loss, decision.take_profit, cfg.protective
        )
        take_profit = protective.take_profit
        if take_profit is None:
            pct = cfg.protective.default_take_profit_pct / 100
            take_profit = entry_price * (1 + pct) if side is Side.LONG else entry_price * (1 - pct)

        snapshot.position = SimPosition(
            side=side,
            entry_price=entry_price,
            margin=margin,
            leverage=leverage,
            stop_loss=protective.stop_loss,
            take_profit=take_profit,
            entry_time_ms=candle.t,
            last_funding_ms=candle.t,
            entry_fee=self.cost_model.fee(notional),
            confidence=decision.confidence,
            reasoning=decision.reasoning,
        )
        logger.debug(
            f"Opened {side.value} {params.symbol} @ {entry_price:.4f} margin ${margin:.2f} x{leverage:g} "
            f"SL {protective.stop_loss:.4f} TP {take_profit:.4f}"
        )

    def market_summary(
        self, symbol: str, candles: CandleSet, index: int, capital: float, max_leverage: float
    ) -> str:
        """Plain-text market context as of candle `index` (no look-ahead)."""
        fine = candles.fine
        current = fine[index]
        window = fine[max(0, index - 50):index + 1]
        closes = [c.close for c in window]
        recent = fine[max(0, index - 11):index + 1]
        interval_ms = INTERVAL_MS.get(self.config.interval, INTERVAL_MS["5m"])
        hourly = [c for c in candles.hourly if c.t + INTERVAL_MS["1h"] <= current.t + interval_ms][-24:]
        four_hour = [c for c in candles.four_hour if c.t + INTERVAL_MS["4h"] <= current.t + interval_ms][-12:]

        sma20 = _sma(closes, 20)
        sma50 = _sma(closes, 50)
        change_1h = _change_pct(hourly)
        change_4h = _change_pct(four_hour)

        def fmt(value: Optional[float], suffix: str = "") -> str:
            return "n/a" if value is None else f"{value:,.2f}{suffix}"

        return "\n".join([
            f"{symbol} price: ${current.close:,.2f} at {current.timestamp.isoformat()}",
            f"SMA20: {fmt(sma20)} | SMA50: {fmt(sma50)}",
            f"Change over last {len(hourly)} 1h candles: {fmt(change_1h, '%')}",
            f"Change over last {len(four_hour)} 4h candles: {fmt(change_4h, '%')}",
            f"Recent high: {max(c.high for c in recent):,.2f} | Recent low: {min(c.low for c in recent):,.2f}",
            f"Balance: ${capital:,.2f} | Max leverage: {max_leverage:g}x",
        ])
