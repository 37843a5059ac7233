"""
perptrader Backtest: Run Service

Owns the lifecycle of persisted backtest runs:

    running -> completed | failed | cancelled

start_backtest() creates the run and schedules initialization (candle load);
every chunk schedules its successor with the encoded snapshot, so chunks of
one run never overlap. Cancellation is cooperative and checked at the start
of each chunk. The terminal result is written once, by whichever chunk
exhausts the candles.
"""

from abc import ABC, abstractmethod
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from ai.llm_client import DecisionSource
from backtest.data_loader import Candle
from backtest.engine import (
    BacktestConfig,
    BacktestEngine,
    BacktestParams,
    BacktestResults,
    BacktestSink,
    CandleSet,
    SimulationSnapshot,
)
from backtest.slippage_model import SlippageModel
from core.cost_model import CostModel
from core.exceptions import BacktestNotFound, BacktestStateError
from core.models import utc_now
from infra.metrics import MetricsRecorder
from infra.state_store import BACKTEST_CANDLES, BACKTEST_RUNS, BACKTEST_TRADES, Store

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

# Context series lookback before the run window
HOURLY_LOOKBACK = timedelta(hours=24)
FOUR_HOUR_LOOKBACK = timedelta(hours=48)


class CandleSource(Protocol):
    def load(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> List[Candle]:
        ...


# ─── Schedulers ────────────────────────────────────────────────────────────


class Scheduler(ABC):
    @abstractmethod
    def schedule(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run fn(*args) later, in submission order."""


class InlineScheduler(Scheduler):
    """Runs scheduled work on the caller's thread, draining iteratively (no recursion)."""

    def __init__(self) -> None:
        self._queue: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._draining = False

    def schedule(self, fn: Callable[..., Any], *args: Any) -> None:
        self._queue.append((fn, args))
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                task, task_args = self._queue.popleft()
                task(*task_args)
        finally:
            self._draining = False


class ManualScheduler(Scheduler):
    """Queues work until run_next() / run_all() is called."""

    def __init__(self) -> None:
        self.queue: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()

    def schedule(self, fn: Callable[..., Any], *args: Any) -> None:
        self.queue.append((fn, args))

    @property
    def pending(self) -> int:
        return len(self.queue)

    def run_next(self) -> bool:
        if not self.queue:
            return False
        fn, args = self.queue.popleft()
        fn(*args)
        return True

    def run_all(self, limit: int = 10_000) -> int:
        count = 0
        while count < limit and self.run_next():
            count += 1
        return count


class ThreadedScheduler(Scheduler):
    """Background worker thread(s)."""

    def __init__(self, max_workers: int = 2):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backtest")

    def schedule(self, fn: Callable[..., Any], *args: Any) -> None:
        self._pool.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


# ─── Store-backed sink ─────────────────────────────────────────────────────


class _StoreSink(BacktestSink):
    def __init__(self, service: "BacktestService", run_id: str, account_id: str):
        self.service = service
        self.run_id = run_id
        self.account_id = account_id

    def record_trade(self, trade: Dict[str, Any]) -> None:
        self.service.store.put(BACKTEST_TRADES, {**trade, "account_id": self.account_id, "run_id": self.run_id})

    def record_progress(self, pct: int, message: str, snapshot: SimulationSnapshot) -> None:
        self.service._update_run(self.run_id, progress=pct, progress_message=message)


# ─── Service ───────────────────────────────────────────────────────────────


class BacktestService:
    """Start, continue, cancel, delete and query backtest runs."""

    def __init__(
        self,
        store: Store,
        loader: CandleSource,
        decision_source_factory: Callable[[BacktestParams], DecisionSource],
        config: Optional[BacktestConfig] = None,
        cost_model: Optional[CostModel] = None,
        slippage: Optional[SlippageModel] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
        engine_factory: Optional[Callable[[DecisionSource], BacktestEngine]] = None,
    ):
        self.store = store
        self.loader = loader
        self.decision_source_factory = decision_source_factory
        self.config = config or BacktestConfig()
        self.cost_model = cost_model or CostModel()
        self.slippage = slippage or SlippageModel()
        self.scheduler = scheduler or InlineScheduler()
        self.metrics = metrics
        self.clock = clock
        self._engine_factory = engine_factory
        self._row_lock = threading.Lock()

    # ─── Public operations ────────────────────────────────────────────────

    def start_backtest(self, params: BacktestParams) -> str:
        if params.end_ms <= params.start_ms:
            raise ValueError("Backtest end must be after start")
        if params.initial_capital <= 0:
            raise ValueError("Initial capital must be positive")

        now = self.clock()
        run_id = self.store.new_key()
        self.store.put(BACKTEST_RUNS, {
            "run_id": run_id,
            "account_id": params.account_id,
            "symbol": params.symbol,
            "model": params.model,
            "params": params.to_dict(),
            "status": RUNNING,
            "progress": 0,
            "progress_message": "Loading candles",
            "results": None,
            "error": None,
            "snapshot": None,
            "created_at": now.isoformat(),
            "completed_at": None,
        }, key=run_id)
        logger.info(f"Backtest {run_id} started: {params.symbol} for {params.account_id}")
        self.scheduler.schedule(self.initialize_run, run_id)
        return run_id

    def initialize_run(self, run_id: str) -> None:
        """Load and persist the candle series, then schedule the first chunk."""
        run = self.store.get(BACKTEST_RUNS, run_id)
        if run is None or run["status"] != RUNNING:
            return
        params = BacktestParams.from_dict(run["params"])
        try:
            candles = self._load_candles(params)
            if len(candles.fine) < self.config.min_candles:
                raise ValueError(
                    f"Not enough candle data: {len(candles.fine)} < {self.config.min_candles}"
                )
            self.store.put(BACKTEST_CANDLES, {"run_id": run_id, **candles.to_dict()}, key=run_id)
            snapshot = SimulationSnapshot.initial(params.initial_capital, len(candles.fine), self.config)
            encoded = snapshot.encode()
            written = self._update_run(run_id, snapshot=encoded, progress_message="Simulating")
        except Exception as e:
            self._fail(run_id, e)
            return
        if not written:
            # cancelled while candles were loading
            self.store.delete(BACKTEST_CANDLES, run_id)
            return
        self.scheduler.schedule(self.process_chunk, run_id, encoded)

    def process_chunk(self, run_id: str, encoded_snapshot: str) -> None:
        run = self.store.get(BACKTEST_RUNS, run_id)
        if run is None:
            logger.info(f"Backtest {run_id} no longer exists, dropping chunk")
            return
        if run["status"] != RUNNING:
            logger.info(f"Backtest {run_id} is {run['status']}, not continuing")
            self._record_chunk(run["status"])
            return

        try:
            params = BacktestParams.from_dict(run["params"])
            stored = self.store.get(BACKTEST_CANDLES, run_id)
            if stored is None:
                raise RuntimeError(f"Candles for backtest {run_id} are missing")
            candles = CandleSet.from_dict(stored)
            snapshot = SimulationSnapshot.decode(encoded_snapshot)

            engine = self._engine(self.decision_source_factory(params))
            result = engine.run_chunk(params, candles, snapshot, _StoreSink(self, run_id, params.account_id))
        except Exception as e:
            self._fail(run_id, e)
            return

        encoded = result.snapshot.encode()
        if not result.completed:
            logger.info(
                f"Backtest {run_id} chunk {result.snapshot.chunk_count} done "
                f"({result.candles_processed} candles, {result.ai_calls} AI calls), rescheduling"
            )
            self._update_run(run_id, snapshot=encoded)
            self._record_chunk("continue")
            self.scheduler.schedule(self.process_chunk, run_id, encoded)
            return

        self._complete(run_id, result.snapshot)

    def resume_backtest(self, run_id: str) -> None:
        """Reschedule a running run from its last persisted snapshot (after a restart)."""
        run = self._get_run(run_id)
        if run["status"] != RUNNING:
            raise BacktestStateError(f"Backtest {run_id} is {run['status']}")
        if run.get("snapshot"):
            self.scheduler.schedule(self.process_chunk, run_id, run["snapshot"])
        else:
            self.scheduler.schedule(self.initialize_run, run_id)

    def cancel_backtest(self, run_id: str, account_id: Optional[str] = None) -> None:
        run = self._get_run(run_id, account_id)
        with self._row_lock:
            run = self.store.get(BACKTEST_RUNS, run_id) or run
            if run["status"] != RUNNING:
                raise BacktestStateError(f"Cannot cancel backtest in status {run['status']}")
            run.update(status=CANCELLED, completed_at=self.clock().isoformat(),
                       progress_message="Cancelled")
            self.store.put(BACKTEST_RUNS, run, key=run_id)
        self.store.delete(BACKTEST_CANDLES, run_id)
        logger.info(f"Backtest {run_id} cancelled")

    def delete_backtest(self, run_id: str, account_id: Optional[str] = None) -> None:
        run = self._get_run(run_id, account_id)
        if run["status"] == RUNNING:
            raise BacktestStateError("Cannot delete a running backtest; cancel it first")
        for key, _ in self._trade_rows(run_id, run["account_id"]):
            self.store.delete(BACKTEST_TRADES, key)
        self.store.delete(BACKTEST_CANDLES, run_id)
        self.store.delete(BACKTEST_RUNS, run_id)
        logger.info(f"Backtest {run_id} deleted")

    def get_backtest_runs(self, account_id: str) -> List[Dict[str, Any]]:
        runs = [self._public(data) for _, data in self.store.query_by_index(BACKTEST_RUNS, account_id)]
        runs.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return runs

    def get_backtest_results(self, run_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        run = self._get_run(run_id, account_id)
        trades = [data for _, data in self._trade_rows(run_id, run["account_id"])]
        trades.sort(key=lambda t: t.get("exit_time_ms", 0))
        return {"run": self._public(run), "trades": trades}

    # ─── Internals ────────────────────────────────────────────────────────

    def _engine(self, decision_source: DecisionSource) -> BacktestEngine:
        if self._engine_factory is not None:
            return self._engine_factory(decision_source)
        return BacktestEngine(decision_source, self.config, self.cost_model, self.slippage)

    def _load_candles(self, params: BacktestParams) -> CandleSet:
        hourly_start = params.start_ms - int(HOURLY_LOOKBACK.total_seconds() * 1000)
        four_hour_start = params.start_ms - int(FOUR_HOUR_LOOKBACK.total_seconds() * 1000)
        return CandleSet(
            fine=self.loader.load(params.symbol, self.config.interval, params.start_ms, params.end_ms),
            hourly=self.loader.load(params.symbol, "1h", hourly_start, params.end_ms),
            four_hour=self.loader.load(params.symbol, "4h", four_hour_start, params.end_ms),
        )

    def _get_run(self, run_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        run = self.store.get(BACKTEST_RUNS, run_id)
        if run is None or (account_id is not None and run.get("account_id") != account_id):
            raise BacktestNotFound(run_id)
        return run

    def _trade_rows(self, run_id: str, account_id: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (key, data)
            for key, data in self.store.query_by_index(BACKTEST_TRADES, account_id)
            if data.get("run_id") == run_id
        ]

    @staticmethod
    def _public(run: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in run.items() if k != "snapshot"}

    def _update_run(self, run_id: str, **fields: Any) -> bool:
        """Patch a running run. Returns False once it is terminal or gone."""
        with self._row_lock:
            run = self.store.get(BACKTEST_RUNS, run_id)
            if run is None or run["status"] != RUNNING:
                return False
            run.update(fields)
            self.store.put(BACKTEST_RUNS, run, key=run_id)
            return True

    def _complete(self, run_id: str, snapshot: SimulationSnapshot) -> None:
        run = self.store.get(BACKTEST_RUNS, run_id)
        created = datetime.fromisoformat(run["created_at"]) if run else self.clock()
        now = self.clock()
        results = BacktestResults.from_snapshot(
            snapshot,
            self.config.sharpe_annualization,
            duration_ms=int((now - created).total_seconds() * 1000),
        )
        written = self._update_run(
            run_id,
            status=COMPLETED,
            progress=100,
            progress_message="Completed",
            results=results.to_dict(),
            snapshot=None,
            completed_at=now.isoformat(),
        )
        if not written:
            logger.info(f"Backtest {run_id} finished after it was cancelled or removed, result discarded")
            return
        self.store.delete(BACKTEST_CANDLES, run_id)
        self._record_chunk(COMPLETED)
        logger.info(
            f"Backtest {run_id} completed: pnl ${results.total_pnl:,.2f} ({results.total_pnl_pct:+.2f}%), "
            f"{results.total_trades} trades, win rate {results.win_rate:.1f}%, sharpe {results.sharpe_ratio:.2f}"
        )

    def _fail(self, run_id: str, error: Exception) -> None:
        logger.error(f"Backtest {run_id} failed: {error}", exc_info=True)
        written = self._update_run(
            run_id,
            status=FAILED,
            error=str(error) or error.__class__.__name__,
            snapshot=None,
            completed_at=self.clock().isoformat(),
        )
        if not written:
            return
        self.store.delete(BACKTEST_CANDLES, run_id)
        self._record_chunk(FAILED)

    def _record_chunk(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_backtest_chunk(outcome)
