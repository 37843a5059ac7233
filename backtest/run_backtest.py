"""
perptrader Backtest: Runner

Run one simulation inline from the command line and print the metrics as JSON.
"""

import json
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import yaml

from ai.llm_client import ScriptedDecisionSource, create_decision_source
from backtest.data_loader import HyperliquidCandleLoader, load_from_csv, save_to_csv, to_millis
from backtest.engine import BacktestConfig, BacktestEngine, BacktestParams, BacktestResults, CandleSet, ListSink
from core.cost_model import CostConfig, CostModel

logger = logging.getLogger(__name__)


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _load_series(
    loader: HyperliquidCandleLoader,
    symbol: str,
    interval: str,
    start_ms: int,
    end_ms: int,
    cache_dir: Optional[Path],
):
    if cache_dir is None:
        return loader.load(symbol, interval, start_ms, end_ms)
    path = cache_dir / f"{symbol}_{interval}_{start_ms}_{end_ms}.csv"
    if path.exists():
        return load_from_csv(path, start_ms, end_ms)
    candles = loader.load(symbol, interval, start_ms, end_ms)
    save_to_csv(path, candles)
    return candles


def run_simple_backtest(
    symbol: str = "BTC",
    start_date: str = "2024-11-01",
    end_date: str = "2024-11-03",
    initial_capital: float = 1000.0,
    max_leverage: float = 10.0,
    config_dir: str = "config",
    scripted: bool = False,
    cache_dir: Optional[str] = None,
    testnet: bool = False,
) -> BacktestResults:
    """
    Run a backtest end to end.

    Args:
        symbol: Perp symbol (BTC, ETH, ...)
        start_date / end_date: ISO dates
        scripted: use an always-HOLD decision source (no API key needed)
        cache_dir: directory for CSV candle caches
    """
    config_path = Path(config_dir)
    policy = _load_yaml(config_path / "policy.yaml")
    app_config = _load_yaml(config_path / "app.yaml")

    config = BacktestConfig.from_policy(policy)
    cost_model = CostModel(CostConfig.from_dict(policy.get("backtest")))

    start = datetime.fromisoformat(start_date)
    end = datetime.fromisoformat(end_date)
    params = BacktestParams(
        symbol=symbol.upper(),
        start_ms=to_millis(start),
        end_ms=to_millis(end),
        initial_capital=initial_capital,
        max_leverage=max_leverage,
    )

    logger.info("=" * 80)
    logger.info("PERPTRADER BACKTEST")
    logger.info("=" * 80)
    logger.info(f"Symbol: {params.symbol} | Period: {start_date} to {end_date}")
    logger.info(f"Initial Capital: ${initial_capital:,.2f} | Max leverage: {max_leverage:g}x")
    logger.info(f"Cost model: {cost_model.get_summary()}")

    loader = HyperliquidCandleLoader(testnet=testnet)
    cache = Path(cache_dir) if cache_dir else None
    candles = CandleSet(
        fine=_load_series(loader, params.symbol, config.interval, params.start_ms, params.end_ms, cache),
        hourly=_load_series(
            loader, params.symbol, "1h", to_millis(start - timedelta(hours=24)), params.end_ms, cache
        ),
        four_hour=_load_series(
            loader, params.symbol, "4h", to_millis(start - timedelta(hours=48)), params.end_ms, cache
        ),
    )
    if len(candles.fine) < config.min_candles:
        raise ValueError(f"Not enough candle data: {len(candles.fine)} < {config.min_candles}")

    if scripted:
        source = ScriptedDecisionSource()
    else:
        source = create_decision_source(app_config.get("decision_source"))
    params.model = source.model

    engine = BacktestEngine(source, config, cost_model)
    sink = ListSink()
    results = engine.run(params, candles, sink)

    print("\n" + "=" * 80)
    print("BACKTEST RESULTS")
    print("=" * 80)
    print(json.dumps(results.to_dict(), indent=2))
    print("=" * 80)

    if sink.trades:
        print("\nTRADES:")
        print("-" * 80)
        for i, trade in enumerate(sink.trades, 1):
            print(
                f"{i:3d}. {trade['side']:5s} {trade['symbol']:6s} | "
                f"Entry: ${trade['entry_price']:10,.2f} | Exit: ${trade['exit_price']:10,.2f} | "
                f"x{trade['leverage']:g} | PnL: ${trade['pnl']:+9.2f} ({trade['pnl_pct']:+6.2f}%) "
                f"({trade['exit_reason']})"
            )
        print("-" * 80)

    return results


def main(argv=None):
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Backtest perptrader decisions on Hyperliquid candles")
    parser.add_argument("--symbol", default="BTC", help="Perp symbol")
    parser.add_argument("--start", default="2024-11-01", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", default="2024-11-03", help="End date (YYYY-MM-DD)")
    parser.add_argument("--capital", type=float, default=1000.0, help="Initial capital")
    parser.add_argument("--max-leverage", type=float, default=10.0, help="Account leverage cap")
    parser.add_argument("--config-dir", default="config", help="Directory with app.yaml and policy.yaml")
    parser.add_argument("--scripted", action="store_true", help="Use an always-HOLD decision source")
    parser.add_argument("--cache-dir", default=None, help="Cache candles as CSV in this directory")
    parser.add_argument("--testnet", action="store_true", help="Load candles from testnet")
    parser.add_argument("--output", default=None, help="Write metrics JSON to this file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        results = run_simple_backtest(
            symbol=args.symbol,
            start_date=args.start,
            end_date=args.end,
            initial_capital=args.capital,
            max_leverage=args.max_leverage,
            config_dir=args.config_dir,
            scripted=args.scripted,
            cache_dir=args.cache_dir,
            testnet=args.testnet,
        )
    except Exception as e:
        logger.error(f"Backtest failed: {e}")
        return 1

    if args.output:
        Path(args.output).write_text(json.dumps(results.to_dict(), indent=2))
        logger.info(f"Wrote metrics to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
