"""
perptrader Backtest: Data Loader

Fetch historical OHLCV candles for backtests and trend analysis:
- Hyperliquid public info API (candleSnapshot, no auth)
- CSV files (local cache)
"""

import csv
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

MAINNET_URL = "https://api.hyperliquid.xyz"
TESTNET_URL = "https://api.hyperliquid-testnet.xyz"

INTERVAL_MS: Dict[str, int] = {
    "1m": 60_000,
    "5m": 300_000,
    "15m": 900_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}

# candleSnapshot returns at most this many rows per request
MAX_CANDLES_PER_REQUEST = 5000


@dataclass
class Candle:
    """OHLCV candle. t is the open time in epoch milliseconds."""
    t: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.t / 1000, tz=timezone.utc)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Candle":
        return cls(
            t=int(data["t"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
        )


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class HyperliquidCandleLoader:
    """
    Load historical candles from the Hyperliquid info endpoint.

    API: POST /info {"type": "candleSnapshot", "req": {coin, interval, startTime, endTime}}
    Response rows: {"t", "T", "s", "i", "o", "c", "h", "l", "v", "n"} with string prices.
    """

    def __init__(
        self,
        testnet: bool = False,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        pause_seconds: float = 0.2,
    ):
        self.base_url = base_url or (TESTNET_URL if testnet else MAINNET_URL)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.pause_seconds = pause_seconds
        self._cache: Dict[str, List[Candle]] = {}

    def load(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> List[Candle]:
        """Candles with start_ms <= t <= end_ms, oldest first. HTTP errors propagate."""
        if interval not in INTERVAL_MS:
            raise ValueError(f"Unsupported interval: {interval}")

        cache_key = f"{symbol}_{interval}_{start_ms}_{end_ms}"
        if cache_key in self._cache:
            logger.debug(f"Using cached candles for {cache_key}")
            return self._cache[cache_key]

        step = INTERVAL_MS[interval] * MAX_CANDLES_PER_REQUEST
        candles: Dict[int, Candle] = {}
        window_start = start_ms
        while window_start <= end_ms:
            window_end = min(window_start + step, end_ms)
            for candle in self._fetch(symbol, interval, window_start, window_end):
                candles[candle.t] = candle
            window_start = window_end + 1
            if window_start <= end_ms and self.pause_seconds:
                time.sleep(self.pause_seconds)

        result = sorted((c for c in candles.values() if start_ms <= c.t <= end_ms), key=lambda c: c.t)
        self._cache[cache_key] = result
        logger.info(f"Loaded {len(result)} {interval} candles for {symbol}")
        return result

    def load_range(self, symbol: str, interval: str, start: datetime, end: datetime) -> List[Candle]:
        return self.load(symbol, interval, to_millis(start), to_millis(end))

    def fetch_recent(self, symbol: str, interval: str = "1h", count: int = 60) -> List[Candle]:
        """The most recent `count` candles up to now."""
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - INTERVAL_MS[interval] * count
        return self._fetch(symbol, interval, start_ms, end_ms)[-count:]

    def recent_closes(self, symbol: str, interval: str = "1h", count: int = 60) -> List[float]:
        return [c.close for c in self.fetch_recent(symbol, interval, count)]

    def _fetch(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> List[Candle]:
        payload = {
            "type": "candleSnapshot",
            "req": {"coin": symbol, "interval": interval, "startTime": start_ms, "endTime": end_ms},
        }
        logger.debug(f"Fetching {symbol} {interval} candles: {start_ms} to {end_ms}")
        response = self.session.post(f"{self.base_url}/info", json=payload, timeout=self.timeout)
        response.raise_for_status()

        candles = []
        for row in response.json() or []:
            try:
                candles.append(Candle(
                    t=int(row["t"]),
                    open=float(row["o"]),
                    high=float(row["h"]),
                    low=float(row["l"]),
                    close=float(row["c"]),
                    volume=float(row.get("v", 0.0)),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Invalid candle data: {row}")
        candles.sort(key=lambda c: c.t)
        return candles


def save_to_csv(path: Path, candles: List[Candle]) -> None:
    """Save candles to CSV for caching"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=["t", "open", "high", "low", "close", "volume"])
        writer.writeheader()
        for candle in candles:
            writer.writerow(candle.to_dict())
    logger.info(f"Saved {len(candles)} candles to {path}")


def load_from_csv(path: Path, start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> List[Candle]:
    path = Path(path)
    candles = []
    with open(path, "r", newline="") as f:
        for row in csv.DictReader(f):
            candle = Candle.from_dict(row)
            if start_ms is not None and candle.t < start_ms:
                continue
            if end_ms is not None and candle.t > end_ms:
                continue
            candles.append(candle)
    candles.sort(key=lambda c: c.t)
    logger.info(f"Loaded {len(candles)} candles from {path}")
    return candles
