"""Tests for candle loading from the Hyperliquid info API and CSV cache."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from backtest.data_loader import (
    INTERVAL_MS,
    Candle,
    HyperliquidCandleLoader,
    load_from_csv,
    save_to_csv,
    to_millis,
)
from tests.helpers import make_candles
from tests.helpers.exchange_stubs import START_MS


def _row(t, price):
    return {"t": t, "T": t + 299_999, "s": "BTC", "i": "5m", "o": str(price), "c": str(price),
            "h": str(price + 10), "l": str(price - 10), "v": "1.5", "n": 3}


def _session(*pages):
    session = MagicMock()
    responses = []
    for page in pages:
        response = MagicMock()
        response.json.return_value = page
        responses.append(response)
    session.post.side_effect = responses
    return session


def test_load_parses_sorts_and_filters():
    page = [_row(START_MS + 300_000, 101.0), _row(START_MS, 100.0), _row(START_MS + 900_000, 103.0)]
    session = _session(page)
    loader = HyperliquidCandleLoader(session=session, pause_seconds=0)

    candles = loader.load("BTC", "5m", START_MS, START_MS + 600_000)

    assert [c.t for c in candles] == [START_MS, START_MS + 300_000]
    assert candles[0].high == 110.0
    assert candles[0].volume == 1.5
    payload = session.post.call_args.kwargs["json"]
    assert payload["type"] == "candleSnapshot"
    assert payload["req"] == {"coin": "BTC", "interval": "5m", "startTime": START_MS, "endTime": START_MS + 600_000}
    assert session.post.call_args.args[0] == "https://api.hyperliquid.xyz/info"


def test_load_is_cached():
    session = _session([_row(START_MS, 100.0)])
    loader = HyperliquidCandleLoader(session=session, pause_seconds=0)

    first = loader.load("BTC", "5m", START_MS, START_MS + 300_000)
    second = loader.load("BTC", "5m", START_MS, START_MS + 300_000)

    assert first == second
    assert session.post.call_count == 1


def test_long_range_is_paged():
    span = INTERVAL_MS["1m"] * 5000
    session = _session([_row(START_MS, 1.0)], [_row(START_MS + span + 60_000, 2.0)])
    loader = HyperliquidCandleLoader(session=session, pause_seconds=0)

    candles = loader.load("BTC", "1m", START_MS, START_MS + span + 120_000)

    assert session.post.call_count == 2
    assert [c.close for c in candles] == [1.0, 2.0]


def test_invalid_rows_skipped():
    session = _session([{"t": START_MS, "o": "x"}, _row(START_MS + 300_000, 100.0)])
    loader = HyperliquidCandleLoader(session=session, pause_seconds=0)

    candles = loader.load("BTC", "5m", START_MS, START_MS + 600_000)

    assert len(candles) == 1


def test_http_error_propagates():
    session = MagicMock()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
    loader = HyperliquidCandleLoader(session=session)

    with pytest.raises(requests.HTTPError):
        loader.load("BTC", "5m", START_MS, START_MS + 300_000)


def test_unsupported_interval():
    with pytest.raises(ValueError):
        HyperliquidCandleLoader(session=MagicMock()).load("BTC", "7m", 0, 1)


def test_testnet_url():
    assert HyperliquidCandleLoader(testnet=True, session=MagicMock()).base_url == "https://api.hyperliquid-testnet.xyz"


def test_csv_round_trip_with_range(tmp_path):
    candles = make_candles([100.0, (100.0, 105.0, 99.0, 104.0), 104.0])
    path = tmp_path / "cache" / "btc_5m.csv"

    save_to_csv(path, candles)
    loaded = load_from_csv(path, start_ms=START_MS + 300_000)

    assert loaded == candles[1:]


def test_to_millis_assumes_utc():
    assert to_millis(datetime(2024, 11, 1)) == START_MS
    assert to_millis(datetime(2024, 11, 1, tzinfo=timezone.utc)) == START_MS
    assert Candle(t=START_MS, open=1, high=1, low=1, close=1).timestamp.year == 2024
