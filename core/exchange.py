"""
perptrader Core: Exchange Connector (Hyperliquid)

ExchangeClient is the narrow surface the live loop needs. HyperliquidExchange
implements it on top of hyperliquid-python-sdk, bound to one account.

Reads retry transient failures with exponential backoff and jitter.
Writes never retry here; callers own their retry policy (protective orders)
or treat failure as terminal (entry/close).
"""

import logging
import os
import random
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants
from hyperliquid.utils.error import ClientError, ServerError

from core.exceptions import ExchangeError
from core.models import AccountState, ExchangePosition, OpenOrder, OrderResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SLIPPAGE = 0.01


class ExchangeClient(ABC):
    """Operations the control loop performs against one exchange account."""

    @abstractmethod
    def get_positions(self) -> List[ExchangePosition]:
        ...

    @abstractmethod
    def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        ...

    @abstractmethod
    def get_market_price(self, symbol: str) -> float:
        ...

    @abstractmethod
    def get_account_state(self) -> AccountState:
        ...

    @abstractmethod
    def place_order(self, symbol: str, is_buy: bool, size: float, leverage: float, price: float) -> OrderResult:
        """Market entry order sized in base units."""

    @abstractmethod
    def place_stop_loss(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        ...

    @abstractmethod
    def place_take_profit(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        ...

    @abstractmethod
    def cancel_orders_for_symbol(self, symbol: str) -> int:
        """Cancel every resting order for a symbol. Returns how many were cancelled."""

    @abstractmethod
    def close_position(self, symbol: str, size: float, is_buy: bool) -> OrderResult:
        ...


def _first_status(resp: Any) -> Dict[str, Any]:
    if not isinstance(resp, dict):
        return {"error": f"unexpected response: {resp!r}"}
    if resp.get("status") != "ok":
        return {"error": str(resp.get("response", resp))}
    statuses = resp.get("response", {}).get("data", {}).get("statuses", [])
    if not statuses:
        return {}
    return statuses[0] if isinstance(statuses[0], dict) else {"error": str(statuses[0])}


def _order_result(resp: Any) -> OrderResult:
    status = _first_status(resp)
    if "error" in status:
        return OrderResult(success=False, error=str(status["error"]))
    if "filled" in status:
        filled = status["filled"]
        return OrderResult(
            success=True,
            order_id=str(filled.get("oid")),
            filled_size=float(filled.get("totalSz", 0)),
            avg_price=float(filled.get("avgPx", 0)) or None,
        )
    if "resting" in status:
        return OrderResult(success=True, order_id=str(status["resting"].get("oid")))
    return OrderResult(success=True)


class HyperliquidExchange(ExchangeClient):
    """Hyperliquid perpetuals client for a single wallet."""

    def __init__(
        self,
        wallet_address: str,
        private_key: Optional[str] = None,
        testnet: bool = True,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not wallet_address:
            raise ValueError("wallet_address is required")
        self.wallet_address = wallet_address
        self.testnet = testnet
        self.base_url = constants.TESTNET_API_URL if testnet else constants.MAINNET_API_URL
        self.max_retries = max_retries
        self._sleep = sleep
        self.info = Info(self.base_url, skip_ws=True)
        self.exchange: Optional[Exchange] = None
        if private_key:
            wallet = Account.from_key(private_key)
            self.exchange = Exchange(wallet, self.base_url, account_address=wallet_address)
        self._sz_decimals: Dict[str, int] = {}
        logger.info(
            f"Initialized HyperliquidExchange ({'testnet' if testnet else 'mainnet'}) "
            f"for {wallet_address[:10]}... read_only={self.exchange is None}"
        )

    @classmethod
    def from_env(cls, wallet_address: str, private_key_env: Optional[str], testnet: bool) -> "HyperliquidExchange":
        private_key = os.getenv(private_key_env) if private_key_env else None
        if private_key_env and not private_key:
            logger.warning(f"{private_key_env} not set; exchange client is read-only")
        return cls(wallet_address, private_key=private_key, testnet=testnet)

    # ------------------------------------------------------------------
    # Retry wrapper for reads
    # ------------------------------------------------------------------

    def _read(self, label: str, fn: Callable[[], T]) -> T:
        """
        Run an idempotent read with exponential backoff.

        Retries on 429, 5xx and network errors. Other client errors raise at once.
        """
        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return fn()
            except ClientError as e:
                if e.status_code != 429:
                    logger.error(f"Hyperliquid client error on {label}: {e.status_code} {e.error_message}")
                    raise ExchangeError(label, str(e.error_message), e)
                logger.warning(f"Rate limited (429) on {label}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e
            except ServerError as e:
                logger.warning(f"Server error ({e.status_code}) on {label}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {label}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {label} in {backoff:.1f}s...")
                self._sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {label}")
        raise ExchangeError(label, f"failed after {self.max_retries} attempts", last_exception)

    def _writer(self) -> Exchange:
        if self.exchange is None:
            raise ExchangeError("write", "no private key configured for this account")
        return self.exchange

    def _size_decimals(self, symbol: str) -> int:
        if not self._sz_decimals:
            meta = self._read("meta", self.info.meta)
            self._sz_decimals = {a["name"]: int(a.get("szDecimals", 4)) for a in meta.get("universe", [])}
        return self._sz_decimals.get(symbol, 4)

    def _round_size(self, symbol: str, size: float) -> float:
        return round(size, self._size_decimals(symbol))

    def _round_price(self, symbol: str, price: float) -> float:
        # 5 significant figures, at most (6 - szDecimals) decimals for perps
        return round(float(f"{price:.5g}"), max(0, 6 - self._size_decimals(symbol)))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _user_state(self) -> Dict[str, Any]:
        return self._read("user_state", lambda: self.info.user_state(self.wallet_address))

    @staticmethod
    def _parse_positions(state: Dict[str, Any]) -> List[ExchangePosition]:
        positions = []
        for item in state.get("assetPositions", []):
            pos = item.get("position", item)
            szi = float(pos.get("szi", 0) or 0)
            if szi == 0:
                continue
            leverage = pos.get("leverage", {})
            positions.append(ExchangePosition(
                symbol=pos.get("coin"),
                szi=szi,
                entry_price=float(pos.get("entryPx") or 0),
                leverage=float(leverage.get("value", 1) if isinstance(leverage, dict) else leverage or 1),
                position_value=float(pos.get("positionValue") or 0),
                unrealized_pnl=float(pos.get("unrealizedPnl") or 0),
                liquidation_price=float(pos["liquidationPx"]) if pos.get("liquidationPx") else None,
            ))
        return positions

    def get_positions(self) -> List[ExchangePosition]:
        return self._parse_positions(self._user_state())

    def get_account_state(self) -> AccountState:
        state = self._user_state()
        summary = state.get("marginSummary", {})
        return AccountState(
            account_value=float(summary.get("accountValue", 0)),
            total_margin_used=float(summary.get("totalMarginUsed", 0)),
            total_notional=float(summary.get("totalNtlPos", 0)),
            withdrawable=float(state.get("withdrawable", 0)),
            positions=self._parse_positions(state),
        )

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        raw = self._read("frontend_open_orders", lambda: self.info.frontend_open_orders(self.wallet_address))
        orders = []
        for o in raw or []:
            if symbol is not None and o.get("coin") != symbol:
                continue
            orders.append(OpenOrder(
                symbol=o.get("coin"),
                order_id=str(o.get("oid")),
                side="buy" if o.get("side") == "B" else "sell",
                size=float(o.get("sz", 0)),
                price=float(o.get("limitPx", 0)),
                is_trigger=bool(o.get("isTrigger", False)),
                trigger_price=float(o["triggerPx"]) if o.get("triggerPx") else None,
                reduce_only=bool(o.get("reduceOnly", False)),
                order_type=str(o.get("orderType", "limit")),
            ))
        return orders

    def get_market_price(self, symbol: str) -> float:
        mids = self._read("all_mids", self.info.all_mids)
        price = float(mids.get(symbol, 0) or 0)
        if price <= 0:
            raise ExchangeError("all_mids", f"no market price for {symbol}")
        return price

    # ------------------------------------------------------------------
    # Writes (no automatic retry)
    # ------------------------------------------------------------------

    def place_order(self, symbol: str, is_buy: bool, size: float, leverage: float, price: float) -> OrderResult:
        exchange = self._writer()
        sz = self._round_size(symbol, size)
        try:
            exchange.update_leverage(int(leverage), symbol, is_cross=True)
            resp = exchange.market_open(symbol, is_buy, sz, None, DEFAULT_SLIPPAGE)
        except (ClientError, ServerError, requests.exceptions.RequestException) as e:
            raise ExchangeError("place_order", str(e), e)
        result = _order_result(resp)
        if result.success and result.avg_price is None:
            result.avg_price = price
        logger.info(f"Entry {symbol} {'BUY' if is_buy else 'SELL'} {sz} -> {result}")
        return result

    def _place_trigger(self, tpsl: str, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        exchange = self._writer()
        px = self._round_price(symbol, trigger_price)
        order_type = {"trigger": {"triggerPx": px, "isMarket": True, "tpsl": tpsl}}
        try:
            resp = exchange.order(
                symbol, not is_long_position, self._round_size(symbol, size), px, order_type, reduce_only=True
            )
        except (ClientError, ServerError, requests.exceptions.RequestException) as e:
            raise ExchangeError(f"place_{tpsl}", str(e), e)
        return _order_result(resp)

    def place_stop_loss(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        return self._place_trigger("sl", symbol, size, trigger_price, is_long_position)

    def place_take_profit(self, symbol: str, size: float, trigger_price: float, is_long_position: bool) -> OrderResult:
        return self._place_trigger("tp", symbol, size, trigger_price, is_long_position)

    def cancel_orders_for_symbol(self, symbol: str) -> int:
        exchange = self._writer()
        cancelled = 0
        for order in self.get_open_orders(symbol):
            try:
                resp = exchange.cancel(symbol, int(order.order_id))
            except (ClientError, ServerError, requests.exceptions.RequestException) as e:
                raise ExchangeError("cancel", str(e), e)
            if "error" not in _first_status(resp):
                cancelled += 1
        return cancelled

    def close_position(self, symbol: str, size: float, is_buy: bool) -> OrderResult:
        exchange = self._writer()
        sz = self._round_size(symbol, size)
        try:
            resp = exchange.market_close(symbol, sz, None, DEFAULT_SLIPPAGE)
        except (ClientError, ServerError, requests.exceptions.RequestException) as e:
            raise ExchangeError("close_position", str(e), e)
        result = _order_result(resp)
        logger.info(f"Close {symbol} {'BUY' if is_buy else 'SELL'} {sz} -> {result}")
        return result
