"""
perptrader Core: Lock Manager

Time-boxed leases stored in the shared store:
- trading lock: one in-flight control-loop iteration per account
- symbol trade lock: one in-flight open attempt per account+symbol+side

The store has no compare-and-swap, so both acquisitions insert first and
then re-read to pick a single deterministic winner: earliest attempted_at,
ties broken by insertion order.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Literal, Optional, Tuple

from core.models import utc_now
from infra.state_store import SYMBOL_TRADE_LOCKS, TRADING_LOCKS, Store

logger = logging.getLogger(__name__)

LockReason = Literal["acquired", "locked", "symbol_locked", "race_condition_lost"]

DEFAULT_TRADING_LOCK_TTL = 120
DEFAULT_SYMBOL_LOCK_TTL = 120


@dataclass
class LockResult:
    success: bool
    reason: LockReason
    token: Optional[str] = None
    existing_token: Optional[str] = None
    seconds_remaining: int = 0


def _parse(ts: str) -> datetime:
    return datetime.fromisoformat(ts)


class LockManager:
    """Lease acquisition and release over a Store."""

    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utc_now,
        trading_lock_ttl_seconds: int = DEFAULT_TRADING_LOCK_TTL,
        symbol_lock_ttl_seconds: int = DEFAULT_SYMBOL_LOCK_TTL,
    ):
        self.store = store
        self.clock = clock
        self.trading_lock_ttl = timedelta(seconds=trading_lock_ttl_seconds)
        self.symbol_lock_ttl = timedelta(seconds=symbol_lock_ttl_seconds)

    # ------------------------------------------------------------------
    # Trading lock (per account)
    # ------------------------------------------------------------------

    def acquire_trading_lock(self, account_id: str) -> LockResult:
        now = self.clock()
        active = self._live_rows(TRADING_LOCKS, account_id, now)
        if active:
            existing_key, existing = active[0]
            remaining = self._seconds_remaining(existing, now)
            logger.info(f"Trading lock held for {account_id} ({remaining}s remaining)")
            return LockResult(False, "locked", existing_token=existing_key, seconds_remaining=remaining)

        lease_id = self.store.new_key()
        self.store.put(
            TRADING_LOCKS,
            {
                "account_id": account_id,
                "lease_id": lease_id,
                "acquired_at": now.isoformat(),
                "attempted_at": now.isoformat(),
                "expires_at": (now + self.trading_lock_ttl).isoformat(),
            },
            key=lease_id,
        )
        return self._resolve_race(TRADING_LOCKS, account_id, None, lease_id, now)

    def release_trading_lock(self, lease_id: str) -> bool:
        """Delete a lease by id. No-op if it is already gone."""
        removed = self.store.delete(TRADING_LOCKS, lease_id)
        if not removed:
            logger.debug(f"Trading lock {lease_id} already released")
        return removed

    def sweep_expired(self) -> int:
        """Delete expired leases of both kinds. Returns how many were removed."""
        now = self.clock()
        removed = 0
        for table in (TRADING_LOCKS, SYMBOL_TRADE_LOCKS):
            for key, row in self.store.scan(table):
                if _parse(row["expires_at"]) <= now and self.store.delete(table, key):
                    removed += 1
        if removed:
            logger.info(f"Swept {removed} expired lock(s)")
        return removed

    # ------------------------------------------------------------------
    # Symbol trade lock (per account + symbol + side)
    # ------------------------------------------------------------------

    def acquire_symbol_trade_lock(self, account_id: str, symbol: str, side: str) -> LockResult:
        now = self.clock()

        rows = self._side_rows(account_id, symbol, side)
        for key, row in rows:
            if _parse(row["expires_at"]) <= now:
                self.store.delete(SYMBOL_TRADE_LOCKS, key)

        active = [(k, r) for k, r in rows if _parse(r["expires_at"]) > now]
        if active:
            existing_key, existing = active[0]
            remaining = self._seconds_remaining(existing, now)
            return LockResult(False, "symbol_locked", existing_token=existing_key, seconds_remaining=remaining)

        token = self.store.new_key()
        self.store.put(
            SYMBOL_TRADE_LOCKS,
            {
                "account_id": account_id,
                "symbol": symbol,
                "side": side,
                "token": token,
                "attempted_at": now.isoformat(),
                "expires_at": (now + self.symbol_lock_ttl).isoformat(),
            },
            key=token,
        )
        return self._resolve_race(SYMBOL_TRADE_LOCKS, account_id, (symbol, side), token, now)

    def release_symbol_trade_lock(self, token: str) -> bool:
        return self.store.delete(SYMBOL_TRADE_LOCKS, token)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _side_rows(self, account_id: str, symbol: str, side: str) -> List[Tuple[str, Dict]]:
        return [
            (key, row)
            for key, row in self.store.query_by_index(SYMBOL_TRADE_LOCKS, account_id, symbol)
            if row.get("side") == side
        ]

    def _live_rows(self, table: str, account_id: str, now: datetime) -> List[Tuple[str, Dict]]:
        return [
            (key, row)
            for key, row in self.store.query_by_index(table, account_id)
            if _parse(row["expires_at"]) > now
        ]

    def _resolve_race(
        self,
        table: str,
        account_id: str,
        symbol_side: Optional[Tuple[str, str]],
        token: str,
        now: datetime,
    ) -> LockResult:
        if symbol_side is None:
            rows = self._live_rows(table, account_id, now)
        else:
            rows = [(k, r) for k, r in self._side_rows(account_id, *symbol_side) if _parse(r["expires_at"]) > now]

        if not any(key == token for key, _ in rows):
            # Our row was removed by a winner before we re-read.
            logger.info(f"Lock race lost for {account_id} {symbol_side or ''} (row already removed)")
            return LockResult(False, "race_condition_lost")

        # rows arrive in insertion order; min() keeps the first on equal timestamps
        winner_key, winner = min(rows, key=lambda item: _parse(item[1]["attempted_at"]))

        if winner_key != token:
            self.store.delete(table, token)
            logger.info(f"Lock race lost for {account_id} {symbol_side or ''} to {winner_key[:8]}")
            return LockResult(
                False,
                "race_condition_lost",
                existing_token=winner_key,
                seconds_remaining=self._seconds_remaining(winner, now),
            )

        for key, _ in rows:
            if key != token:
                self.store.delete(table, key)
        return LockResult(True, "acquired", token=token)

    @staticmethod
    def _seconds_remaining(row: Dict, now: datetime) -> int:
        return max(0, math.ceil((_parse(row["expires_at"]) - now).total_seconds()))
