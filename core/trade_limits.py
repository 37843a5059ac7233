"""
perptrader Core: Trade Limits

Process-local fast-path memory of recently opened symbol+side pairs.
Cleared on restart; durable duplicate protection comes from the symbol
trade lock and the ledger, so this only has to be best-effort.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from core.models import utc_now

logger = logging.getLogger(__name__)


class TradeCooldownCache:
    """Last-open timestamps keyed by (account_id, symbol, side)."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._last_open: Dict[Tuple[str, str, str], datetime] = {}
        self._lock = threading.Lock()

    def record(self, account_id: str, symbol: str, side: str) -> None:
        with self._lock:
            self._last_open[(account_id, symbol, side)] = self.clock()
        logger.debug(f"Tracking {account_id} {symbol}-{side} open")

    def seconds_since(self, account_id: str, symbol: str, side: str) -> Optional[float]:
        with self._lock:
            opened_at = self._last_open.get((account_id, symbol, side))
        if opened_at is None:
            return None
        return (self.clock() - opened_at).total_seconds()

    def clear(self) -> None:
        with self._lock:
            self._last_open.clear()
