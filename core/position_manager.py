"""
perptrader Core: Position Manager

Local replica of open positions and the append-only trade ledger.
The replica is a cache; correctness-affecting reads go to the exchange.
"""

import logging
from datetime import datetime
from typing import List, Optional

from core.models import Position, Trade, TradeAction
from infra.state_store import POSITIONS, TRADES, Store

logger = logging.getLogger(__name__)


class PositionManager:
    """Reads and writes Position rows and Trade ledger entries."""

    def __init__(self, store: Store):
        self.store = store

    def list_positions(self, account_id: str) -> List[Position]:
        return [
            Position.from_dict(data, key=key)
            for key, data in self.store.query_by_index(POSITIONS, account_id)
        ]

    def get_position(self, account_id: str, symbol: str) -> Optional[Position]:
        rows = self.store.query_by_index(POSITIONS, account_id, symbol)
        if not rows:
            return None
        key, data = rows[0]
        return Position.from_dict(data, key=key)

    def save_position(self, position: Position) -> Position:
        position.id = self.store.put(POSITIONS, position.to_dict(), key=position.id)
        return position

    def delete_position(self, position: Position) -> bool:
        if position.id is None:
            return False
        return self.store.delete(POSITIONS, position.id)

    def delete_positions_for_symbol(self, account_id: str, symbol: str) -> int:
        removed = 0
        for key, _ in self.store.query_by_index(POSITIONS, account_id, symbol):
            if self.store.delete(POSITIONS, key):
                removed += 1
        return removed

    def record_trade(self, trade: Trade) -> Trade:
        """Append a ledger entry. Existing entries are never rewritten."""
        trade.id = self.store.put(TRADES, trade.to_dict())
        logger.info(
            f"Ledger {trade.action.value} {trade.side.value} {trade.symbol} "
            f"${trade.size_usd:.2f} @ {trade.price:.4f} (account={trade.account_id})"
        )
        return trade

    def list_trades(self, account_id: str, symbol: Optional[str] = None) -> List[Trade]:
        return [
            Trade.from_dict(data, key=key)
            for key, data in self.store.query_by_index(TRADES, account_id, symbol)
        ]

    def recent_opens(self, account_id: str, symbol: str, since: datetime) -> List[Trade]:
        return [
            trade
            for trade in self.list_trades(account_id, symbol)
            if trade.action is TradeAction.OPEN and trade.executed_at > since
        ]
