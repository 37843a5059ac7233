"""
perptrader Infrastructure: State Store

Table-oriented key/value store with secondary indexes on (account_id) and
(account_id, symbol). Two backends: in-memory (tests, dry runs) and SQLite.

Rows come back in insertion order, which the lock manager relies on to
break ties between leases stamped with the same attempt time.
"""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Logical tables
POSITIONS = "positions"
TRADES = "trades"
TRADING_LOCKS = "trading_locks"
SYMBOL_TRADE_LOCKS = "symbol_trade_locks"
ACCOUNTS = "accounts"
BACKTEST_RUNS = "backtest_runs"
BACKTEST_TRADES = "backtest_trades"
BACKTEST_CANDLES = "backtest_candles"
SYSTEM_LOGS = "system_logs"
AI_LOGS = "ai_logs"
ACCOUNT_SNAPSHOTS = "account_snapshots"

Row = Tuple[str, Dict[str, Any]]


class Store(ABC):
    """Minimal table store. Records carry their own account_id/symbol index fields."""

    @abstractmethod
    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, table: str, record: Dict[str, Any], key: Optional[str] = None) -> str:
        """Insert or replace a record. Returns its key (generated when omitted)."""

    @abstractmethod
    def delete(self, table: str, key: str) -> bool:
        """Delete a record. Returns False when it was already absent."""

    @abstractmethod
    def query_by_index(self, table: str, account_id: str, symbol: Optional[str] = None) -> List[Row]:
        ...

    @abstractmethod
    def scan(self, table: str) -> List[Row]:
        ...

    @staticmethod
    def new_key() -> str:
        return uuid.uuid4().hex


class InMemoryStore(Store):
    """Process-local store guarded by a single lock."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Tuple[int, Dict[str, Any]]]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._tables.get(table, {}).get(key)
            return dict(entry[1]) if entry else None

    def put(self, table: str, record: Dict[str, Any], key: Optional[str] = None) -> str:
        key = key or self.new_key()
        with self._lock:
            rows = self._tables.setdefault(table, {})
            if key in rows:
                seq = rows[key][0]
            else:
                self._seq += 1
                seq = self._seq
            rows[key] = (seq, dict(record))
        return key

    def delete(self, table: str, key: str) -> bool:
        with self._lock:
            return self._tables.get(table, {}).pop(key, None) is not None

    def query_by_index(self, table: str, account_id: str, symbol: Optional[str] = None) -> List[Row]:
        with self._lock:
            matches = [
                (seq, key, dict(data))
                for key, (seq, data) in self._tables.get(table, {}).items()
                if data.get("account_id") == account_id
                and (symbol is None or data.get("symbol") == symbol)
            ]
        matches.sort(key=lambda item: item[0])
        return [(key, data) for _, key, data in matches]

    def scan(self, table: str) -> List[Row]:
        with self._lock:
            rows = sorted(self._tables.get(table, {}).items(), key=lambda item: item[1][0])
            return [(key, dict(data)) for key, (_, data) in rows]


class SQLiteStore(Store):
    """
    SQLite-backed store.

    All tables share one physical table keyed by (tbl, key); the JSON body
    is stored as text and account_id/symbol are lifted into indexed columns.
    """

    def __init__(self, db_file: str = "data/perptrader.db"):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()
        logger.info(f"Initialized SQLiteStore at {self.db_file}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_file), timeout=30)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    tbl TEXT NOT NULL,
                    key TEXT NOT NULL,
                    account_id TEXT,
                    symbol TEXT,
                    body TEXT NOT NULL,
                    PRIMARY KEY (tbl, key)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_account ON records(tbl, account_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_account_symbol ON records(tbl, account_id, symbol)")

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM records WHERE tbl = ? AND key = ?", (table, key)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, table: str, record: Dict[str, Any], key: Optional[str] = None) -> str:
        key = key or self.new_key()
        body = json.dumps(record, default=str)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO records (tbl, key, account_id, symbol, body)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tbl, key) DO UPDATE SET
                    account_id = excluded.account_id,
                    symbol = excluded.symbol,
                    body = excluded.body
                """,
                (table, key, record.get("account_id"), record.get("symbol"), body),
            )
        return key

    def delete(self, table: str, key: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM records WHERE tbl = ? AND key = ?", (table, key))
            return cursor.rowcount > 0

    def query_by_index(self, table: str, account_id: str, symbol: Optional[str] = None) -> List[Row]:
        sql = "SELECT key, body FROM records WHERE tbl = ? AND account_id = ?"
        params: List[Any] = [table, account_id]
        if symbol is not None:
            sql += " AND symbol = ?"
            params.append(symbol)
        sql += " ORDER BY rowid"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(key, json.loads(body)) for key, body in rows]

    def scan(self, table: str) -> List[Row]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, body FROM records WHERE tbl = ? ORDER BY rowid", (table,)
            ).fetchall()
        return [(key, json.loads(body)) for key, body in rows]


def create_store_from_config(config: Optional[Dict[str, Any]]) -> Store:
    """Build a store from the `store` section of app.yaml."""
    config = config or {}
    backend = str(config.get("backend", "sqlite")).lower()
    if backend == "memory":
        logger.info("Using in-memory store (state is lost on restart)")
        return InMemoryStore()
    if backend == "sqlite":
        return SQLiteStore(config.get("path", "data/perptrader.db"))
    raise ValueError(f"Unknown store backend: {backend}")
