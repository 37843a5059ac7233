"""
perptrader Core: Audit Logger

Structured operational history:
- system logs (INFO/WARNING/ERROR/CRITICAL) persisted to the store
- AI decision logs (raw response, parsed decision, thinking, latency)
- account snapshots (value, margin, PnL, positions)
- one JSONL line per control-loop account cycle, when an audit file is set

Every write is best-effort: an audit failure is logged and never raised
into trading logic.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.models import AccountState, utc_now
from infra.state_store import ACCOUNT_SNAPSHOTS, AI_LOGS, SYSTEM_LOGS, Store

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class AuditLogger:
    """Persists system logs, AI logs, snapshots and cycle records."""

    def __init__(
        self,
        store: Store,
        audit_file: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.clock = clock
        self.audit_file = Path(audit_file) if audit_file else None
        if self.audit_file is not None:
            self.audit_file.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def system_log(
        self,
        level: str,
        category: str,
        message: str,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        level = level.upper()
        logger.log(LOG_LEVELS.get(level, logging.INFO), f"[{category}] {message}")
        try:
            self.store.put(SYSTEM_LOGS, {
                "account_id": account_id,
                "level": level,
                "category": category,
                "message": message,
                "details": details or {},
                "timestamp": self.clock().isoformat(),
            })
        except Exception as e:
            logger.error(f"Failed to persist system log: {e}")

    def ai_log(
        self,
        account_id: str,
        model: str,
        raw_response: Optional[str],
        parsed: Optional[Dict[str, Any]],
        thinking: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        try:
            self.store.put(AI_LOGS, {
                "account_id": account_id,
                "model": model,
                "raw_response": raw_response,
                "parsed": parsed,
                "thinking": thinking,
                "duration_ms": duration_ms,
                "error": error,
                "warnings": warnings or [],
                "timestamp": self.clock().isoformat(),
            })
        except Exception as e:
            logger.error(f"Failed to persist AI log: {e}")

    def account_snapshot(self, account_id: str, state: AccountState) -> None:
        try:
            self.store.put(ACCOUNT_SNAPSHOTS, {
                "account_id": account_id,
                "account_value": state.account_value,
                "total_margin_used": state.total_margin_used,
                "withdrawable": state.withdrawable,
                "unrealized_pnl": sum(p.unrealized_pnl for p in state.positions),
                "position_count": len(state.positions),
                "positions": [
                    {"symbol": p.symbol, "szi": p.szi, "entry_price": p.entry_price, "leverage": p.leverage}
                    for p in state.positions
                ],
                "timestamp": self.clock().isoformat(),
            })
        except Exception as e:
            logger.error(f"Failed to persist account snapshot: {e}")

    def get_system_logs(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.store.query_by_index(SYSTEM_LOGS, account_id)
        return [data for _, data in rows[-limit:]]

    def log_cycle(self, ts: datetime, account_id: str, outcome: Dict[str, Any]) -> None:
        """Append one JSONL record for an account's cycle."""
        if self.audit_file is None:
            return
        try:
            entry = {"timestamp": ts.isoformat(), "account_id": account_id, **outcome}
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
            logger.debug(f"Audited cycle for {account_id}: status={outcome.get('status')}")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle records, most recent first.
        """
        if self.audit_file is None or not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

            cycles = []
            for line in lines[-n:]:
                try:
                    cycles.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

            return list(reversed(cycles))

        except Exception as e:
            logger.error(f"Failed to read audit log: {e}")
            return []
