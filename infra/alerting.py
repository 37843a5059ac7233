"""Alerting helpers for webhook notifications about trades and risk events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class AlertService:
    """
    Send notifications for trading events.

    Identical alerts (severity, title, message) are suppressed for
    dedupe_seconds after their first occurrence. Delivery failures are
    logged and swallowed; alerting never raises into trading logic.
    """

    def __init__(self, config: AlertConfig, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._monotonic = monotonic
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._first_seen: Dict[str, float] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "warning"), default=AlertSeverity.WARNING
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    @classmethod
    def disabled(cls) -> "AlertService":
        return cls(AlertConfig(enabled=False, webhook_url=None, min_severity=AlertSeverity.WARNING, dry_run=False))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert. Returns True if it was delivered (or dry-run logged)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._monotonic()
        first_seen = self._first_seen.get(fingerprint)
        if first_seen is not None and now - first_seen <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._first_seen[fingerprint] = now
        self._cleanup(now)

        return self._send(severity, title, message, context)

    # Trade notifications -------------------------------------------------

    def notify_trade_opened(self, account_id: str, symbol: str, side: str, size_usd: float,
                            leverage: float, entry_price: float, stop_loss: Optional[float],
                            take_profit: Optional[float]) -> bool:
        return self.notify(
            AlertSeverity.INFO,
            f"Opened {side} {symbol}",
            f"${size_usd:,.2f} @ {entry_price:,.4f} x{leverage:g}",
            {"account_id": account_id, "stop_loss": stop_loss, "take_profit": take_profit},
        )

    def notify_trade_closed(self, account_id: str, symbol: str, side: str, entry_price: float,
                            exit_price: float, pnl: float, pnl_pct: float) -> bool:
        return self.notify(
            AlertSeverity.INFO,
            f"Closed {side} {symbol}",
            f"{entry_price:,.4f} -> {exit_price:,.4f} PnL ${pnl:,.2f} ({pnl_pct:+.2f}%)",
            {"account_id": account_id},
        )

    def notify_risk_alert(self, account_id: str, title: str, message: str,
                          context: Optional[Dict[str, Any]] = None) -> bool:
        return self.notify(AlertSeverity.CRITICAL, title, message, {"account_id": account_id, **(context or {})})

    # Internals -----------------------------------------------------------

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _cleanup(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 300.0)
        stale = [fp for fp, seen in self._first_seen.items() if now - seen > horizon]
        for fp in stale:
            del self._first_seen[fp]

    def _send(self, severity: AlertSeverity, title: str, message: str,
              context: Optional[Dict[str, Any]]) -> bool:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return True

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned %s for '%s'", response.status, title)
                    return False
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True, default=str)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
