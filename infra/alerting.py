"""Discord webhook notifications for trading events."""

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
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.events import EventType, OutboundEvent

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


# Discord embed colours (decimal RGB)
COLORS = {
    "green": 0x00FF88,
    "red": 0xFF4444,
    "yellow": 0xFFAA00,
    "blue": 0x5599FF,
    "gray": 0x888888,
}

_EVENT_STYLE = {
    EventType.DETECTION: (AlertSeverity.INFO, "yellow"),
    EventType.BUY: (AlertSeverity.INFO, "green"),
    EventType.PROFIT_CLOSE: (AlertSeverity.INFO, "green"),
    EventType.LOSS_CLOSE: (AlertSeverity.WARNING, "red"),
    EventType.TRAILING_CLOSE: (AlertSeverity.INFO, "yellow"),
    EventType.SUMMARY: (AlertSeverity.INFO, "blue"),
    EventType.RISK_ALERT: (AlertSeverity.CRITICAL, "red"),
    EventType.STARTUP: (AlertSeverity.INFO, "blue"),
}

# Event data keys rendered as inline embed fields
_FIELD_LABELS = {
    "score": "Score",
    "amount_sol": "Size (SOL)",
    "price": "Price (SOL)",
    "pnl_pct": "P&L %",
    "pnl_sol": "P&L (SOL)",
    "peak_pnl_pct": "Peak %",
    "reason": "Reason",
    "mode": "Mode",
    "remaining_pct": "Remaining %",
    "duration_seconds": "Held (s)",
    "daily_pnl_sol": "Daily P&L (SOL)",
    "daily_pnl_pct": "Daily P&L %",
    "open_positions": "Open",
    "capital_sol": "Capital (SOL)",
    "win_rate": "Win rate",
    "total_trades": "Trades",
    "watchlist": "Watchlist",
    "mint": "Mint",
}


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Dedupe identical alerts within 60s
    rate_limit_per_minute: int = 30
    footer: str = "Sniper Bot"


@dataclass
class AlertRecord:
    """Track alert history for dedupe."""
    fingerprint: str
    first_seen: float
    last_seen: float
    count: int = 1


class AlertService:
    """
    Send Discord embeds for trading events.

    Features:
    - Deduplication: identical alerts within the dedupe window are suppressed
    - Rate limit: at most N messages per rolling minute, extras are dropped
    - Dry run: log instead of POSTing
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._alert_history: Dict[str, AlertRecord] = {}
        self._last_cleanup: float = clock()
        self._window_start: float = clock()
        self._window_count = 0
        self.sent_count = 0
        self.dropped_count = 0

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
            if "${" in webhook_url:
                webhook_url = None  # variable not set

        if not webhook_url:
            env_key = raw_config.get("webhook_env", "DISCORD_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info"), default=AlertSeverity.INFO),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
            rate_limit_per_minute=int(raw_config.get("rate_limit_per_minute", 30)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def handle_event(self, event: OutboundEvent) -> None:
        """EventBus sink: render a core event as an embed."""
        style = _EVENT_STYLE.get(event.type)
        if style is None:
            return  # not a notification (e.g. trade records)
        severity, colour = style
        if event.type == EventType.DETECTION and event.data.get("score", 0) >= 75:
            colour = "green"
        if event.type == EventType.SUMMARY and event.data.get("daily_pnl_sol", 0) < 0:
            colour = "red"

        description = event.message
        reasons = event.data.get("reasons")
        if reasons:
            description = "\n".join([description, *[f"• {r}" for r in reasons]]).strip()

        self.notify(
            severity=severity,
            title=event.title,
            message=description,
            context={k: v for k, v in event.data.items() if k in _FIELD_LABELS},
            color=COLORS[colour],
        )

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        color: Optional[int] = None,
    ) -> bool:
        """Send one embed subject to severity filter, dedupe and rate limit. True if sent."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        self._cleanup_old_alerts()

        fingerprint = self._generate_fingerprint(severity, title, message)
        if self._should_dedupe(fingerprint):
            self._alert_history[fingerprint].last_seen = self._clock()
            self._alert_history[fingerprint].count += 1
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False

        if not self._acquire_rate_slot():
            self.dropped_count += 1
            logger.warning(f"Discord rate limit reached, dropping notification: {title}")
            return False

        self._record_alert(fingerprint)
        payload = self._build_payload(severity, title, message, context, color, self._config.footer)
        return self._send(payload, title)

    def _acquire_rate_slot(self) -> bool:
        now = self._clock()
        if now - self._window_start > 60.0:
            self._window_start = now
            self._window_count = 0
        if self._window_count >= self._config.rate_limit_per_minute:
            return False
        self._window_count += 1
        return True

    def _generate_fingerprint(self, severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _should_dedupe(self, fingerprint: str) -> bool:
        """Fixed window from the first occurrence."""
        record = self._alert_history.get(fingerprint)
        if record is None:
            return False
        return self._clock() - record.first_seen <= self._config.dedupe_seconds

    def _record_alert(self, fingerprint: str) -> None:
        now = self._clock()
        self._alert_history[fingerprint] = AlertRecord(fingerprint=fingerprint, first_seen=now, last_seen=now)

    def _send(self, payload: Dict[str, Any], title: str) -> bool:
        if self._config.dry_run:
            logger.info("[DISCORD] %s | %s", title, json.dumps(payload["embeds"][0].get("fields", []), default=str))
            self.sent_count += 1
            return True

        data = json.dumps(payload, default=str).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver notification '%s': %s", title, exc)
            return False
        self.sent_count += 1
        return True

    def _cleanup_old_alerts(self) -> None:
        """Remove alerts older than 5 minutes to prevent memory leak."""
        now = self._clock()
        if now - self._last_cleanup < 60.0:
            return
        self._last_cleanup = now

        max_age = max(300.0, self._config.dedupe_seconds)
        stale = [fp for fp, record in self._alert_history.items() if (now - record.last_seen) > max_age]
        for fp in stale:
            del self._alert_history[fp]

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
        color: Optional[int],
        footer: str,
    ) -> Dict[str, Any]:
        fields: List[Dict[str, Any]] = []
        for key, value in (context or {}).items():
            if isinstance(value, float):
                value = f"{value:,.4f}".rstrip("0").rstrip(".")
            fields.append({"name": _FIELD_LABELS.get(key, key), "value": str(value), "inline": True})

        embed: Dict[str, Any] = {
            "title": title,
            "description": message,
            "color": color if color is not None else COLORS["gray"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": f"{footer} | {severity}"},
        }
        if fields:
            embed["fields"] = fields
        return {"embeds": [embed]}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig", "COLORS"]
