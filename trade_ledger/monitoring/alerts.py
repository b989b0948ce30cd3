"""
Alert Manager

Raises operator alerts for ledger consistency problems: failed
compensations, deferred sold-items index updates and reconciliation
findings. Alerts always go to the log and optionally to a webhook.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import Config

logger = logging.getLogger(__name__)


class AlertLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class Alert:
    """Represents an alert."""
    id: str
    level: AlertLevel
    title: str
    message: str
    data: Optional[Dict[str, Any]]
    timestamp: datetime
    sent_channels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sent_channels": list(self.sent_channels),
        }


_LOG_LEVELS = {
    AlertLevel.DEBUG: logging.DEBUG,
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.ERROR: logging.ERROR,
    AlertLevel.CRITICAL: logging.CRITICAL,
}

_COLORS = {
    AlertLevel.DEBUG: 0x808080,
    AlertLevel.INFO: 0x0099FF,
    AlertLevel.WARNING: 0xFFCC00,
    AlertLevel.ERROR: 0xFF6600,
    AlertLevel.CRITICAL: 0xFF0000,
}


class AlertManager:
    """
    Alert manager with console and webhook channels.

    CRITICAL alerts are never rate limited: a data-integrity alarm must
    always reach the operator.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        min_alert_level: AlertLevel = AlertLevel.INFO,
        rate_limit_window: Optional[int] = None,
        rate_limit_max: Optional[int] = None,
    ):
        self.webhook_url = webhook_url or Config.ALERT_WEBHOOK_URL
        self.min_alert_level = min_alert_level

        self._session: Optional[aiohttp.ClientSession] = None
        self._alert_counter = 0

        # Rate limiting
        self._alert_times: Dict[str, List[float]] = {}
        self._rate_limit_window = rate_limit_window or Config.ALERT_RATE_LIMIT_WINDOW
        self._rate_limit_max = rate_limit_max or Config.ALERT_RATE_LIMIT_MAX

        # Alert history
        self._recent_alerts: List[Alert] = []
        self._max_history = 100

    async def initialize(self):
        """Open the HTTP session used by the webhook channel."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=10)
        )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _should_send(self, level: AlertLevel) -> bool:
        levels = list(AlertLevel)
        return levels.index(level) >= levels.index(self.min_alert_level)

    def _check_rate_limit(self, level: AlertLevel) -> bool:
        if level == AlertLevel.CRITICAL:
            return True

        now = datetime.now(timezone.utc).timestamp()
        cutoff = now - self._rate_limit_window
        recent = [t for t in self._alert_times.get(level.value, []) if t > cutoff]

        if len(recent) >= self._rate_limit_max:
            self._alert_times[level.value] = recent
            return False

        recent.append(now)
        self._alert_times[level.value] = recent
        return True

    async def send(
        self,
        level: AlertLevel,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """
        Send an alert to all configured channels.

        Returns the Alert, or None if it was filtered or rate limited.
        """
        if not self._should_send(level):
            return None

        if not self._check_rate_limit(level):
            logger.warning(f"Alert rate limited: {title}")
            return None

        self._alert_counter += 1
        alert = Alert(
            id=f"alert_{self._alert_counter:06d}",
            level=level,
            title=title,
            message=message,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )

        logger.log(_LOG_LEVELS[level], f"[ALERT] {alert.title}: {alert.message}")
        alert.sent_channels.append("console")

        if self.webhook_url:
            await self._send_webhook(alert)

        self._recent_alerts.append(alert)
        if len(self._recent_alerts) > self._max_history:
            self._recent_alerts.pop(0)

        return alert

    async def _send_webhook(self, alert: Alert) -> bool:
        """Send alert to a Discord/Slack compatible webhook."""
        if not self._session:
            await self.initialize()

        payload = {
            "embeds": [{
                "title": f"[{alert.level.value.upper()}] {alert.title}",
                "description": alert.message,
                "color": _COLORS.get(alert.level, 0x0099FF),
                "timestamp": alert.timestamp.isoformat(),
                "fields": [
                    {"name": key, "value": str(value)[:100], "inline": True}
                    for key, value in list((alert.data or {}).items())[:5]
                ],
            }]
        }

        try:
            async with self._session.post(self.webhook_url, json=payload) as response:
                if response.status in (200, 204):
                    alert.sent_channels.append("webhook")
                    return True
                logger.error(f"Webhook failed: {response.status}")
                return False
        except asyncio.TimeoutError:
            logger.error(f"Webhook timed out for alert {alert.id}")
            return False
        except aiohttp.ClientError as e:
            logger.error(f"Webhook error: {e}")
            return False

    # Convenience methods
    async def warning(self, title: str, message: str, data: Optional[Dict[str, Any]] = None):
        return await self.send(AlertLevel.WARNING, title, message, data)

    async def error(self, title: str, message: str, data: Optional[Dict[str, Any]] = None):
        return await self.send(AlertLevel.ERROR, title, message, data)

    async def critical(self, title: str, message: str, data: Optional[Dict[str, Any]] = None):
        return await self.send(AlertLevel.CRITICAL, title, message, data)

    async def data_integrity_violation(
        self,
        trade_id: str,
        listing_id: str,
        reason: str,
    ) -> Optional[Alert]:
        """Trade completed while its listing is still for sale, and not repairable now."""
        return await self.critical(
            "Data integrity violation",
            f"Trade {trade_id} is completed but listing {listing_id} is not sold: {reason}",
            {"trade_id": trade_id, "listing_id": listing_id, "reason": reason},
        )

    async def index_update_deferred(
        self,
        seller_id: str,
        listing_id: str,
        reason: str,
    ) -> Optional[Alert]:
        """Sold-items index update failed and was queued for retry."""
        return await self.warning(
            "Sold-items update deferred",
            f"Listing {listing_id} not yet recorded on seller {seller_id}: {reason}",
            {"seller_id": seller_id, "listing_id": listing_id, "reason": reason},
        )

    def get_recent_alerts(
        self,
        limit: int = 20,
        level: Optional[AlertLevel] = None,
    ) -> List[Alert]:
        alerts = self._recent_alerts
        if level is not None:
            alerts = [a for a in alerts if a.level == level]
        return alerts[-limit:]
