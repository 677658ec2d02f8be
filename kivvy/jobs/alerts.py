"""
Kivvy Operator Alerts

Notification channels for failures that need a human:
- Log (always on)
- Webhook (when configured)

Terminal failures of payment tasks have financial impact, so the
PaymentFailureAlerter subscribes to the task event bus and raises an alert
for each one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import structlog

from kivvy.jobs.envelope import TaskKind, utcnow
from kivvy.jobs.events import TaskEvent, TaskEventType

logger = structlog.get_logger(__name__)


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class Alert:
    """An operator-facing notification."""
    title: str
    message: str
    severity: AlertSeverity = AlertSeverity.ERROR
    labels: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "labels": self.labels,
            "created_at": self.created_at.isoformat(),
        }


class AlertChannel(ABC):
    """Base class for alert notification channels."""

    name: str = "channel"

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Send an alert notification.

        Returns:
            True if sent successfully
        """


class LogChannel(AlertChannel):
    """Writes alerts to the structured log."""

    name = "log"

    def __init__(self, level: str = "error"):
        self.level = level

    async def send(self, alert: Alert) -> bool:
        log = getattr(logger, self.level, logger.error)
        log(
            "Operator alert",
            title=alert.title,
            alert_message=alert.message,
            severity=alert.severity.value,
            **alert.labels,
        )
        return True


class WebhookChannel(AlertChannel):
    """
    Generic webhook notification channel.

    Sends JSON POST requests to a webhook URL.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    async def send(self, alert: Alert) -> bool:
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=alert.to_dict(), headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=alert.to_dict(), headers=self.headers)
        except httpx.HTTPError as e:
            logger.error("Webhook alert error", url=self.url, error=str(e))
            return False

        if response.status_code >= 400:
            logger.error("Webhook alert failed", url=self.url, status=response.status_code)
            return False
        return True


class AlertManager:
    """Sends each alert to every channel; one broken channel does not block the rest."""

    def __init__(self, channels: Optional[List[AlertChannel]] = None):
        self.channels: List[AlertChannel] = channels or [LogChannel()]
        self.sent: int = 0

    async def notify(self, alert: Alert) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for channel in self.channels:
            try:
                results[channel.name] = await channel.send(alert)
            except Exception as e:
                logger.error("Alert channel raised", channel=channel.name, error=str(e))
                results[channel.name] = False
        self.sent += 1
        return results

    @classmethod
    def from_config(cls, alert_config) -> "AlertManager":
        channels: List[AlertChannel] = [LogChannel(level=alert_config.log_level)]
        if alert_config.webhook_url:
            channels.append(WebhookChannel(alert_config.webhook_url, timeout=alert_config.webhook_timeout))
        return cls(channels)


class PaymentFailureAlerter:
    """Task event subscriber alerting on terminal payment failures."""

    def __init__(self, manager: AlertManager):
        self.manager = manager

    async def __call__(self, event: TaskEvent) -> None:
        if event.event != TaskEventType.FAILED or not event.terminal:
            return
        if event.kind != TaskKind.PROCESS_PAYMENT.value:
            return

        labels = {"task_id": event.task_id, "queue": event.queue, "attempt": str(event.attempt)}
        labels.update(event.correlation)
        await self.manager.notify(
            Alert(
                title="Payment task failed permanently",
                message=event.error or "unknown error",
                severity=AlertSeverity.CRITICAL,
                labels=labels,
            )
        )
