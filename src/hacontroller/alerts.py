"""Operator-facing alerts."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class Alert:
    severity: AlertSeverity
    title: str
    message: str
    timestamp: float = field(default_factory=time.time)
    details: dict[str, Any] = field(default_factory=dict)


class AlertSink(ABC):
    """Destination for alerts that need an operator's attention."""

    @abstractmethod
    async def send(self, alert: Alert) -> None: ...


class LoggingAlertSink(AlertSink):
    """Writes alerts to the log at a level matching their severity."""

    async def send(self, alert: Alert) -> None:
        logger.log(_LEVELS[alert.severity], "ALERT %s: %s", alert.title, alert.message)


class MemoryAlertSink(AlertSink):
    """Keeps alerts in a list."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    async def send(self, alert: Alert) -> None:
        self.alerts.append(alert)

    def titles(self) -> list[str]:
        return [a.title for a in self.alerts]
