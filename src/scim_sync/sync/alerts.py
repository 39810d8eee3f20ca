"""Operational alerts raised by the polling service."""

from abc import ABC
from abc import abstractmethod
from datetime import datetime
from typing import List
from typing import Optional

from loguru import logger
from pydantic import BaseModel
from pydantic import Field

from scim_sync.sync.models import utc_now


class OperationalAlert(BaseModel):
    """A pair crossed the consecutive-failure threshold."""

    tenant_id: str
    provider_id: str
    consecutive_failures: int
    error_code: Optional[str] = None
    message: str
    backoff_until: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utc_now)


class AlertSink(ABC):
    @abstractmethod
    async def send(self, alert: OperationalAlert) -> None:
        """Deliver one alert."""


class LoggingAlertSink(AlertSink):
    """Emits alerts as CRITICAL log records."""

    async def send(self, alert: OperationalAlert) -> None:
        logger.critical(
            f"Polling alert: {alert.consecutive_failures} consecutive failures for "
            f"{alert.tenant_id}:{alert.provider_id}",
            alert=True,
            tenant_id=alert.tenant_id,
            provider_id=alert.provider_id,
            error_code=alert.error_code,
            error_message=alert.message,
            backoff_until=alert.backoff_until,
        )


class InMemoryAlertSink(AlertSink):
    def __init__(self):
        self.alerts: List[OperationalAlert] = []

    async def send(self, alert: OperationalAlert) -> None:
        self.alerts.append(alert)


async def log_operator_notification(report) -> None:
    """Default reconciler notifier: high-severity drift and conflicts are logged for operators."""
    logger.warning(
        f"Operator attention required: {type(report).__name__} {report.id}",
        notification=True,
        tenant_id=report.tenant_id,
        provider_id=report.provider_id,
        resource_type=report.resource_type.value,
        resource_id=report.resource_id,
        severity=report.severity.value,
    )
