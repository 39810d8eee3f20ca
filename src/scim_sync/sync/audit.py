"""
Audit Sink

Append-only audit entries for every reconciliation outcome, direction change
and terminal error. The core only writes; observability collaborators read.
"""

from abc import ABC
from abc import abstractmethod
from typing import List
from typing import Optional

from loguru import logger

from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.models import AuditEntry


class AuditSink(ABC):
    """Destination for immutable audit entries."""

    @abstractmethod
    async def record(self, entry: AuditEntry) -> None:
        """Append one entry."""


class InMemoryAuditSink(AuditSink):
    """Keeps entries in a list. Used by tests and single-process deployments."""

    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry.model_copy(deep=True))

    def find(self, operation: Optional[str] = None, resource_id: Optional[str] = None) -> List[AuditEntry]:
        return [
            entry
            for entry in self.entries
            if (operation is None or entry.operation == operation)
            and (resource_id is None or entry.resource_id == resource_id)
        ]


class LoggingAuditSink(AuditSink):
    """Emits each entry as a structured log record."""

    async def record(self, entry: AuditEntry) -> None:
        level = "WARNING" if entry.outcome == AuditOutcome.FAILURE else "INFO"
        logger.log(
            level,
            f"Audit: {entry.operation}",
            audit=True,
            audit_id=entry.id,
            tenant_id=entry.tenant_id,
            provider_id=entry.provider_id,
            actor=entry.actor,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            outcome=entry.outcome.value,
            details=entry.details,
        )


class CompositeAuditSink(AuditSink):
    """Fans an entry out to several sinks in order."""

    def __init__(self, *sinks: AuditSink):
        self.sinks = list(sinks)

    async def record(self, entry: AuditEntry) -> None:
        for sink in self.sinks:
            await sink.record(entry)
