"""
Audit Trail Repository

Repository for audit trail operations (append-only table).
"""

import json

from scim_sync.db.pool import SyncDBPool
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.models import AuditEntry


class AuditTrailRepository(AuditSink):
    """Audit trail repository (append-only, never updated or queried by the engine)."""

    def __init__(self, pool: SyncDBPool):
        self.pool = pool

    async def record(self, entry: AuditEntry) -> None:
        """Create an audit trail entry."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO scimsync.audit_trail
                    (audit_id, tenant_id, provider_id, actor, operation, resource_type, resource_id,
                     old_values, new_values, outcome, details, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                entry.id,
                entry.tenant_id,
                entry.provider_id,
                entry.actor,
                entry.operation,
                entry.resource_type,
                entry.resource_id,
                json.dumps(entry.before, default=str) if entry.before is not None else None,
                json.dumps(entry.after, default=str) if entry.after is not None else None,
                entry.outcome.value,
                json.dumps(entry.details, default=str) if entry.details else None,
                entry.timestamp,
            )
