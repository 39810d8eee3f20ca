"""
Sync Direction Manager

One active direction per (tenant, provider) pair, persisted on the SyncState
document. Callers capture the direction at the start of a poll cycle, so a
change takes effect from the next cycle onward.
"""

from typing import Optional

from loguru import logger

from scim_sync.db.repository_sync_state import SyncStateStore
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import ChangeOrigin
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.models import AuditEntry
from scim_sync.sync.models import DriftReport
from scim_sync.sync.models import SyncState


class SyncDirectionManager:
    """Reads, defaults and changes the active sync direction of each pair."""

    def __init__(
        self,
        store: SyncStateStore,
        audit_sink: AuditSink,
        default_direction: SyncDirection = SyncDirection.SOURCE_TO_TARGET,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.default_direction = default_direction

    async def get_direction(self, tenant_id: str, provider_id: str) -> SyncDirection:
        """
        Active direction of a pair.

        A pair that never had a direction gets the default persisted, together
        with an audit entry recording that the default was selected.
        """
        state = await self.store.get(tenant_id, provider_id)
        if state is not None and state.sync_direction is not None:
            return state.sync_direction

        defaulted = {"selected": False}

        def apply_default(document: SyncState) -> None:
            defaulted["selected"] = False
            if document.sync_direction is None:
                document.sync_direction = self.default_direction
                defaulted["selected"] = True

        state = await self.store.update(tenant_id, provider_id, apply_default)
        if defaulted["selected"]:
            logger.info(
                "Sync direction defaulted",
                tenant_id=tenant_id,
                provider_id=provider_id,
                sync_direction=state.sync_direction.value,
            )
            await self.audit_sink.record(
                AuditEntry(
                    tenant_id=tenant_id,
                    provider_id=provider_id,
                    operation="SyncDirectionDefaulted",
                    resource_type="SyncState",
                    resource_id=state.id,
                    before=None,
                    after=state.sync_direction.value,
                    outcome=AuditOutcome.SUCCESS,
                    details={"reason": "No sync direction was persisted for this pair"},
                )
            )
        return state.sync_direction

    async def set_direction(
        self,
        tenant_id: str,
        provider_id: str,
        direction: SyncDirection,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> SyncDirection:
        """
        Change the active direction. A cycle already running keeps the direction it started with.

        Args:
            tenant_id: Tenant of the pair
            provider_id: Provider of the pair
            direction: New active direction
            actor: Operator making the change
            reason: Free text stored on the audit entry

        Returns:
            The direction now persisted
        """
        previous = {"direction": None}

        def apply(document: SyncState) -> None:
            previous["direction"] = document.sync_direction
            document.sync_direction = direction

        state = await self.store.update(tenant_id, provider_id, apply)
        before = previous["direction"].value if previous["direction"] else None
        logger.info(
            "Sync direction changed",
            tenant_id=tenant_id,
            provider_id=provider_id,
            before=before,
            after=direction.value,
            actor=actor,
        )
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=tenant_id,
                provider_id=provider_id,
                actor=actor,
                operation="SyncDirectionChanged",
                resource_type="SyncState",
                resource_id=state.id,
                before=before,
                after=direction.value,
                outcome=AuditOutcome.SUCCESS,
                details={"reason": reason} if reason else {},
            )
        )
        return direction

    @staticmethod
    def should_auto_apply(report: DriftReport, active_direction: SyncDirection) -> bool:
        """
        False for changes that only inform under ``active_direction``.

        A report stamped with another direction than the active one is stale.
        Changes that originated on the Source only inform under
        TARGET_TO_SOURCE; provider-side changes are acted on under either
        direction.
        """
        if report.sync_direction is not None and report.sync_direction != active_direction:
            return False
        if report.origin == ChangeOrigin.SOURCE and active_direction == SyncDirection.TARGET_TO_SOURCE:
            return False
        return True
