"""
Sync Models

Pydantic models for drift and conflict reports, snapshots and the persisted
per-pair SyncState document.
"""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from pydantic import Field

from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import ChangeOrigin
from scim_sync.sync.enums import ChangeType
from scim_sync.sync.enums import ConflictResolution
from scim_sync.sync.enums import ConflictType
from scim_sync.sync.enums import DriftType
from scim_sync.sync.enums import ReconciliationAction
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import Severity
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.enums import SyncStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def pair_key(tenant_id: str, provider_id: str) -> str:
    """Document id of the SyncState for a (tenant, provider) pair."""
    return f"{tenant_id}:{provider_id}"


# ════════════════════════════════════════════════════════════════════════════
# Snapshots
# ════════════════════════════════════════════════════════════════════════════


class StateSnapshot(BaseModel):
    """All resources observed on one side of a pair at one point in time."""

    users: List[Dict[str, Any]] = Field(default_factory=list)
    groups: List[Dict[str, Any]] = Field(default_factory=list)

    def resources(self, resource_type: ResourceType) -> List[Dict[str, Any]]:
        return self.users if resource_type == ResourceType.USER else self.groups


class SnapshotRecord(BaseModel):
    """Summary persisted after a successful poll cycle."""

    checksum: str
    timestamp: datetime
    user_count: int
    group_count: int


# ════════════════════════════════════════════════════════════════════════════
# Drift
# ════════════════════════════════════════════════════════════════════════════


class AttributeChange(BaseModel):
    """Before/after pair for one attribute."""

    attribute: str
    before: Any = None
    after: Any = None


class DriftDetails(BaseModel):
    """Per-attribute changes, or member set differences for groups."""

    attribute_changes: List[AttributeChange] = Field(default_factory=list)
    members_added: List[str] = Field(default_factory=list)
    members_removed: List[str] = Field(default_factory=list)

    @property
    def changed_attributes(self) -> List[str]:
        names = [change.attribute for change in self.attribute_changes]
        if self.members_added or self.members_removed:
            names.append("members")
        return names


class DriftReport(BaseModel):
    """One detected divergence for one resource."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    provider_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    drift_type: DriftType
    resource_type: ResourceType
    resource_id: str
    external_id: Optional[str] = None
    severity: Severity
    details: DriftDetails = Field(default_factory=DriftDetails)
    origin: ChangeOrigin = ChangeOrigin.PROVIDER

    # Previous and current observation of one side; for Source changes handed to
    # the reconciler, the Source value and the provider counterpart
    source_state: Optional[Dict[str, Any]] = None
    provider_state: Optional[Dict[str, Any]] = None

    sync_direction: Optional[SyncDirection] = None
    informational: bool = False

    reconciled: bool = False
    reconciled_at: Optional[datetime] = None
    reconciliation_action: Optional[ReconciliationAction] = None
    reconciled_by: Optional[str] = None
    reconciliation_notes: Optional[str] = None

    @property
    def resource_key(self) -> str:
        return resource_key(self.resource_type, self.resource_id)


def resource_key(resource_type: ResourceType, resource_id: str) -> str:
    return f"{resource_type.value}:{resource_id}"


# ════════════════════════════════════════════════════════════════════════════
# Conflicts
# ════════════════════════════════════════════════════════════════════════════


class ChangeInfo(BaseModel):
    """One side's change to a conflicting resource."""

    change_type: ChangeType
    timestamp: datetime
    changed_by: Optional[str] = None
    changed_attributes: List[str] = Field(default_factory=list)
    previous_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None


class AttributeConflict(BaseModel):
    """One attribute changed differently on both sides."""

    name: str
    source_value: Any = None
    provider_value: Any = None
    is_multi_valued: bool = False


class ConflictReport(BaseModel):
    """A resource changed on both the Source and the Provider since last sync."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    provider_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    conflict_type: ConflictType
    resource_type: ResourceType
    resource_id: str
    external_id: Optional[str] = None
    severity: Severity
    source_change: Optional[ChangeInfo] = None
    provider_change: Optional[ChangeInfo] = None
    conflicting_attributes: List[AttributeConflict] = Field(default_factory=list)
    suggested_resolution: Optional[ConflictResolution] = None
    resolution: Optional[ConflictResolution] = None
    custom_value: Optional[Dict[str, Any]] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    sync_blocked: bool = True
    escalation_count: int = 0

    @property
    def resource_key(self) -> str:
        return resource_key(self.resource_type, self.resource_id)


# ════════════════════════════════════════════════════════════════════════════
# Detection Results
# ════════════════════════════════════════════════════════════════════════════


class DetectionStatistics(BaseModel):
    """Counters for one detection pass."""

    users_added: int = 0
    users_modified: int = 0
    users_deleted: int = 0
    groups_added: int = 0
    groups_modified: int = 0
    groups_deleted: int = 0
    membership_changes: int = 0


class ChangeDetectionResult(BaseModel):
    """Output of ChangeDetector.detect_changes / detect_drift."""

    drift_reports: List[DriftReport] = Field(default_factory=list)
    conflict_reports: List[ConflictReport] = Field(default_factory=list)
    state_hash: Optional[str] = None
    statistics: DetectionStatistics = Field(default_factory=DetectionStatistics)

    @property
    def has_changes(self) -> bool:
        return bool(self.drift_reports or self.conflict_reports)


# ════════════════════════════════════════════════════════════════════════════
# Sync State Document
# ════════════════════════════════════════════════════════════════════════════


class DriftLogEntry(BaseModel):
    """Append-only record of what happened to a drift report."""

    drift_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    drift_type: DriftType
    resource_type: ResourceType
    resource_id: str
    severity: Severity
    action: ReconciliationAction
    actor: str = "system"
    notes: Optional[str] = None


class ConflictLogEntry(BaseModel):
    """Append-only record of what happened to a conflict report."""

    conflict_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    conflict_type: ConflictType
    resource_type: ResourceType
    resource_id: str
    resolution: Optional[ConflictResolution] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None


class SyncErrorEntry(BaseModel):
    """Append-only record of a failed operation."""

    timestamp: datetime = Field(default_factory=utc_now)
    error_code: str
    message: str
    resource_id: Optional[str] = None
    is_transient: bool = False
    retry_count: int = 0


class SyncState(BaseModel):
    """Persisted state for one (tenant, provider) pair. Source of truth for all caches."""

    id: str
    tenant_id: str
    provider_id: str
    last_sync_timestamp: Optional[datetime] = None
    sync_direction: Optional[SyncDirection] = None
    last_known_state: Optional[StateSnapshot] = None
    last_known_source_state: Optional[StateSnapshot] = None  # only when a Source connector is registered
    status: SyncStatus = SyncStatus.IDLE
    snapshot_checksum: Optional[str] = None
    snapshot_timestamp: Optional[datetime] = None
    user_count: int = 0
    group_count: int = 0

    drift_log: List[DriftLogEntry] = Field(default_factory=list)
    conflict_log: List[ConflictLogEntry] = Field(default_factory=list)
    error_log: List[SyncErrorEntry] = Field(default_factory=list)

    blocked_resources: List[str] = Field(default_factory=list)
    pending_drift: List[DriftReport] = Field(default_factory=list)
    pending_conflicts: List[ConflictReport] = Field(default_factory=list)

    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(cls, tenant_id: str, provider_id: str) -> "SyncState":
        return cls(id=pair_key(tenant_id, provider_id), tenant_id=tenant_id, provider_id=provider_id)

    def trim_logs(self, max_entries: int) -> None:
        """Drop the oldest log entries beyond max_entries."""
        if len(self.drift_log) > max_entries:
            self.drift_log = self.drift_log[-max_entries:]
        if len(self.conflict_log) > max_entries:
            self.conflict_log = self.conflict_log[-max_entries:]
        if len(self.error_log) > max_entries:
            self.error_log = self.error_log[-max_entries:]


# ════════════════════════════════════════════════════════════════════════════
# Reconciliation and Audit
# ════════════════════════════════════════════════════════════════════════════


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one drift report."""

    drift_id: str
    resource_type: ResourceType
    resource_id: str
    action: ReconciliationAction
    outcome: AuditOutcome
    success: bool
    message: Optional[str] = None
    operations: List[str] = Field(default_factory=list)
    error_code: Optional[str] = None

    # Set once the target side was converged: its record before and after
    sync_direction: Optional[SyncDirection] = None
    converged_before: Optional[Dict[str, Any]] = None
    converged_after: Optional[Dict[str, Any]] = None


class AuditEntry(BaseModel):
    """Immutable who/what/when/before/after/outcome record."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    tenant_id: str
    provider_id: Optional[str] = None
    actor: str = "system"
    operation: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before: Optional[Any] = None
    after: Optional[Any] = None
    outcome: AuditOutcome
    details: Dict[str, Any] = Field(default_factory=dict)
