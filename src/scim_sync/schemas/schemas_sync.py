"""
Sync API Schemas

Request bodies and query parameters use snake_case; response models use
PascalCase fields per existing pattern.
"""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from scim_sync.sync.enums import ConflictResolution
from scim_sync.sync.enums import ReconciliationStrategy
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.enums import SyncStatus
from scim_sync.sync.models import ChangeDetectionResult
from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import DriftReport
from scim_sync.sync.models import ReconciliationResult
from scim_sync.sync.models import SyncErrorEntry
from scim_sync.sync.polling import PollingResult
from scim_sync.sync.polling import PollSchedule
from scim_sync.transform.models import ReverseTransformationResult
from scim_sync.transform.models import TransformationExample
from scim_sync.transform.models import TransformationResult
from scim_sync.transform.models import TransformationRule
from scim_sync.transform.models import TransformationTestResult

# ════════════════════════════════════════════════════════════════════════════
# Query Parameters
# ════════════════════════════════════════════════════════════════════════════


class PendingReportsQueryParams(BaseModel):
    """Query parameters for listing pending drift or conflicts."""

    tenant_id: str
    provider_id: Optional[str] = None


class PairQueryParams(BaseModel):
    """Query parameters naming one (tenant, provider) pair."""

    tenant_id: str
    provider_id: str


class RecentResultsQueryParams(BaseModel):
    """Query parameters for listing poll results."""

    limit: Optional[int] = 20

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v):
        """Validate that limit is greater than 0."""
        if v is not None and v <= 0:
            raise ValueError("limit must be greater than 0")
        return v


class ReverseTransformQueryParams(BaseModel):
    """Query parameters for reverse transformation."""

    tenant_id: str
    provider_id: str
    entitlement: str


# ════════════════════════════════════════════════════════════════════════════
# Drift and Conflicts
# ════════════════════════════════════════════════════════════════════════════


class ManualReconciliationRequest(BaseModel):
    """Operator decision on a pending drift report."""

    approve: bool = True
    direction_override: Optional[SyncDirection] = None
    notes: Optional[str] = None


class ConflictResolutionRequest(BaseModel):
    """Explicit resolution for a pending conflict."""

    resolution: ConflictResolution
    notes: Optional[str] = None
    custom_value: Optional[Dict[str, Any]] = None


class DriftListResponse(BaseModel):
    """Pending drift reports."""

    Message: str
    Count: int
    DriftReports: List[DriftReport]


class ConflictListResponse(BaseModel):
    """Pending conflict reports."""

    Message: str
    Count: int
    Conflicts: List[ConflictReport]


class ReconciliationResponse(BaseModel):
    """Outcome of a manual reconciliation."""

    Message: str
    Result: ReconciliationResult


class ConflictResolutionResponse(BaseModel):
    """A resolved conflict."""

    Message: str
    Conflict: ConflictReport


# ════════════════════════════════════════════════════════════════════════════
# Sync Pair Schemas
# ════════════════════════════════════════════════════════════════════════════


class SetSyncDirectionRequest(BaseModel):
    direction: SyncDirection
    reason: Optional[str] = None


class SyncDirectionResponse(BaseModel):
    TenantId: str
    ProviderId: str
    Direction: SyncDirection


class StartPollingRequest(BaseModel):
    """Start (or restart) a pair's poll schedule."""

    interval_seconds: Optional[int] = Field(default=None, gt=0)
    strategy: Optional[ReconciliationStrategy] = None
    run_immediately: bool = False


class UpdateScheduleRequest(BaseModel):
    """Partial schedule update; omitted fields are unchanged."""

    interval_seconds: Optional[int] = Field(default=None, gt=0)
    enabled: Optional[bool] = None
    strategy: Optional[ReconciliationStrategy] = None


class ScheduleResponse(BaseModel):
    Message: str
    Schedule: PollSchedule


class ScheduleListResponse(BaseModel):
    Message: str
    Count: int
    Schedules: List[PollSchedule]


class PollResponse(BaseModel):
    """Outcome of an on-demand poll cycle."""

    Message: str
    Result: PollingResult


class ComparisonResponse(BaseModel):
    """Live differences between the Source and a provider."""

    Message: str
    Result: ChangeDetectionResult


class PollResultsResponse(BaseModel):
    Message: str
    Count: int
    Results: List[PollingResult]


class BlockSyncRequest(BaseModel):
    reason: Optional[str] = None


class SyncStateResponse(BaseModel):
    """Summary of a pair's persisted SyncState."""

    TenantId: str
    ProviderId: str
    Status: SyncStatus
    Direction: Optional[SyncDirection]
    LastSyncTimestamp: Optional[datetime]
    SnapshotChecksum: Optional[str]
    SnapshotTimestamp: Optional[datetime]
    UserCount: int
    GroupCount: int
    PendingDriftCount: int
    PendingConflictCount: int
    BlockedResources: List[str]
    RecentErrors: List[SyncErrorEntry]
    Version: int


# ════════════════════════════════════════════════════════════════════════════
# Transformation Rule Schemas
# ════════════════════════════════════════════════════════════════════════════


class RuleListResponse(BaseModel):
    Message: str
    Count: int
    Rules: List[TransformationRule]


class RuleResponse(BaseModel):
    Message: str
    Rule: TransformationRule


class RuleValidationResponse(BaseModel):
    IsValid: bool
    Errors: List[str] = Field(default_factory=list)
    Warnings: List[str] = Field(default_factory=list)


class RuleTestRequest(BaseModel):
    """Examples to run a stored rule against."""

    examples: List[TransformationExample] = Field(min_length=1)


class RuleTestResponse(BaseModel):
    Message: str
    Result: TransformationTestResult


class PreviewTransformationRequest(BaseModel):
    """Groups to transform with the active rules of a pair."""

    tenant_id: str
    provider_id: str
    group_names: List[str] = Field(min_length=1)


class PreviewTransformationResponse(BaseModel):
    Message: str
    Preview: Dict[str, TransformationResult]


class ReverseTransformationResponse(BaseModel):
    Message: str
    GroupName: Optional[str]
    Result: ReverseTransformationResult
