"""
Sync Enums

All enum types used throughout the sync engine.
Values are persisted inside SyncState documents and must stay stable.
"""

from enum import Enum

# ════════════════════════════════════════════════════════════════════════════
# Resource and Drift Enums
# ════════════════════════════════════════════════════════════════════════════


class ResourceType(str, Enum):
    """Kind of identity resource being compared."""

    USER = "USER"
    GROUP = "GROUP"


class DriftType(str, Enum):
    """Classification of a unilateral divergence."""

    ADDED = "ADDED"  # Present in the newer/provider state only
    DELETED = "DELETED"  # Present in the older/source state only
    MODIFIED = "MODIFIED"  # Time-ordered snapshots of one system differ
    ATTRIBUTE_MISMATCH = "ATTRIBUTE_MISMATCH"  # Two live systems differ
    MEMBERSHIP_MISMATCH = "MEMBERSHIP_MISMATCH"  # Group member sets differ


class Severity(str, Enum):
    """Severity of a drift or conflict."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ChangeOrigin(str, Enum):
    """Side of the sync pair on which a change was observed."""

    SOURCE = "SOURCE"
    PROVIDER = "PROVIDER"


# ════════════════════════════════════════════════════════════════════════════
# Conflict Enums
# ════════════════════════════════════════════════════════════════════════════


class ConflictType(str, Enum):
    """Classification of a resource changed on both sides."""

    DUAL_MODIFICATION = "DUAL_MODIFICATION"
    DELETE_MODIFY_CONFLICT = "DELETE_MODIFY_CONFLICT"
    UNIQUENESS_VIOLATION = "UNIQUENESS_VIOLATION"
    TRANSFORMATION_CONFLICT = "TRANSFORMATION_CONFLICT"


class ChangeType(str, Enum):
    """Kind of change recorded on one side of a conflict."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MEMBERSHIP_CHANGE = "MEMBERSHIP_CHANGE"


class ConflictResolution(str, Enum):
    """Operator or policy decision for a conflict."""

    USE_SOURCE_VALUE = "USE_SOURCE_VALUE"
    USE_PROVIDER_VALUE = "USE_PROVIDER_VALUE"
    USE_MOST_RECENT = "USE_MOST_RECENT"
    MERGE_VALUES = "MERGE_VALUES"  # Multi-valued attributes only
    IGNORE = "IGNORE"
    CUSTOM = "CUSTOM"


# ════════════════════════════════════════════════════════════════════════════
# Reconciliation Enums
# ════════════════════════════════════════════════════════════════════════════


class ReconciliationStrategy(str, Enum):
    """Per-pair policy applied to detected drift."""

    AUTO_APPLY = "AUTO_APPLY"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    IGNORE = "IGNORE"


class ReconciliationAction(str, Enum):
    """Action recorded against a drift report."""

    AUTO_APPLIED = "AUTO_APPLIED"
    MANUAL_APPROVED = "MANUAL_APPROVED"
    MANUAL_REJECTED = "MANUAL_REJECTED"
    IGNORED = "IGNORED"
    PENDING_MANUAL_REVIEW = "PENDING_MANUAL_REVIEW"
    INFORMATIONAL = "INFORMATIONAL"  # Observed from the inactive direction
    SKIPPED_BLOCKED = "SKIPPED_BLOCKED"
    FAILED = "FAILED"
    CUSTOM = "CUSTOM"


class AuditOutcome(str, Enum):
    """Outcome recorded on every audit entry."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    DEFERRED = "DEFERRED"
    INFORMATIONAL = "INFORMATIONAL"


# ════════════════════════════════════════════════════════════════════════════
# Sync State Enums
# ════════════════════════════════════════════════════════════════════════════


class SyncDirection(str, Enum):
    """Which side is authoritative for auto-applied changes."""

    SOURCE_TO_TARGET = "SOURCE_TO_TARGET"
    TARGET_TO_SOURCE = "TARGET_TO_SOURCE"


class SyncStatus(str, Enum):
    """Status of the most recent poll cycle for a pair."""

    IDLE = "IDLE"  # Never polled
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILED = "FAILED"


class PollState(str, Enum):
    """Backoff state machine states for a pair's schedule."""

    IDLE = "IDLE"
    POLLING = "POLLING"
    BACKOFF = "BACKOFF"


# ════════════════════════════════════════════════════════════════════════════
# Connector Enums
# ════════════════════════════════════════════════════════════════════════════


class ConnectorHealthStatus(str, Enum):
    """Result of a connector health check."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"  # Usable, data calls still issued
    UNHEALTHY = "UNHEALTHY"  # Poll cycle short-circuits
    UNKNOWN = "UNKNOWN"
