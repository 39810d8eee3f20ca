"""Severity classification for drift and conflict reports."""

from scim_sync.sync.enums import ConflictType
from scim_sync.sync.enums import DriftType
from scim_sync.sync.enums import Severity


def drift_severity(drift_type: DriftType, changed_count: int = 0) -> Severity:
    """
    Severity of a drift report.

    Args:
        drift_type: Classification of the drift
        changed_count: Number of changed attributes, or of member additions
            plus removals for MEMBERSHIP_MISMATCH

    Returns:
        Severity bucket for the report
    """
    if drift_type == DriftType.ADDED:
        return Severity.MEDIUM
    if drift_type == DriftType.DELETED:
        return Severity.HIGH
    if drift_type == DriftType.MODIFIED:
        if changed_count <= 1:
            return Severity.LOW
        if changed_count <= 3:
            return Severity.MEDIUM
        return Severity.HIGH
    if drift_type == DriftType.ATTRIBUTE_MISMATCH:
        return Severity.HIGH if changed_count > 3 else Severity.MEDIUM
    if drift_type == DriftType.MEMBERSHIP_MISMATCH:
        if changed_count == 0:
            return Severity.LOW
        if changed_count <= 5:
            return Severity.MEDIUM
        return Severity.HIGH
    return Severity.MEDIUM


def conflict_severity(conflict_type: ConflictType, conflicting_count: int = 0) -> Severity:
    """Severity of a conflict report from its type and overlapping attribute count."""
    if conflict_type == ConflictType.DUAL_MODIFICATION:
        if conflicting_count == 0:
            return Severity.LOW
        if conflicting_count <= 3:
            return Severity.MEDIUM
        return Severity.HIGH
    if conflict_type == ConflictType.TRANSFORMATION_CONFLICT:
        return Severity.MEDIUM
    # DELETE_MODIFY_CONFLICT, UNIQUENESS_VIOLATION
    return Severity.HIGH
