"""
Change Detector

Pure comparison logic between two state snapshots, and between two change-sets
observed independently on the Source and on the Provider. No I/O.
"""

import base64
import hashlib
import json
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from loguru import logger

from scim_sync.sync.enums import ChangeOrigin
from scim_sync.sync.enums import ChangeType
from scim_sync.sync.enums import ConflictResolution
from scim_sync.sync.enums import ConflictType
from scim_sync.sync.enums import DriftType
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.models import AttributeChange
from scim_sync.sync.models import AttributeConflict
from scim_sync.sync.models import ChangeDetectionResult
from scim_sync.sync.models import ChangeInfo
from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import DetectionStatistics
from scim_sync.sync.models import DriftDetails
from scim_sync.sync.models import DriftReport
from scim_sync.sync.models import StateSnapshot
from scim_sync.sync.severity import conflict_severity
from scim_sync.sync.severity import drift_severity

# Volatile metadata never counts as drift
DEFAULT_IGNORED_ATTRIBUTES = frozenset({"meta", "created", "lastModified", "version", "modifiedAt", "createdAt"})

MEMBERS_ATTRIBUTE = "members"

Resource = Dict[str, Any]

_MODIFYING_DRIFT = {DriftType.MODIFIED, DriftType.ATTRIBUTE_MISMATCH, DriftType.MEMBERSHIP_MISMATCH}


def identity_key(resource: Resource) -> str:
    """externalId when present, internal id otherwise."""
    external_id = resource.get("externalId")
    if external_id:
        return f"ext:{external_id}"
    return f"id:{resource.get('id')}"


def member_ids(group: Optional[Resource]) -> List[str]:
    """Member ids of a SCIM group, accepting ``{"value": id}`` entries or bare ids."""
    if not group:
        return []
    ids = []
    for member in group.get(MEMBERS_ATTRIBUTE) or []:
        if isinstance(member, dict):
            value = member.get("value")
        else:
            value = member
        if value is not None:
            ids.append(str(value))
    return ids


def change_identity(report: DriftReport) -> str:
    """Key under which changes observed on either side refer to the same resource."""
    return f"{report.resource_type.value}:{report.external_id or report.resource_id}"


def replace_resource(
    snapshot: StateSnapshot,
    resource_type: ResourceType,
    stale: Iterable[Optional[Resource]],
    fresh: Optional[Resource],
) -> StateSnapshot:
    """
    Copy of ``snapshot`` with every resource sharing an identity with ``stale``
    or ``fresh`` removed, and ``fresh`` (when not None) added.
    """
    keys = {identity_key(resource) for resource in stale if resource is not None}
    if fresh is not None:
        keys.add(identity_key(fresh))
    kept = [resource for resource in snapshot.resources(resource_type) if identity_key(resource) not in keys]
    if fresh is not None:
        kept.append(fresh)
    if resource_type == ResourceType.USER:
        return StateSnapshot(users=kept, groups=list(snapshot.groups))
    return StateSnapshot(users=list(snapshot.users), groups=kept)


class ChangeDetector:
    """Structural diff of identity snapshots producing drift and conflict reports."""

    def __init__(self, ignored_attributes: Optional[Iterable[str]] = None):
        if ignored_attributes is None:
            self.ignored_attributes = DEFAULT_IGNORED_ATTRIBUTES
        else:
            self.ignored_attributes = frozenset(ignored_attributes)

    # ────────────────────────────────────────────────────────────────────────
    # Snapshot comparison
    # ────────────────────────────────────────────────────────────────────────

    def detect_changes(
        self,
        tenant_id: str,
        provider_id: str,
        previous: Optional[StateSnapshot],
        current: StateSnapshot,
        sync_direction: Optional[SyncDirection] = None,
        origin: ChangeOrigin = ChangeOrigin.PROVIDER,
    ) -> ChangeDetectionResult:
        """
        Compare two time-ordered snapshots of the same system.

        Args:
            tenant_id: Tenant of the pair
            provider_id: Provider of the pair
            previous: Last known state (None is treated as empty)
            current: Newly observed state
            sync_direction: Direction active for the cycle, stamped on each report
            origin: Side on which the snapshots were taken

        Returns:
            Drift reports (ADDED, DELETED, MODIFIED, MEMBERSHIP_MISMATCH), the
            state hash of ``current`` and statistics
        """
        previous = previous or StateSnapshot()
        reports: List[DriftReport] = []
        for resource_type in (ResourceType.USER, ResourceType.GROUP):
            reports.extend(
                self._compare(
                    tenant_id,
                    provider_id,
                    previous.resources(resource_type),
                    current.resources(resource_type),
                    resource_type,
                    live=False,
                    sync_direction=sync_direction,
                    origin=origin,
                )
            )

        result = ChangeDetectionResult(
            drift_reports=reports,
            state_hash=self.compute_state_hash(current),
            statistics=self._statistics(reports),
        )
        logger.debug(
            "Change detection completed",
            tenant_id=tenant_id,
            provider_id=provider_id,
            drift_count=len(reports),
        )
        return result

    def detect_drift(
        self,
        tenant_id: str,
        provider_id: str,
        source_state: StateSnapshot,
        provider_state: StateSnapshot,
        sync_direction: Optional[SyncDirection] = None,
    ) -> ChangeDetectionResult:
        """
        Compare the Source's state against a Provider's live state.

        Present on both sides with differing attributes gives ATTRIBUTE_MISMATCH,
        present only on the Source gives DELETED, present only on the Provider
        gives ADDED.
        """
        reports: List[DriftReport] = []
        for resource_type in (ResourceType.USER, ResourceType.GROUP):
            reports.extend(
                self._compare(
                    tenant_id,
                    provider_id,
                    source_state.resources(resource_type),
                    provider_state.resources(resource_type),
                    resource_type,
                    live=True,
                    sync_direction=sync_direction,
                    origin=ChangeOrigin.PROVIDER,
                )
            )

        return ChangeDetectionResult(
            drift_reports=reports,
            state_hash=self.compute_state_hash(provider_state),
            statistics=self._statistics(reports),
        )

    def _compare(
        self,
        tenant_id: str,
        provider_id: str,
        old_resources: List[Resource],
        new_resources: List[Resource],
        resource_type: ResourceType,
        live: bool,
        sync_direction: Optional[SyncDirection],
        origin: ChangeOrigin,
    ) -> List[DriftReport]:
        matches, only_old, only_new = self._match_resources(old_resources, new_resources)
        modified_type = DriftType.ATTRIBUTE_MISMATCH if live else DriftType.MODIFIED
        reports: List[DriftReport] = []

        def build(drift_type, old, new, details, count):
            anchor = new if new is not None else old
            return DriftReport(
                tenant_id=tenant_id,
                provider_id=provider_id,
                drift_type=drift_type,
                resource_type=resource_type,
                resource_id=str(anchor.get("id")),
                external_id=anchor.get("externalId"),
                severity=drift_severity(drift_type, count),
                details=details,
                origin=origin,
                source_state=old,
                provider_state=new,
                sync_direction=sync_direction,
            )

        for old, new in matches:
            changes = self.diff_attributes(old, new)
            if changes:
                reports.append(build(modified_type, old, new, DriftDetails(attribute_changes=changes), len(changes)))

            if resource_type == ResourceType.GROUP:
                added, removed = self.diff_members(old, new)
                if added or removed:
                    details = DriftDetails(members_added=added, members_removed=removed)
                    reports.append(build(DriftType.MEMBERSHIP_MISMATCH, old, new, details, len(added) + len(removed)))

        for old in only_old:
            reports.append(build(DriftType.DELETED, old, None, DriftDetails(), 0))

        for new in only_new:
            reports.append(build(DriftType.ADDED, None, new, DriftDetails(), 0))

        return reports

    @staticmethod
    def _match_resources(
        old_resources: List[Resource],
        new_resources: List[Resource],
    ) -> Tuple[List[Tuple[Resource, Resource]], List[Resource], List[Resource]]:
        """Pair resources by externalId, falling back to internal id."""
        by_external: Dict[str, int] = {}
        by_id: Dict[str, int] = {}
        for index, resource in enumerate(old_resources):
            if resource.get("externalId"):
                by_external.setdefault(str(resource["externalId"]), index)
            if resource.get("id") is not None:
                by_id.setdefault(str(resource["id"]), index)

        consumed = set()
        matches: List[Tuple[Resource, Resource]] = []
        only_new: List[Resource] = []
        for resource in new_resources:
            index = None
            external_id = resource.get("externalId")
            if external_id and str(external_id) in by_external:
                index = by_external[str(external_id)]
            elif resource.get("id") is not None and str(resource["id"]) in by_id:
                index = by_id[str(resource["id"])]

            if index is None or index in consumed:
                only_new.append(resource)
                continue
            consumed.add(index)
            matches.append((old_resources[index], resource))

        only_old = [resource for index, resource in enumerate(old_resources) if index not in consumed]
        return matches, only_old, only_new

    # ────────────────────────────────────────────────────────────────────────
    # Attribute and membership diff
    # ────────────────────────────────────────────────────────────────────────

    def diff_attributes(self, old: Resource, new: Resource) -> List[AttributeChange]:
        """
        Deep comparison of two resources excluding identity, members and volatile metadata.

        Nested objects are compared per dotted sub-attribute; multi-valued
        attributes are compared as sets.
        """
        old_flat = self._flatten(old)
        new_flat = self._flatten(new)
        changes = []
        for name in sorted(set(old_flat) | set(new_flat)):
            before = old_flat.get(name)
            after = new_flat.get(name)
            if self._canonical(before) != self._canonical(after):
                changes.append(AttributeChange(attribute=name, before=before, after=after))
        return changes

    @staticmethod
    def diff_members(old: Optional[Resource], new: Optional[Resource]) -> Tuple[List[str], List[str]]:
        """Return (added, removed) member ids, sorted."""
        old_members = set(member_ids(old))
        new_members = set(member_ids(new))
        return sorted(new_members - old_members), sorted(old_members - new_members)

    def _flatten(self, resource: Resource, prefix: str = "") -> Dict[str, Any]:
        flat: Dict[str, Any] = {}
        for key, value in resource.items():
            if key in self.ignored_attributes:
                continue
            if not prefix and key in ("id", MEMBERS_ATTRIBUTE):
                continue
            name = f"{prefix}{key}"
            if isinstance(value, dict) and value:
                flat.update(self._flatten(value, prefix=f"{name}."))
            else:
                flat[name] = value
        return flat

    def _canonical(self, value: Any) -> Any:
        """Order-independent, metadata-free representation used for equality and hashing."""
        if value is None or value == [] or value == {}:
            return None
        if isinstance(value, dict):
            return json.dumps(
                {k: self._canonical(v) for k, v in value.items() if k not in self.ignored_attributes},
                sort_keys=True,
                default=str,
            )
        if isinstance(value, (list, tuple, set)):
            return json.dumps(sorted({json.dumps(self._canonical(item), default=str) for item in value}))
        return value

    # ────────────────────────────────────────────────────────────────────────
    # Conflict detection
    # ────────────────────────────────────────────────────────────────────────

    def detect_conflicts(
        self,
        tenant_id: str,
        provider_id: str,
        source_changes: List[DriftReport],
        provider_changes: List[DriftReport],
    ) -> List[ConflictReport]:
        """
        Intersect two independently observed change-sets by resource identity.

        A resource modified on both sides conflicts only when the changed
        attribute names intersect. A deletion on one side against a
        modification on the other is a DELETE_MODIFY_CONFLICT. Creation of the
        same identity on both sides with differing attributes is a
        UNIQUENESS_VIOLATION. Deletion on both sides converges and is not a
        conflict.
        """
        source_index = self._group_changes(source_changes)
        provider_index = self._group_changes(provider_changes)
        conflicts: List[ConflictReport] = []

        for key in sorted(set(source_index) & set(provider_index)):
            source_reports = source_index[key]
            provider_reports = provider_index[key]
            source_types = {report.drift_type for report in source_reports}
            provider_types = {report.drift_type for report in provider_reports}

            conflict: Optional[ConflictReport] = None
            if DriftType.DELETED in source_types and DriftType.DELETED in provider_types:
                continue
            if (DriftType.DELETED in source_types and provider_types & _MODIFYING_DRIFT) or (
                DriftType.DELETED in provider_types and source_types & _MODIFYING_DRIFT
            ):
                conflict = self._conflict(
                    tenant_id,
                    provider_id,
                    ConflictType.DELETE_MODIFY_CONFLICT,
                    source_reports,
                    provider_reports,
                    [],
                )
            elif DriftType.ADDED in source_types and DriftType.ADDED in provider_types:
                source_after = self._after_state(source_reports)
                provider_after = self._after_state(provider_reports)
                changes = self.diff_attributes(source_after or {}, provider_after or {})
                if changes:
                    attributes = [
                        AttributeConflict(
                            name=change.attribute,
                            source_value=change.before,
                            provider_value=change.after,
                            is_multi_valued=isinstance(change.before, list) or isinstance(change.after, list),
                        )
                        for change in changes
                    ]
                    conflict = self._conflict(
                        tenant_id,
                        provider_id,
                        ConflictType.UNIQUENESS_VIOLATION,
                        source_reports,
                        provider_reports,
                        attributes,
                    )
            elif source_types & _MODIFYING_DRIFT and provider_types & _MODIFYING_DRIFT:
                source_attributes = self._changed_values(source_reports)
                provider_attributes = self._changed_values(provider_reports)
                overlap = sorted(set(source_attributes) & set(provider_attributes))
                if overlap:
                    attributes = [
                        AttributeConflict(
                            name=name,
                            source_value=source_attributes[name],
                            provider_value=provider_attributes[name],
                            is_multi_valued=name == MEMBERS_ATTRIBUTE or isinstance(source_attributes[name], list),
                        )
                        for name in overlap
                    ]
                    conflict = self._conflict(
                        tenant_id,
                        provider_id,
                        ConflictType.DUAL_MODIFICATION,
                        source_reports,
                        provider_reports,
                        attributes,
                    )

            if conflict is not None:
                conflicts.append(conflict)

        if conflicts:
            logger.info(
                "Conflicts detected",
                tenant_id=tenant_id,
                provider_id=provider_id,
                conflict_count=len(conflicts),
            )
        return conflicts

    def _conflict(
        self,
        tenant_id: str,
        provider_id: str,
        conflict_type: ConflictType,
        source_reports: List[DriftReport],
        provider_reports: List[DriftReport],
        attributes: List[AttributeConflict],
    ) -> ConflictReport:
        anchor = provider_reports[0]
        return ConflictReport(
            tenant_id=tenant_id,
            provider_id=provider_id,
            conflict_type=conflict_type,
            resource_type=anchor.resource_type,
            resource_id=anchor.resource_id,
            external_id=anchor.external_id or source_reports[0].external_id,
            severity=conflict_severity(conflict_type, len(attributes)),
            source_change=self._change_info(source_reports, "source"),
            provider_change=self._change_info(provider_reports, "provider"),
            conflicting_attributes=attributes,
            suggested_resolution=ConflictResolution.USE_MOST_RECENT,
        )

    def _change_info(self, reports: List[DriftReport], changed_by: str) -> ChangeInfo:
        types = {report.drift_type for report in reports}
        if DriftType.DELETED in types:
            change_type = ChangeType.DELETE
        elif DriftType.ADDED in types:
            change_type = ChangeType.CREATE
        elif types == {DriftType.MEMBERSHIP_MISMATCH}:
            change_type = ChangeType.MEMBERSHIP_CHANGE
        else:
            change_type = ChangeType.UPDATE

        changed: List[str] = []
        for report in reports:
            for name in report.details.changed_attributes:
                if name not in changed:
                    changed.append(name)

        return ChangeInfo(
            change_type=change_type,
            timestamp=max(report.timestamp for report in reports),
            changed_by=changed_by,
            changed_attributes=changed,
            previous_value=reports[0].source_state,
            new_value=self._after_state(reports),
        )

    @staticmethod
    def _group_changes(reports: List[DriftReport]) -> Dict[str, List[DriftReport]]:
        grouped: Dict[str, List[DriftReport]] = {}
        for report in reports:
            grouped.setdefault(change_identity(report), []).append(report)
        return grouped

    @staticmethod
    def _after_state(reports: List[DriftReport]) -> Optional[Resource]:
        # provider_state holds the newer observation for time-ordered snapshots
        for report in reports:
            if report.provider_state is not None:
                return report.provider_state
        return None

    @staticmethod
    def _changed_values(reports: List[DriftReport]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for report in reports:
            for change in report.details.attribute_changes:
                values[change.attribute] = change.after
            if report.details.members_added or report.details.members_removed:
                values[MEMBERS_ATTRIBUTE] = {
                    "added": report.details.members_added,
                    "removed": report.details.members_removed,
                }
        return values

    # ────────────────────────────────────────────────────────────────────────
    # Hashing and statistics
    # ────────────────────────────────────────────────────────────────────────

    def compute_state_hash(self, snapshot: StateSnapshot) -> str:
        """Canonical, member-order-independent SHA-256 of a snapshot, base64 encoded."""
        canonical = {
            "users": sorted(self._canonical(self._strip(user)) or "" for user in snapshot.users),
            "groups": sorted(self._canonical(self._strip(group)) or "" for group in snapshot.groups),
        }
        payload = json.dumps(canonical, sort_keys=True, default=str).encode("utf-8")
        return base64.b64encode(hashlib.sha256(payload).digest()).decode("ascii")

    def _strip(self, resource: Resource) -> Resource:
        return {key: value for key, value in resource.items() if key not in self.ignored_attributes}

    @staticmethod
    def _statistics(reports: List[DriftReport]) -> DetectionStatistics:
        stats = DetectionStatistics()
        counters = {
            (ResourceType.USER, DriftType.ADDED): "users_added",
            (ResourceType.USER, DriftType.DELETED): "users_deleted",
            (ResourceType.USER, DriftType.MODIFIED): "users_modified",
            (ResourceType.USER, DriftType.ATTRIBUTE_MISMATCH): "users_modified",
            (ResourceType.GROUP, DriftType.ADDED): "groups_added",
            (ResourceType.GROUP, DriftType.DELETED): "groups_deleted",
            (ResourceType.GROUP, DriftType.MODIFIED): "groups_modified",
            (ResourceType.GROUP, DriftType.ATTRIBUTE_MISMATCH): "groups_modified",
        }
        for report in reports:
            if report.drift_type == DriftType.MEMBERSHIP_MISMATCH:
                stats.membership_changes += 1
                continue
            field = counters.get((report.resource_type, report.drift_type))
            if field:
                setattr(stats, field, getattr(stats, field) + 1)
        return stats
