"""
Reconciler

Resolves drift and conflict reports for each (tenant, provider) pair according
to the pair's strategy and active sync direction.

The blocked-resource and pending-report registries held here are a cache over
the persisted SyncState document; every change is written through the store
first and the cache is refreshed from what was stored.
"""

from datetime import datetime
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Set
from typing import Tuple

from loguru import logger
from pydantic import BaseModel
from pydantic import Field

from scim_sync.connectors.base import Connector
from scim_sync.connectors.base import Resource
from scim_sync.connectors.registry import ConnectorRegistry
from scim_sync.db.repository_sync_state import SyncStateStore
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.change_detector import ChangeDetector
from scim_sync.sync.change_detector import member_ids
from scim_sync.sync.change_detector import replace_resource
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import ChangeOrigin
from scim_sync.sync.enums import ConflictResolution
from scim_sync.sync.enums import ReconciliationAction
from scim_sync.sync.enums import ReconciliationStrategy
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import Severity
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.exceptions import ConnectorError
from scim_sync.sync.exceptions import InvalidResolutionError
from scim_sync.sync.exceptions import PermanentProviderError
from scim_sync.sync.exceptions import ReportNotFoundError
from scim_sync.sync.exceptions import SyncEngineError
from scim_sync.sync.exceptions import is_retryable_error
from scim_sync.sync.models import AuditEntry
from scim_sync.sync.models import ConflictLogEntry
from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import DriftLogEntry
from scim_sync.sync.models import DriftReport
from scim_sync.sync.models import ReconciliationResult
from scim_sync.sync.models import SyncErrorEntry
from scim_sync.sync.models import SyncState
from scim_sync.sync.models import pair_key
from scim_sync.sync.models import resource_key
from scim_sync.sync.models import utc_now

Notifier = Callable[[Any], Awaitable[None]]
PairKey = Tuple[str, str]

# Attributes a connector manages itself and that are never pushed
_READ_ONLY_ATTRIBUTES = {"meta", "schemas"}


class Convergence(BaseModel):
    """Operations issued on the target side and its record before and after them."""

    operations: List[str] = Field(default_factory=list)
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


def target_record(report: DriftReport, direction: SyncDirection) -> Optional[Resource]:
    """The record on ``report`` that was read from the side ``direction`` writes to, if any."""
    if direction == SyncDirection.SOURCE_TO_TARGET:
        return report.provider_state
    if report.origin == ChangeOrigin.SOURCE:
        return report.source_state
    return None


def is_foreign(report: DriftReport, direction: SyncDirection) -> bool:
    """True when the desired state on ``report`` was read from the other system than the one converged."""
    if direction == SyncDirection.SOURCE_TO_TARGET:
        return report.origin == ChangeOrigin.SOURCE
    return True


class ReconcilerOptions(BaseModel):
    """Per-service reconciliation policy."""

    default_strategy: ReconciliationStrategy = ReconciliationStrategy.MANUAL_REVIEW
    strategies: Dict[str, ReconciliationStrategy] = Field(default_factory=dict)  # keyed by pair_key
    max_auto_apply_per_cycle: int = 100
    notify_severity_threshold: Severity = Severity.HIGH


class Reconciler:
    """Applies, defers or ignores drift, and resolves conflicts."""

    def __init__(
        self,
        store: SyncStateStore,
        audit_sink: AuditSink,
        connectors: ConnectorRegistry,
        direction_manager: SyncDirectionManager,
        options: Optional[ReconcilerOptions] = None,
        notifier: Optional[Notifier] = None,
        detector: Optional[ChangeDetector] = None,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.connectors = connectors
        self.direction_manager = direction_manager
        self.options = options or ReconcilerOptions()
        self.notifier = notifier
        self.detector = detector or ChangeDetector()

        self._blocked: Dict[PairKey, Set[str]] = {}
        self._pending_drift: Dict[PairKey, Dict[str, DriftReport]] = {}
        self._pending_conflicts: Dict[PairKey, Dict[str, ConflictReport]] = {}

    # ────────────────────────────────────────────────────────────────────────
    # Cache over SyncState
    # ────────────────────────────────────────────────────────────────────────

    def _cache(self, state: SyncState) -> SyncState:
        pair = (state.tenant_id, state.provider_id)
        self._blocked[pair] = set(state.blocked_resources)
        self._pending_drift[pair] = {report.id: report for report in state.pending_drift}
        self._pending_conflicts[pair] = {conflict.id: conflict for conflict in state.pending_conflicts}
        return state

    async def _load(self, tenant_id: str, provider_id: str) -> None:
        state = await self.store.get(tenant_id, provider_id)
        if state is None:
            state = SyncState.new(tenant_id, provider_id)
        self._cache(state)

    async def _write(self, tenant_id: str, provider_id: str, mutate: Callable[[SyncState], None]) -> SyncState:
        state = await self.store.update(tenant_id, provider_id, mutate)
        return self._cache(state)

    async def _states(self, tenant_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[SyncState]:
        states = await self.store.list_states(tenant_id)
        if provider_id is not None:
            states = [state for state in states if state.provider_id == provider_id]
        for state in states:
            self._cache(state)
        return states

    # ────────────────────────────────────────────────────────────────────────
    # Strategy
    # ────────────────────────────────────────────────────────────────────────

    def get_strategy(self, tenant_id: str, provider_id: str) -> ReconciliationStrategy:
        return self.options.strategies.get(pair_key(tenant_id, provider_id), self.options.default_strategy)

    def set_strategy(self, tenant_id: str, provider_id: str, strategy: ReconciliationStrategy) -> None:
        self.options.strategies[pair_key(tenant_id, provider_id)] = strategy

    # ────────────────────────────────────────────────────────────────────────
    # Drift
    # ────────────────────────────────────────────────────────────────────────

    async def reconcile_batch(
        self,
        tenant_id: str,
        provider_id: str,
        reports: List[DriftReport],
        strategy: Optional[ReconciliationStrategy] = None,
        active_direction: Optional[SyncDirection] = None,
        actor: str = "system",
    ) -> List[ReconciliationResult]:
        """
        Reconcile every report of one cycle.

        Each resource is reconciled in isolation: a failure is recorded for
        that resource and the batch continues. Once the AutoApply budget for
        the cycle is spent, the remaining reports go to manual review.
        """
        await self._load(tenant_id, provider_id)
        strategy = strategy or self.get_strategy(tenant_id, provider_id)
        direction = active_direction or await self.direction_manager.get_direction(tenant_id, provider_id)

        results: List[ReconciliationResult] = []
        applied = 0
        for report in reports:
            effective = strategy
            notes = None
            if strategy == ReconciliationStrategy.AUTO_APPLY and applied >= self.options.max_auto_apply_per_cycle:
                effective = ReconciliationStrategy.MANUAL_REVIEW
                notes = f"AutoApply budget of {self.options.max_auto_apply_per_cycle} per cycle exhausted"

            try:
                result = await self.reconcile_drift(
                    report, strategy=effective, active_direction=direction, actor=actor, notes=notes
                )
            except Exception as e:
                logger.error(
                    f"Reconciliation failed for {report.resource_key}: {e}",
                    tenant_id=tenant_id,
                    provider_id=provider_id,
                    drift_id=report.id,
                    exc_info=True,
                )
                result = await self._fail(report, e, actor)

            if result.action == ReconciliationAction.AUTO_APPLIED:
                applied += 1
            results.append(result)

        logger.info(
            "Reconciliation batch completed",
            tenant_id=tenant_id,
            provider_id=provider_id,
            strategy=strategy.value,
            sync_direction=direction.value,
            total=len(results),
            auto_applied=applied,
            failed=sum(1 for result in results if not result.success),
        )
        return results

    async def reconcile_drift(
        self,
        report: DriftReport,
        strategy: Optional[ReconciliationStrategy] = None,
        active_direction: Optional[SyncDirection] = None,
        actor: str = "system",
        notes: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Reconcile one drift report.

        Args:
            report: The drift to reconcile
            strategy: Overrides the pair's configured strategy
            active_direction: Direction captured at the start of the cycle
            actor: Who is reconciling
            notes: Free text recorded on the drift log and audit entry

        Returns:
            ReconciliationResult describing the action taken
        """
        tenant_id, provider_id = report.tenant_id, report.provider_id
        pair = (tenant_id, provider_id)
        if pair not in self._blocked:
            await self._load(tenant_id, provider_id)
        strategy = strategy or self.get_strategy(tenant_id, provider_id)

        if strategy == ReconciliationStrategy.IGNORE:
            return await self._ignore(report, actor, notes)

        if report.resource_key in self._blocked[pair]:
            logger.debug("Resource sync blocked, skipping", resource=report.resource_key, drift_id=report.id)
            await self._audit(
                report, "DriftSkippedBlocked", actor, AuditOutcome.DEFERRED, details={"strategy": strategy.value}
            )
            return self._result(report, ReconciliationAction.SKIPPED_BLOCKED, AuditOutcome.DEFERRED, True,
                                "Resource is blocked pending manual review")

        direction = active_direction or await self.direction_manager.get_direction(tenant_id, provider_id)
        if not self.direction_manager.should_auto_apply(report, direction):
            return await self._informational(report, direction, actor)

        if strategy == ReconciliationStrategy.MANUAL_REVIEW:
            return await self._queue_for_review(report, actor, notes)

        return await self._auto_apply(report, direction, actor, ReconciliationAction.AUTO_APPLIED, notes)

    async def process_manual_reconciliation(
        self,
        drift_id: str,
        actor: str,
        approve: bool = True,
        direction_override: Optional[SyncDirection] = None,
        notes: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Apply an operator decision on a pending drift report.

        Approval routes through the AutoApply path, optionally in a direction
        other than the active one, and clears the resource's block on success.
        Rejection closes the report and clears the block without mutating
        either side.
        """
        report = await self.get_drift(drift_id)

        if not approve:
            report.reconciled = True
            report.reconciled_at = utc_now()
            report.reconciliation_action = ReconciliationAction.MANUAL_REJECTED
            report.reconciled_by = actor
            report.reconciliation_notes = notes
            await self._close_drift(report, ReconciliationAction.MANUAL_REJECTED, actor, notes)
            await self._audit(report, "ManualReconciliationRejected", actor, AuditOutcome.SUCCESS,
                              details={"notes": notes} if notes else {})
            return self._result(report, ReconciliationAction.MANUAL_REJECTED, AuditOutcome.SUCCESS, True,
                                "Drift rejected by operator")

        direction = direction_override or await self.direction_manager.get_direction(
            report.tenant_id, report.provider_id
        )
        return await self._auto_apply(report, direction, actor, ReconciliationAction.MANUAL_APPROVED, notes)

    # ────────────────────────────────────────────────────────────────────────
    # Strategy paths
    # ────────────────────────────────────────────────────────────────────────

    async def _ignore(self, report: DriftReport, actor: str, notes: Optional[str]) -> ReconciliationResult:
        await self._audit(report, "DriftIgnored", actor, AuditOutcome.INFORMATIONAL,
                          details={"notes": notes} if notes else {})
        return self._result(report, ReconciliationAction.IGNORED, AuditOutcome.INFORMATIONAL, True, "Drift ignored")

    async def _informational(
        self,
        report: DriftReport,
        direction: SyncDirection,
        actor: str,
    ) -> ReconciliationResult:
        """Drift observed under the inactive direction: recorded, visible for review, never applied."""
        report.informational = True
        if report.sync_direction is not None and report.sync_direction != direction:
            note = f"Observed under {report.sync_direction.value}; active direction is {direction.value}"
        else:
            note = f"Source change; the provider is authoritative under {direction.value}"

        def mutate(state: SyncState) -> None:
            state.pending_drift = [item for item in state.pending_drift if item.id != report.id] + [report]
            state.drift_log.append(self._log_entry(report, ReconciliationAction.INFORMATIONAL, actor, note))

        await self._write(report.tenant_id, report.provider_id, mutate)
        await self._audit(report, "DriftInformational", actor, AuditOutcome.INFORMATIONAL, details={"notes": note})
        return self._result(report, ReconciliationAction.INFORMATIONAL, AuditOutcome.INFORMATIONAL, True, note)

    async def _queue_for_review(
        self,
        report: DriftReport,
        actor: str,
        notes: Optional[str] = None,
    ) -> ReconciliationResult:
        """Block the resource and keep the report pending until an operator decides."""
        report.informational = False

        def mutate(state: SyncState) -> None:
            if report.resource_key not in state.blocked_resources:
                state.blocked_resources.append(report.resource_key)
            state.pending_drift = [item for item in state.pending_drift if item.id != report.id] + [report]
            state.drift_log.append(self._log_entry(report, ReconciliationAction.PENDING_MANUAL_REVIEW, actor, notes))

        await self._write(report.tenant_id, report.provider_id, mutate)
        logger.info(
            "Drift queued for manual review",
            tenant_id=report.tenant_id,
            provider_id=report.provider_id,
            drift_id=report.id,
            resource=report.resource_key,
            severity=report.severity.value,
        )
        await self._audit(report, "DriftQueuedForReview", actor, AuditOutcome.DEFERRED,
                          details={"notes": notes} if notes else {})
        await self._notify(report, report.severity)
        return self._result(report, ReconciliationAction.PENDING_MANUAL_REVIEW, AuditOutcome.DEFERRED, True,
                            notes or "Queued for manual review")

    async def _auto_apply(
        self,
        report: DriftReport,
        direction: SyncDirection,
        actor: str,
        action: ReconciliationAction,
        notes: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Converge the side that is not authoritative under ``direction``.

        SOURCE_TO_TARGET corrects the provider towards ``source_state``;
        TARGET_TO_SOURCE corrects the Source towards ``provider_state`` and
        needs a registered Source connector. The converged record is written
        into that side's last known state.
        """
        source = self.connectors.get_source(report.tenant_id)
        if direction == SyncDirection.SOURCE_TO_TARGET:
            connector = self.connectors.get(report.tenant_id, report.provider_id)
            origin = source
            desired = report.source_state
            before = report.provider_state
        else:
            connector = source
            origin = self.connectors.get(report.tenant_id, report.provider_id)
            desired = report.provider_state
            before = report.source_state
            if connector is None:
                return await self._queue_for_review(
                    report,
                    actor,
                    "TARGET_TO_SOURCE reconciliation needs a Source connector and none is registered",
                )

        owned = target_record(report, direction)
        target_id = (owned or {}).get("id")
        if direction == SyncDirection.SOURCE_TO_TARGET and report.origin == ChangeOrigin.PROVIDER:
            target_id = report.resource_id
        try:
            convergence = await self._converge(
                connector,
                report.resource_type,
                str(target_id) if target_id is not None else None,
                report.external_id,
                desired,
                origin=origin if is_foreign(report, direction) else None,
            )
        except PermanentProviderError as e:
            await self._record_error(report.tenant_id, report.provider_id, e, report.resource_id)
            await self._audit(report, "AutoApplyFailed", actor, AuditOutcome.FAILURE, before=before, after=desired,
                              details={"error_code": e.error_code, "message": e.message})
            return await self._queue_for_review(report, actor, f"AutoApply failed permanently: {e.message}")
        except ConnectorError as e:
            await self._record_error(report.tenant_id, report.provider_id, e, report.resource_id)
            await self._audit(report, "AutoApplyFailed", actor, AuditOutcome.FAILURE, before=before, after=desired,
                              details={"error_code": e.error_code, "message": e.message})
            return self._result(report, ReconciliationAction.FAILED, AuditOutcome.FAILURE, False, e.message,
                                error_code=e.error_code)

        report.reconciled = True
        report.reconciled_at = utc_now()
        report.reconciliation_action = action
        report.reconciled_by = actor
        report.reconciliation_notes = notes
        await self._close_drift(report, action, actor, notes, converged=(direction, [owned], convergence))
        operations = convergence.operations
        await self._audit(
            report,
            "DriftAutoApplied" if action == ReconciliationAction.AUTO_APPLIED else "ManualReconciliationApplied",
            actor,
            AuditOutcome.SUCCESS,
            before=before,
            after=desired,
            details={"sync_direction": direction.value, "operations": operations},
        )
        logger.info(
            "Drift reconciled",
            tenant_id=report.tenant_id,
            provider_id=report.provider_id,
            drift_id=report.id,
            resource=report.resource_key,
            action=action.value,
            operations=operations,
        )
        result = self._result(report, action, AuditOutcome.SUCCESS, True, "Converged", operations=operations)
        result.sync_direction = direction
        result.converged_before = convergence.before
        result.converged_after = convergence.after
        return result

    async def converge(
        self,
        connector: Connector,
        resource_type: ResourceType,
        resource_id: Optional[str],
        external_id: Optional[str],
        desired: Optional[Resource],
        origin: Optional[Connector] = None,
    ) -> List[str]:
        """
        Bring one resource on ``connector`` to ``desired`` (None means absent).

        The current state is read first and only the missing operations are
        issued, so converging twice towards the same state is a no-op the
        second time. When ``desired`` was read from another system, pass that
        system as ``origin``: its ``id`` is not sent and group members are
        mapped onto ``connector``'s user ids through their externalId.

        Returns:
            The operations issued, e.g. ``["create USER u1"]``
        """
        convergence = await self._converge(connector, resource_type, resource_id, external_id, desired, origin)
        return convergence.operations

    async def _converge(
        self,
        connector: Connector,
        resource_type: ResourceType,
        resource_id: Optional[str],
        external_id: Optional[str],
        desired: Optional[Resource],
        origin: Optional[Connector] = None,
    ) -> Convergence:
        current = await self._find_current(connector, resource_type, resource_id, external_id)

        label = resource_type.value
        operations: List[str] = []
        if desired is None:
            if current is not None:
                await self._delete(connector, resource_type, str(current["id"]))
                operations.append(f"delete {label} {current['id']}")
            return Convergence(operations=operations, before=current, after=None)

        payload = {key: value for key, value in desired.items() if key not in _READ_ONLY_ATTRIBUTES}
        if resource_type == ResourceType.GROUP:
            payload.pop("members", None)
        if origin is not None:
            payload.pop("id", None)

        if current is None:
            created = await self._create(connector, resource_type, payload)
            target_id = str(created.get("id") or payload.get("id"))
            operations.append(f"create {label} {target_id}")
            current_members: Set[str] = set()
        else:
            target_id = str(current["id"])
            if self.detector.diff_attributes(current, desired):
                await self._update(connector, resource_type, target_id, payload)
                operations.append(f"update {label} {target_id}")
            current_members = set(member_ids(current))

        if resource_type == ResourceType.GROUP:
            desired_members = set(member_ids(desired))
            if origin is not None:
                desired_members = await self._map_members(origin, connector, desired_members)
            for user_id in sorted(desired_members - current_members):
                await connector.add_user_to_group(target_id, user_id)
                operations.append(f"add member {user_id} to {target_id}")
            for user_id in sorted(current_members - desired_members):
                await connector.remove_user_from_group(target_id, user_id)
                operations.append(f"remove member {user_id} from {target_id}")

        after = current
        if operations:
            after = await connector.get_resource(resource_type, target_id)
        return Convergence(operations=operations, before=current, after=after)

    @staticmethod
    async def _find_current(
        connector: Connector,
        resource_type: ResourceType,
        resource_id: Optional[str],
        external_id: Optional[str],
    ) -> Optional[Resource]:
        """The resource ``external_id`` names on ``connector``, else the one at ``resource_id``."""
        if external_id:
            current = await connector.find_by_external_id(resource_type, external_id)
            if current is not None:
                return current
        if not resource_id:
            return None
        current = await connector.get_resource(resource_type, resource_id)
        if current is not None and external_id and current.get("externalId") not in (None, external_id):
            # Same id, different identity
            return None
        return current

    @staticmethod
    async def _map_members(origin: Connector, target: Connector, members: Set[str]) -> Set[str]:
        mapped: Set[str] = set()
        for user_id in members:
            user = await origin.get_resource(ResourceType.USER, user_id)
            match = None
            if user is not None and user.get("externalId"):
                match = await target.find_by_external_id(ResourceType.USER, user["externalId"])
            if match is None:
                logger.warning("Group member has no counterpart, skipping", member_id=user_id)
                continue
            mapped.add(str(match["id"]))
        return mapped

    @staticmethod
    async def _create(connector: Connector, resource_type: ResourceType, payload: Resource) -> Resource:
        if resource_type == ResourceType.USER:
            return await connector.create_user(payload)
        return await connector.create_group(payload)

    @staticmethod
    async def _update(connector: Connector, resource_type: ResourceType, resource_id: str, payload: Resource) -> None:
        if resource_type == ResourceType.USER:
            await connector.update_user(resource_id, payload)
        else:
            await connector.update_group(resource_id, payload)

    @staticmethod
    async def _delete(connector: Connector, resource_type: ResourceType, resource_id: str) -> None:
        if resource_type == ResourceType.USER:
            await connector.delete_user(resource_id)
        else:
            await connector.delete_group(resource_id)

    async def _close_drift(
        self,
        report: DriftReport,
        action: ReconciliationAction,
        actor: str,
        notes: Optional[str],
        converged: Optional[Tuple[SyncDirection, List[Optional[Resource]], Convergence]] = None,
    ) -> None:
        def mutate(state: SyncState) -> None:
            state.pending_drift = [item for item in state.pending_drift if item.id != report.id]
            self._release_block(state, report.resource_key)
            state.drift_log.append(self._log_entry(report, action, actor, notes))
            if converged is not None:
                direction, stale, convergence = converged
                self._record_convergence(state, report.resource_type, direction, stale, convergence)

        await self._write(report.tenant_id, report.provider_id, mutate)

    def _record_convergence(
        self,
        state: SyncState,
        resource_type: ResourceType,
        direction: SyncDirection,
        stale: List[Optional[Resource]],
        convergence: Convergence,
    ) -> None:
        """Replace the converged side's last known record so the next cycle does not see the write as drift."""
        stale = [convergence.before, *stale]
        if direction == SyncDirection.SOURCE_TO_TARGET:
            if state.last_known_state is not None:
                state.last_known_state = replace_resource(
                    state.last_known_state, resource_type, stale, convergence.after
                )
                state.snapshot_checksum = self.detector.compute_state_hash(state.last_known_state)
        elif state.last_known_source_state is not None:
            state.last_known_source_state = replace_resource(
                state.last_known_source_state, resource_type, stale, convergence.after
            )

    @staticmethod
    def _release_block(state: SyncState, key: str) -> None:
        """Unblock ``key`` unless another pending, non-informational report still holds it."""
        still_held = any(
            item.resource_key == key and not item.informational for item in state.pending_drift
        ) or any(item.resource_key == key and item.sync_blocked for item in state.pending_conflicts)
        if not still_held and key in state.blocked_resources:
            state.blocked_resources.remove(key)

    async def _fail(self, report: DriftReport, error: Exception, actor: str) -> ReconciliationResult:
        error_code = error.error_code if isinstance(error, SyncEngineError) else type(error).__name__
        await self._record_error(report.tenant_id, report.provider_id, error, report.resource_id)
        await self._audit(report, "ReconciliationFailed", actor, AuditOutcome.FAILURE,
                          details={"error_code": error_code, "message": str(error)})
        return self._result(report, ReconciliationAction.FAILED, AuditOutcome.FAILURE, False, str(error),
                            error_code=error_code)

    # ────────────────────────────────────────────────────────────────────────
    # Conflicts
    # ────────────────────────────────────────────────────────────────────────

    async def register_conflicts(
        self,
        tenant_id: str,
        provider_id: str,
        conflicts: List[ConflictReport],
        actor: str = "system",
    ) -> List[ConflictReport]:
        """
        Record detected conflicts as pending.

        A conflict on a resource that already has a pending conflict of the
        same type escalates the existing report instead of adding a new one.
        Blocking conflicts block the resource.
        """
        if not conflicts:
            return []
        registered: List[ConflictReport] = []

        def mutate(state: SyncState) -> None:
            registered.clear()
            for conflict in conflicts:
                existing = next(
                    (
                        item
                        for item in state.pending_conflicts
                        if item.resource_key == conflict.resource_key and item.conflict_type == conflict.conflict_type
                    ),
                    None,
                )
                if existing is not None:
                    existing.escalation_count += 1
                    existing.conflicting_attributes = conflict.conflicting_attributes
                    registered.append(existing)
                    continue
                state.pending_conflicts.append(conflict)
                if conflict.sync_blocked and conflict.resource_key not in state.blocked_resources:
                    state.blocked_resources.append(conflict.resource_key)
                state.conflict_log.append(
                    ConflictLogEntry(
                        conflict_id=conflict.id,
                        conflict_type=conflict.conflict_type,
                        resource_type=conflict.resource_type,
                        resource_id=conflict.resource_id,
                        notes="Conflict detected",
                    )
                )
                registered.append(conflict)

        await self._write(tenant_id, provider_id, mutate)
        for conflict in registered:
            await self._audit_conflict(conflict, "ConflictDetected", actor, AuditOutcome.DEFERRED)
            await self._notify(conflict, conflict.severity)
        logger.warning(
            "Conflicts registered",
            tenant_id=tenant_id,
            provider_id=provider_id,
            count=len(registered),
        )
        return list(registered)

    async def reconcile_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        actor: str,
        notes: Optional[str] = None,
        custom_value: Optional[Dict[str, Any]] = None,
    ) -> ConflictReport:
        """
        Resolve a pending conflict with an explicit resolution.

        Args:
            conflict_id: Pending conflict id
            resolution: How to resolve; never inferred
            actor: Operator resolving the conflict
            notes: Free text stored with the resolution
            custom_value: Resource to apply for CUSTOM

        Returns:
            The resolved conflict report

        Raises:
            ReportNotFoundError: no pending conflict with that id
            InvalidResolutionError: CUSTOM without a value, or MERGE_VALUES on single-valued attributes
            ConnectorError: applying the resolution failed; the conflict stays pending
        """
        conflict = await self.get_conflict(conflict_id)
        effective = resolution
        if resolution == ConflictResolution.USE_MOST_RECENT:
            effective = self._most_recent(conflict)

        source_value = conflict.source_change.new_value if conflict.source_change else None
        provider_value = conflict.provider_change.new_value if conflict.provider_change else None

        to_provider: Optional[Resource] = None
        to_source: Optional[Resource] = None
        push_provider = False
        push_source = False
        if effective == ConflictResolution.USE_SOURCE_VALUE:
            to_provider, push_provider = source_value, True
        elif effective == ConflictResolution.USE_PROVIDER_VALUE:
            to_source, push_source = provider_value, True
        elif effective == ConflictResolution.MERGE_VALUES:
            merged = self._merge(conflict, source_value, provider_value)
            to_provider, push_provider = merged, True
            to_source, push_source = merged, True
        elif effective == ConflictResolution.CUSTOM:
            if custom_value is None:
                raise InvalidResolutionError("CUSTOM resolution requires a custom_value")
            to_provider, push_provider = custom_value, True

        operations: List[str] = []
        converged: List[Tuple[SyncDirection, List[Optional[Resource]], Convergence]] = []
        provider: Optional[Connector] = None
        if push_provider or push_source:
            provider = self.connectors.get(conflict.tenant_id, conflict.provider_id)
        source = self.connectors.get_source(conflict.tenant_id)
        try:
            if push_provider:
                current_id = (provider_value or {}).get("id") or conflict.resource_id
                convergence = await self._converge(
                    provider,
                    conflict.resource_type,
                    str(current_id),
                    conflict.external_id,
                    to_provider,
                    origin=source if effective == ConflictResolution.USE_SOURCE_VALUE else None,
                )
                operations += convergence.operations
                converged.append((SyncDirection.SOURCE_TO_TARGET, [provider_value], convergence))
            if push_source:
                if source is not None:
                    current_id = (source_value or {}).get("id")
                    convergence = await self._converge(
                        source,
                        conflict.resource_type,
                        str(current_id) if current_id else None,
                        conflict.external_id,
                        to_source,
                        origin=provider,
                    )
                    operations += convergence.operations
                    converged.append((SyncDirection.TARGET_TO_SOURCE, [source_value], convergence))
                else:
                    logger.warning(
                        "No Source connector registered; Source keeps its value until updated upstream",
                        tenant_id=conflict.tenant_id,
                        conflict_id=conflict.id,
                    )
        except ConnectorError as e:
            await self._record_error(conflict.tenant_id, conflict.provider_id, e, conflict.resource_id)
            await self._audit_conflict(conflict, "ConflictResolutionFailed", actor, AuditOutcome.FAILURE,
                                       details={"resolution": resolution.value, "error_code": e.error_code})
            raise

        conflict.resolution = resolution
        conflict.custom_value = custom_value
        conflict.resolved = True
        conflict.resolved_at = utc_now()
        conflict.resolved_by = actor
        conflict.resolution_notes = notes

        def mutate(state: SyncState) -> None:
            state.pending_conflicts = [item for item in state.pending_conflicts if item.id != conflict.id]
            self._release_block(state, conflict.resource_key)
            state.conflict_log.append(
                ConflictLogEntry(
                    conflict_id=conflict.id,
                    conflict_type=conflict.conflict_type,
                    resource_type=conflict.resource_type,
                    resource_id=conflict.resource_id,
                    resolution=resolution,
                    resolved_by=actor,
                    notes=notes,
                )
            )
            for direction, stale, convergence in converged:
                self._record_convergence(state, conflict.resource_type, direction, stale, convergence)

        await self._write(conflict.tenant_id, conflict.provider_id, mutate)
        await self._audit_conflict(
            conflict,
            "ConflictResolved",
            actor,
            AuditOutcome.SUCCESS,
            before={"source": source_value, "provider": provider_value},
            after={"provider": to_provider, "source": to_source} if (push_provider or push_source) else None,
            details={"resolution": resolution.value, "applied": effective.value, "operations": operations},
        )
        logger.info(
            "Conflict resolved",
            tenant_id=conflict.tenant_id,
            provider_id=conflict.provider_id,
            conflict_id=conflict.id,
            resolution=resolution.value,
            actor=actor,
        )
        return conflict

    @staticmethod
    def _most_recent(conflict: ConflictReport) -> ConflictResolution:
        source_time: Optional[datetime] = conflict.source_change.timestamp if conflict.source_change else None
        provider_time: Optional[datetime] = conflict.provider_change.timestamp if conflict.provider_change else None
        if provider_time is None:
            return ConflictResolution.USE_SOURCE_VALUE
        if source_time is None:
            return ConflictResolution.USE_PROVIDER_VALUE
        # Ties go to the Source
        if provider_time > source_time:
            return ConflictResolution.USE_PROVIDER_VALUE
        return ConflictResolution.USE_SOURCE_VALUE

    @staticmethod
    def _merge(
        conflict: ConflictReport,
        source_value: Optional[Resource],
        provider_value: Optional[Resource],
    ) -> Resource:
        single_valued = [item.name for item in conflict.conflicting_attributes if not item.is_multi_valued]
        if single_valued:
            raise InvalidResolutionError(
                f"MERGE_VALUES only applies to multi-valued attributes; single-valued: {', '.join(single_valued)}"
            )
        if source_value is None or provider_value is None:
            raise InvalidResolutionError("MERGE_VALUES needs a value on both sides")

        merged = dict(provider_value)
        for item in conflict.conflicting_attributes:
            source_items = source_value.get(item.name) or []
            provider_items = provider_value.get(item.name) or []
            combined = list(provider_items)
            for entry in source_items:
                if entry not in combined:
                    combined.append(entry)
            merged[item.name] = combined
        return merged

    # ────────────────────────────────────────────────────────────────────────
    # Blocking
    # ────────────────────────────────────────────────────────────────────────

    async def block_sync(
        self,
        tenant_id: str,
        provider_id: str,
        resource_type: ResourceType,
        resource_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> None:
        key = resource_key(resource_type, resource_id)

        def mutate(state: SyncState) -> None:
            if key not in state.blocked_resources:
                state.blocked_resources.append(key)

        await self._write(tenant_id, provider_id, mutate)
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=tenant_id,
                provider_id=provider_id,
                actor=actor,
                operation="SyncBlocked",
                resource_type=resource_type.value,
                resource_id=resource_id,
                outcome=AuditOutcome.SUCCESS,
                details={"reason": reason} if reason else {},
            )
        )

    async def unblock_sync(
        self,
        tenant_id: str,
        provider_id: str,
        resource_type: ResourceType,
        resource_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> None:
        key = resource_key(resource_type, resource_id)

        def mutate(state: SyncState) -> None:
            if key in state.blocked_resources:
                state.blocked_resources.remove(key)

        await self._write(tenant_id, provider_id, mutate)
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=tenant_id,
                provider_id=provider_id,
                actor=actor,
                operation="SyncUnblocked",
                resource_type=resource_type.value,
                resource_id=resource_id,
                outcome=AuditOutcome.SUCCESS,
                details={"reason": reason} if reason else {},
            )
        )

    async def is_sync_blocked(
        self,
        tenant_id: str,
        provider_id: str,
        resource_type: ResourceType,
        resource_id: str,
    ) -> bool:
        await self._load(tenant_id, provider_id)
        return resource_key(resource_type, resource_id) in self._blocked[(tenant_id, provider_id)]

    # ────────────────────────────────────────────────────────────────────────
    # Queries
    # ────────────────────────────────────────────────────────────────────────

    async def get_pending_drift(self, tenant_id: str, provider_id: Optional[str] = None) -> List[DriftReport]:
        reports: List[DriftReport] = []
        for state in await self._states(tenant_id, provider_id):
            reports.extend(state.pending_drift)
        return sorted(reports, key=lambda report: report.timestamp)

    async def get_pending_conflicts(self, tenant_id: str, provider_id: Optional[str] = None) -> List[ConflictReport]:
        conflicts: List[ConflictReport] = []
        for state in await self._states(tenant_id, provider_id):
            conflicts.extend(state.pending_conflicts)
        return sorted(conflicts, key=lambda conflict: conflict.timestamp)

    async def get_drift(self, drift_id: str) -> DriftReport:
        for state in await self._states():
            for report in state.pending_drift:
                if report.id == drift_id:
                    return report
        raise ReportNotFoundError(f"Pending drift report {drift_id} not found")

    async def get_conflict(self, conflict_id: str) -> ConflictReport:
        for state in await self._states():
            for conflict in state.pending_conflicts:
                if conflict.id == conflict_id:
                    return conflict
        raise ReportNotFoundError(f"Pending conflict report {conflict_id} not found")

    # ────────────────────────────────────────────────────────────────────────
    # Recording helpers
    # ────────────────────────────────────────────────────────────────────────

    async def _record_error(
        self,
        tenant_id: str,
        provider_id: str,
        error: Exception,
        resource_id: Optional[str] = None,
    ) -> None:
        entry = SyncErrorEntry(
            error_code=error.error_code if isinstance(error, SyncEngineError) else type(error).__name__,
            message=str(error),
            resource_id=resource_id,
            is_transient=is_retryable_error(error),
        )

        def mutate(state: SyncState) -> None:
            state.error_log.append(entry)

        await self._write(tenant_id, provider_id, mutate)

    async def _notify(self, report: Any, severity: Severity) -> None:
        if self.notifier is None or severity.rank < self.options.notify_severity_threshold.rank:
            return
        try:
            await self.notifier(report)
        except Exception as e:
            logger.error(f"Notifier failed for report {report.id}: {e}", exc_info=True)

    @staticmethod
    def _log_entry(
        report: DriftReport,
        action: ReconciliationAction,
        actor: str,
        notes: Optional[str],
    ) -> DriftLogEntry:
        return DriftLogEntry(
            drift_id=report.id,
            drift_type=report.drift_type,
            resource_type=report.resource_type,
            resource_id=report.resource_id,
            severity=report.severity,
            action=action,
            actor=actor,
            notes=notes,
        )

    @staticmethod
    def _result(
        report: DriftReport,
        action: ReconciliationAction,
        outcome: AuditOutcome,
        success: bool,
        message: Optional[str] = None,
        operations: Optional[List[str]] = None,
        error_code: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            drift_id=report.id,
            resource_type=report.resource_type,
            resource_id=report.resource_id,
            action=action,
            outcome=outcome,
            success=success,
            message=message,
            operations=operations or [],
            error_code=error_code,
        )

    async def _audit(
        self,
        report: DriftReport,
        operation: str,
        actor: str,
        outcome: AuditOutcome,
        before: Any = None,
        after: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=report.tenant_id,
                provider_id=report.provider_id,
                actor=actor,
                operation=operation,
                resource_type=report.resource_type.value,
                resource_id=report.resource_id,
                before=before,
                after=after,
                outcome=outcome,
                details={"drift_id": report.id, "drift_type": report.drift_type.value, **(details or {})},
            )
        )

    async def _audit_conflict(
        self,
        conflict: ConflictReport,
        operation: str,
        actor: str,
        outcome: AuditOutcome,
        before: Any = None,
        after: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=conflict.tenant_id,
                provider_id=conflict.provider_id,
                actor=actor,
                operation=operation,
                resource_type=conflict.resource_type.value,
                resource_id=conflict.resource_id,
                before=before,
                after=after,
                outcome=outcome,
                details={"conflict_id": conflict.id, "conflict_type": conflict.conflict_type.value, **(details or {})},
            )
        )
