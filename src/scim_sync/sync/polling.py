"""
Polling Service

Timer-driven poll cycles, one independent schedule per (tenant, provider)
pair. A cycle runs under the pair's lock:

1. capture the active sync direction
2. health-check and page through the provider, and the Source when one is
   registered
3. short-circuit when neither side changed since the last known state
4. detect changes per side, register the resources changed on both sides as
   conflicts and reconcile the rest
5. write the new last known state of both sides

Failures move the schedule through the backoff state machine and never
touch the last good snapshot.
"""

import asyncio
from collections import deque
from datetime import datetime
from datetime import timedelta
from typing import Deque
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
from scim_sync.sync.alerts import AlertSink
from scim_sync.sync.alerts import LoggingAlertSink
from scim_sync.sync.alerts import OperationalAlert
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.backoff import BackoffPolicy
from scim_sync.sync.change_detector import ChangeDetector
from scim_sync.sync.change_detector import change_identity
from scim_sync.sync.change_detector import replace_resource
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import ChangeOrigin
from scim_sync.sync.enums import ConnectorHealthStatus
from scim_sync.sync.enums import PollState
from scim_sync.sync.enums import ReconciliationAction
from scim_sync.sync.enums import ReconciliationStrategy
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.enums import SyncStatus
from scim_sync.sync.exceptions import ConnectorNotRegisteredError
from scim_sync.sync.exceptions import ConnectorUnhealthyError
from scim_sync.sync.exceptions import SyncEngineError
from scim_sync.sync.exceptions import is_retryable_error
from scim_sync.sync.models import AuditEntry
from scim_sync.sync.models import ChangeDetectionResult
from scim_sync.sync.models import DriftReport
from scim_sync.sync.models import ReconciliationResult
from scim_sync.sync.models import SnapshotRecord
from scim_sync.sync.models import StateSnapshot
from scim_sync.sync.models import SyncErrorEntry
from scim_sync.sync.models import SyncState
from scim_sync.sync.models import utc_now
from scim_sync.sync.reconciler import Reconciler
from scim_sync.sync.reconciler import target_record

PairKey = Tuple[str, str]


class PollSchedule(BaseModel):
    """Schedule and backoff state of one pair."""

    tenant_id: str
    provider_id: str
    interval_seconds: int
    enabled: bool = True
    strategy: Optional[ReconciliationStrategy] = None  # None: the reconciler's configured strategy
    state: PollState = PollState.IDLE
    last_poll: Optional[datetime] = None
    next_poll: Optional[datetime] = None
    consecutive_failures: int = 0
    current_delay_seconds: float = 0.0
    in_cooldown: bool = False
    backoff_until: Optional[datetime] = None
    alert_fired: bool = False


class PollingResult(BaseModel):
    """Outcome of one poll cycle."""

    tenant_id: str
    provider_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: bool = False
    unchanged: bool = False
    baseline: bool = False
    users_polled: int = 0
    groups_polled: int = 0
    detection: Optional[ChangeDetectionResult] = None
    reconciliation: List[ReconciliationResult] = Field(default_factory=list)
    snapshot: Optional[SnapshotRecord] = None
    sync_direction: Optional[SyncDirection] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_attempt: int = 0


class PollingOptions(BaseModel):
    default_interval_seconds: int = 300
    min_interval_seconds: int = 60
    max_interval_seconds: int = 86400
    page_size: int = 100
    max_recent_results: int = 100


class PollingService:
    """Runs poll cycles on per-pair timers and on demand."""

    def __init__(
        self,
        store: SyncStateStore,
        connectors: ConnectorRegistry,
        reconciler: Reconciler,
        direction_manager: SyncDirectionManager,
        audit_sink: AuditSink,
        backoff: Optional[BackoffPolicy] = None,
        alert_sink: Optional[AlertSink] = None,
        detector: Optional[ChangeDetector] = None,
        options: Optional[PollingOptions] = None,
    ):
        self.store = store
        self.connectors = connectors
        self.reconciler = reconciler
        self.direction_manager = direction_manager
        self.audit_sink = audit_sink
        self.backoff = backoff or BackoffPolicy()
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.detector = detector or ChangeDetector()
        self.options = options or PollingOptions()

        self._schedules: Dict[PairKey, PollSchedule] = {}
        self._locks: Dict[PairKey, asyncio.Lock] = {}
        self._timers: Dict[PairKey, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._results: Deque[PollingResult] = deque(maxlen=self.options.max_recent_results)
        self._last_results: Dict[PairKey, PollingResult] = {}
        self._shutting_down = False

    # ────────────────────────────────────────────────────────────────────────
    # Schedules
    # ────────────────────────────────────────────────────────────────────────

    def clamp_interval(self, interval_seconds: Optional[int]) -> int:
        """Requested interval forced into the configured bounds."""
        if interval_seconds is None:
            interval_seconds = self.options.default_interval_seconds
        clamped = max(self.options.min_interval_seconds, min(interval_seconds, self.options.max_interval_seconds))
        if clamped != interval_seconds:
            logger.warning("Poll interval clamped", requested=interval_seconds, applied=clamped)
        return clamped

    async def start_polling(
        self,
        tenant_id: str,
        provider_id: str,
        interval_seconds: Optional[int] = None,
        strategy: Optional[ReconciliationStrategy] = None,
        run_immediately: bool = False,
    ) -> PollSchedule:
        """
        Start (or restart) the schedule of a pair.

        Raises:
            ConnectorNotRegisteredError: no connector for the pair
        """
        self.connectors.get(tenant_id, provider_id)
        pair = (tenant_id, provider_id)
        schedule = self._schedules.get(pair) or PollSchedule(
            tenant_id=tenant_id,
            provider_id=provider_id,
            interval_seconds=self.clamp_interval(interval_seconds),
        )
        if interval_seconds is not None:
            schedule.interval_seconds = self.clamp_interval(interval_seconds)
        if strategy is not None:
            schedule.strategy = strategy
        schedule.enabled = True
        self._schedules[pair] = schedule

        self._arm(pair, 0 if run_immediately else schedule.interval_seconds)
        logger.info(
            "Polling started",
            tenant_id=tenant_id,
            provider_id=provider_id,
            interval_seconds=schedule.interval_seconds,
        )
        return schedule

    async def stop_polling(self, tenant_id: str, provider_id: str) -> bool:
        """Disable a pair's schedule. An in-flight cycle is allowed to finish."""
        pair = (tenant_id, provider_id)
        schedule = self._schedules.get(pair)
        self._disarm(pair)
        if schedule is None:
            return False
        schedule.enabled = False
        schedule.next_poll = None
        logger.info("Polling stopped", tenant_id=tenant_id, provider_id=provider_id)
        return True

    def get_schedule(self, tenant_id: str, provider_id: str) -> Optional[PollSchedule]:
        return self._schedules.get((tenant_id, provider_id))

    def get_active_schedules(self) -> List[PollSchedule]:
        return [schedule for _, schedule in sorted(self._schedules.items()) if schedule.enabled]

    def update_schedule(
        self,
        tenant_id: str,
        provider_id: str,
        interval_seconds: Optional[int] = None,
        enabled: Optional[bool] = None,
        strategy: Optional[ReconciliationStrategy] = None,
    ) -> PollSchedule:
        """Change interval, enablement or strategy. A changed interval re-arms the timer."""
        self.connectors.get(tenant_id, provider_id)
        pair = (tenant_id, provider_id)
        schedule = self._schedules.get(pair)
        if schedule is None:
            schedule = PollSchedule(
                tenant_id=tenant_id,
                provider_id=provider_id,
                interval_seconds=self.clamp_interval(interval_seconds),
                enabled=False,
            )
            self._schedules[pair] = schedule

        if interval_seconds is not None:
            schedule.interval_seconds = self.clamp_interval(interval_seconds)
        if strategy is not None:
            schedule.strategy = strategy
        if enabled is not None:
            schedule.enabled = enabled

        if not schedule.enabled:
            self._disarm(pair)
            schedule.next_poll = None
        elif schedule.state != PollState.BACKOFF:
            self._arm(pair, schedule.interval_seconds)
        return schedule

    def get_last_result(self, tenant_id: str, provider_id: str) -> Optional[PollingResult]:
        return self._last_results.get((tenant_id, provider_id))

    def get_recent_results(
        self,
        tenant_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[PollingResult]:
        """Most recent first."""
        results = [
            result
            for result in reversed(self._results)
            if (tenant_id is None or result.tenant_id == tenant_id)
            and (provider_id is None or result.provider_id == provider_id)
        ]
        return results[:limit] if limit else results

    # ────────────────────────────────────────────────────────────────────────
    # Timers
    # ────────────────────────────────────────────────────────────────────────

    def _arm(self, pair: PairKey, delay_seconds: float) -> None:
        self._disarm(pair)
        if self._shutting_down:
            return
        delay_seconds = max(delay_seconds, 0.0)
        loop = asyncio.get_running_loop()
        self._timers[pair] = loop.call_later(delay_seconds, self._on_timer, pair)
        schedule = self._schedules.get(pair)
        if schedule is not None and schedule.state != PollState.BACKOFF:
            schedule.next_poll = utc_now() + timedelta(seconds=delay_seconds)

    def _disarm(self, pair: PairKey) -> None:
        timer = self._timers.pop(pair, None)
        if timer is not None:
            timer.cancel()

    def _on_timer(self, pair: PairKey) -> None:
        self._timers.pop(pair, None)
        task = asyncio.create_task(self._scheduled_poll(pair))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _scheduled_poll(self, pair: PairKey) -> None:
        schedule = self._schedules.get(pair)
        if schedule is None or not schedule.enabled or self._shutting_down:
            return

        now = utc_now()
        if self.backoff.should_skip(schedule, now):
            remaining = (schedule.backoff_until - now).total_seconds()
            logger.info(
                "Pair in cool-down, skipping scheduled poll",
                tenant_id=pair[0],
                provider_id=pair[1],
                backoff_until=schedule.backoff_until,
            )
            self._arm(pair, remaining)
            return

        await self._run_cycle(pair[0], pair[1])

        if schedule.enabled and not self._shutting_down:
            delay = schedule.interval_seconds
            if schedule.next_poll is not None:
                delay = (schedule.next_poll - utc_now()).total_seconds()
            self._arm(pair, delay)

    # ────────────────────────────────────────────────────────────────────────
    # Poll cycle
    # ────────────────────────────────────────────────────────────────────────

    async def trigger_poll(self, tenant_id: str, provider_id: str) -> PollingResult:
        """
        Run one cycle now, outside the schedule.

        Waits for an in-flight cycle of the same pair to finish first. The
        cycle counts towards backoff accounting like a scheduled one.
        """
        self.connectors.get(tenant_id, provider_id)
        logger.info("Poll triggered on demand", tenant_id=tenant_id, provider_id=provider_id)
        return await self._run_cycle(tenant_id, provider_id)

    async def _run_cycle(self, tenant_id: str, provider_id: str) -> PollingResult:
        pair = (tenant_id, provider_id)
        lock = self._locks.setdefault(pair, asyncio.Lock())
        async with lock:
            schedule = self._schedules.get(pair)
            if schedule is None:
                # On-demand poll of an unscheduled pair still tracks backoff state
                schedule = PollSchedule(
                    tenant_id=tenant_id,
                    provider_id=provider_id,
                    interval_seconds=self.clamp_interval(None),
                    enabled=False,
                )
                self._schedules[pair] = schedule

            started = utc_now()
            self.backoff.on_poll_started(schedule, started)
            result = PollingResult(tenant_id=tenant_id, provider_id=provider_id, started_at=started)
            with logger.contextualize(tenant_id=tenant_id, provider_id=provider_id):
                try:
                    await self._poll(schedule, result)
                    self.backoff.on_success(schedule, utc_now())
                except Exception as e:
                    await self._handle_failure(schedule, result, e)

            result.completed_at = utc_now()
            self._results.append(result)
            self._last_results[pair] = result
            return result

    async def _poll(self, schedule: PollSchedule, result: PollingResult) -> None:
        tenant_id, provider_id = schedule.tenant_id, schedule.provider_id

        # The direction in force when the cycle started applies to the whole cycle
        direction = await self.direction_manager.get_direction(tenant_id, provider_id)
        result.sync_direction = direction

        snapshot = await self._snapshot(self.connectors.get(tenant_id, provider_id))
        result.users_polled = len(snapshot.users)
        result.groups_polled = len(snapshot.groups)

        source = self.connectors.get_source(tenant_id)
        source_snapshot = await self._snapshot(source) if source is not None else None

        state = await self.store.get_or_create(tenant_id, provider_id)
        checksum = self.detector.compute_state_hash(snapshot)

        if state.last_known_state is None:
            result.snapshot = await self._write_snapshot(
                schedule, snapshot, checksum, SyncStatus.COMPLETED, source_baseline=source_snapshot
            )
            result.baseline = True
            result.success = True
            logger.success("Baseline snapshot recorded", users=result.users_polled, groups=result.groups_polled)
            return

        previous_source = state.last_known_source_state
        source_unchanged = source_snapshot is None or (
            previous_source is not None
            and self.detector.compute_state_hash(previous_source) == self.detector.compute_state_hash(source_snapshot)
        )
        if state.snapshot_checksum == checksum and source_unchanged:
            result.snapshot = await self._write_snapshot(schedule, None, checksum, SyncStatus.COMPLETED)
            result.unchanged = True
            result.success = True
            logger.debug("Snapshot unchanged, skipping detection")
            return

        detection = self.detector.detect_changes(
            tenant_id, provider_id, state.last_known_state, snapshot, sync_direction=direction
        )
        source_reports: List[DriftReport] = []
        if source_snapshot is not None and previous_source is not None:
            source_reports = self.detector.detect_changes(
                tenant_id,
                provider_id,
                previous_source,
                source_snapshot,
                sync_direction=direction,
                origin=ChangeOrigin.SOURCE,
            ).drift_reports
        elif source_snapshot is not None:
            logger.info("First Source snapshot recorded", users=len(source_snapshot.users))

        conflicts = self.detector.detect_conflicts(tenant_id, provider_id, source_reports, detection.drift_reports)
        if conflicts:
            await self.reconciler.register_conflicts(tenant_id, provider_id, conflicts)
        detection.conflict_reports = conflicts
        contested = {
            f"{conflict.resource_type.value}:{conflict.external_id or conflict.resource_id}" for conflict in conflicts
        }

        reports = [report for report in detection.drift_reports if change_identity(report) not in contested]
        reports += [
            self._towards_provider(report, snapshot)
            for report in source_reports
            if change_identity(report) not in contested
        ]
        if reports:
            result.reconciliation = await self.reconciler.reconcile_batch(
                tenant_id,
                provider_id,
                reports,
                strategy=schedule.strategy,
                active_direction=direction,
            )

        baseline, source_baseline = self._next_baselines(
            snapshot, source_snapshot, reports, source_reports, result.reconciliation
        )
        partial = any(not item.success for item in result.reconciliation)
        status = SyncStatus.PARTIAL_FAILURE if partial else SyncStatus.COMPLETED
        result.snapshot = await self._write_snapshot(
            schedule, baseline, self.detector.compute_state_hash(baseline), status, source_baseline=source_baseline
        )
        result.success = True
        logger.info(
            "Poll cycle completed",
            users=result.users_polled,
            groups=result.groups_polled,
            drift=len(reports),
            conflicts=len(conflicts),
            status=status.value,
        )

    async def _snapshot(self, connector: Connector) -> StateSnapshot:
        """Health-check ``connector`` and page through all of its users and groups."""
        health = await connector.check_health()
        if health.status == ConnectorHealthStatus.UNHEALTHY:
            raise ConnectorUnhealthyError(
                f"Connector {connector.tenant_id}:{connector.provider_id} is unhealthy: "
                f"{health.message or 'no detail'}"
            )
        page_size = min(self.options.page_size, connector.get_capabilities().max_page_size)
        return StateSnapshot(
            users=await self._fetch_all(connector, ResourceType.USER, page_size),
            groups=await self._fetch_all(connector, ResourceType.GROUP, page_size),
        )

    @staticmethod
    async def _fetch_all(connector: Connector, resource_type: ResourceType, page_size: int) -> List[Resource]:
        """Page through a listing until the declared total is reached."""
        resources: List[Resource] = []
        start_index = 1
        while True:
            page = await connector.list_resources(resource_type, start_index=start_index, count=page_size)
            resources.extend(page.resources)
            start_index += len(page.resources)
            if not page.resources or len(resources) >= page.total_results:
                return resources

    @staticmethod
    def _towards_provider(report: DriftReport, snapshot: StateSnapshot) -> DriftReport:
        """
        Restate a change seen on the Source as the Source's new value against
        the provider's current record, matched by externalId.
        """
        value = report.provider_state if report.provider_state is not None else report.source_state
        external_id = (value or {}).get("externalId")
        counterpart = None
        if external_id:
            counterpart = next(
                (item for item in snapshot.resources(report.resource_type) if item.get("externalId") == external_id),
                None,
            )
        update = {"source_state": report.provider_state, "provider_state": counterpart}
        if counterpart is not None:
            update["resource_id"] = str(counterpart["id"])
        return report.model_copy(update=update)

    @staticmethod
    def _next_baselines(
        snapshot: StateSnapshot,
        source_snapshot: Optional[StateSnapshot],
        reports: List[DriftReport],
        source_reports: List[DriftReport],
        results: List[ReconciliationResult],
    ) -> Tuple[StateSnapshot, Optional[StateSnapshot]]:
        """
        Last known state of both sides for the next cycle.

        Resources converged this cycle are recorded as converged. Changes that
        failed or were skipped as blocked keep their previous entry, so the
        next cycle sees them again. Everything else is recorded as observed.
        """
        outcomes = {item.drift_id: item for item in results}
        observed_on_source = {report.id: report for report in source_reports}
        baseline, source_baseline = snapshot, source_snapshot
        for report in reports:
            outcome = outcomes.get(report.id)
            if outcome is None:
                continue
            if outcome.action in (ReconciliationAction.FAILED, ReconciliationAction.SKIPPED_BLOCKED):
                original = observed_on_source.get(report.id)
                if original is None:
                    baseline = replace_resource(
                        baseline, report.resource_type, [report.provider_state], report.source_state
                    )
                elif source_baseline is not None:
                    source_baseline = replace_resource(
                        source_baseline, report.resource_type, [original.provider_state], original.source_state
                    )
            elif outcome.sync_direction is not None:
                stale = [outcome.converged_before, target_record(report, outcome.sync_direction)]
                if outcome.sync_direction == SyncDirection.SOURCE_TO_TARGET:
                    baseline = replace_resource(baseline, report.resource_type, stale, outcome.converged_after)
                elif source_baseline is not None:
                    source_baseline = replace_resource(
                        source_baseline, report.resource_type, stale, outcome.converged_after
                    )
        return baseline, source_baseline

    async def _write_snapshot(
        self,
        schedule: PollSchedule,
        baseline: Optional[StateSnapshot],
        checksum: str,
        status: SyncStatus,
        source_baseline: Optional[StateSnapshot] = None,
    ) -> SnapshotRecord:
        now = utc_now()
        record = {}

        def mutate(state: SyncState) -> None:
            if baseline is not None:
                state.last_known_state = baseline
                state.user_count = len(baseline.users)
                state.group_count = len(baseline.groups)
            if source_baseline is not None:
                state.last_known_source_state = source_baseline
            state.snapshot_checksum = checksum
            state.snapshot_timestamp = now
            state.last_sync_timestamp = now
            state.status = status
            record["user_count"] = state.user_count
            record["group_count"] = state.group_count

        await self.store.update(schedule.tenant_id, schedule.provider_id, mutate)
        return SnapshotRecord(checksum=checksum, timestamp=now, **record)

    async def _handle_failure(self, schedule: PollSchedule, result: PollingResult, error: Exception) -> None:
        error_code = error.error_code if isinstance(error, SyncEngineError) else type(error).__name__
        message = error.message if isinstance(error, SyncEngineError) else str(error)
        retry_after = getattr(error, "retry_after", None)
        decision = self.backoff.on_failure(schedule, utc_now(), retry_after=retry_after)

        result.success = False
        result.error_code = error_code
        result.error_message = message
        result.retry_attempt = schedule.consecutive_failures

        logger.warning(
            f"Poll cycle failed: {message}",
            error_code=error_code,
            consecutive_failures=schedule.consecutive_failures,
            delay_seconds=decision.delay_seconds,
            in_cooldown=decision.in_cooldown,
        )

        entry = SyncErrorEntry(
            error_code=error_code,
            message=message,
            is_transient=is_retryable_error(error),
            retry_count=schedule.consecutive_failures,
        )

        def mutate(state: SyncState) -> None:
            # The last good snapshot is left untouched
            state.status = SyncStatus.FAILED
            state.error_log.append(entry)

        try:
            await self.store.update(schedule.tenant_id, schedule.provider_id, mutate)
        except Exception as e:
            logger.error(f"Could not record poll failure in SyncState: {e}", exc_info=True)

        await self.audit_sink.record(
            AuditEntry(
                tenant_id=schedule.tenant_id,
                provider_id=schedule.provider_id,
                operation="PollFailed",
                resource_type="SyncState",
                outcome=AuditOutcome.FAILURE,
                details={
                    "error_code": error_code,
                    "message": message,
                    "consecutive_failures": schedule.consecutive_failures,
                    "next_poll": decision.next_poll.isoformat(),
                },
            )
        )

        if decision.alert:
            await self.alert_sink.send(
                OperationalAlert(
                    tenant_id=schedule.tenant_id,
                    provider_id=schedule.provider_id,
                    consecutive_failures=schedule.consecutive_failures,
                    error_code=error_code,
                    message=message,
                    backoff_until=schedule.backoff_until,
                )
            )

    async def compare_sides(self, tenant_id: str, provider_id: str) -> ChangeDetectionResult:
        """
        Live comparison of the Source against the provider, without reconciling.

        Raises:
            ConnectorNotRegisteredError: no provider connector for the pair, or no Source for the tenant
        """
        connector = self.connectors.get(tenant_id, provider_id)
        source = self.connectors.get_source(tenant_id)
        if source is None:
            raise ConnectorNotRegisteredError(f"No Source connector registered for tenant {tenant_id}")
        direction = await self.direction_manager.get_direction(tenant_id, provider_id)
        detection = self.detector.detect_drift(
            tenant_id,
            provider_id,
            await self._snapshot(source),
            await self._snapshot(connector),
            sync_direction=direction,
        )
        logger.info(
            "Source and provider compared",
            tenant_id=tenant_id,
            provider_id=provider_id,
            drift=len(detection.drift_reports),
        )
        return detection

    # ────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel pending timers and wait for in-flight cycles to write their snapshots."""
        self._shutting_down = True
        for pair in list(self._timers):
            self._disarm(pair)
        if self._tasks:
            logger.info("Waiting for in-flight poll cycles", count=len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Polling service stopped")
