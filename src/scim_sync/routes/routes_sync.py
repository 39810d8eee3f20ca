"""Operator endpoints for sync pairs: direction, polling, schedules and state."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request
from fastapi import status
from loguru import logger

from scim_sync.dependencies import get_actor
from scim_sync.dependencies import get_direction_manager
from scim_sync.dependencies import get_polling_service
from scim_sync.dependencies import get_reconciler
from scim_sync.dependencies import get_services
from scim_sync.schemas.schemas_sync import BlockSyncRequest
from scim_sync.schemas.schemas_sync import ComparisonResponse
from scim_sync.schemas.schemas_sync import PollResponse
from scim_sync.schemas.schemas_sync import PollResultsResponse
from scim_sync.schemas.schemas_sync import RecentResultsQueryParams
from scim_sync.schemas.schemas_sync import ScheduleListResponse
from scim_sync.schemas.schemas_sync import ScheduleResponse
from scim_sync.schemas.schemas_sync import SetSyncDirectionRequest
from scim_sync.schemas.schemas_sync import StartPollingRequest
from scim_sync.schemas.schemas_sync import SyncDirectionResponse
from scim_sync.schemas.schemas_sync import SyncStateResponse
from scim_sync.schemas.schemas_sync import UpdateScheduleRequest
from scim_sync.services import SyncServices
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.polling import PollingService
from scim_sync.sync.reconciler import Reconciler

ROUTER_SYNC = APIRouter(tags=["Sync"])

# Errors kept in the state summary
RECENT_ERROR_COUNT = 10

_PAIR_NOT_FOUND = {
    "description": "No connector registered for the pair",
    "content": {"application/json": {"example": {"detail": "No connector registered for acme:okta"}}},
}


@ROUTER_SYNC.get("/sync/schedules", response_model=ScheduleListResponse)
async def list_active_schedules(polling: PollingService = Depends(get_polling_service)):
    """List every enabled poll schedule."""
    schedules = polling.get_active_schedules()
    return ScheduleListResponse(
        Message=f"Fetched {len(schedules)} active schedules",
        Count=len(schedules),
        Schedules=schedules,
    )


# ════════════════════════════════════════════════════════════════════════════
# Direction
# ════════════════════════════════════════════════════════════════════════════


@ROUTER_SYNC.get("/sync/{tenant_id}/{provider_id}/direction", response_model=SyncDirectionResponse)
async def get_sync_direction(
    tenant_id: str,
    provider_id: str,
    direction_manager: SyncDirectionManager = Depends(get_direction_manager),
):
    """Get the active direction. The first read of a new pair selects and audits the default."""
    direction = await direction_manager.get_direction(tenant_id, provider_id)
    return SyncDirectionResponse(TenantId=tenant_id, ProviderId=provider_id, Direction=direction)


@ROUTER_SYNC.put("/sync/{tenant_id}/{provider_id}/direction", response_model=SyncDirectionResponse)
async def set_sync_direction(
    request: Request,
    tenant_id: str,
    provider_id: str,
    body: SetSyncDirectionRequest,
    direction_manager: SyncDirectionManager = Depends(get_direction_manager),
    actor: str = Depends(get_actor),
):
    """Switch the active direction. Takes effect from the next cycle."""
    logger.info(
        "Sync direction change requested",
        tenant_id=tenant_id,
        provider_id=provider_id,
        direction=body.direction.value,
        actor=actor,
        method=request.method,
        path=request.url.path,
    )
    direction = await direction_manager.set_direction(
        tenant_id, provider_id, body.direction, actor=actor, reason=body.reason
    )
    return SyncDirectionResponse(TenantId=tenant_id, ProviderId=provider_id, Direction=direction)


# ════════════════════════════════════════════════════════════════════════════
# Polling
# ════════════════════════════════════════════════════════════════════════════


@ROUTER_SYNC.post(
    "/sync/{tenant_id}/{provider_id}/poll",
    response_model=PollResponse,
    responses={status.HTTP_404_NOT_FOUND: _PAIR_NOT_FOUND},
)
async def trigger_poll(
    request: Request,
    tenant_id: str,
    provider_id: str,
    polling: PollingService = Depends(get_polling_service),
):
    """
    Run one poll cycle now.

    Failures are reported in the result rather than as an HTTP error, and
    count towards the pair's backoff like a scheduled cycle.
    """
    logger.info(
        "On-demand poll requested",
        tenant_id=tenant_id,
        provider_id=provider_id,
        method=request.method,
        path=request.url.path,
    )
    result = await polling.trigger_poll(tenant_id, provider_id)
    message = "Poll completed" if result.success else f"Poll failed: {result.error_message}"
    return PollResponse(Message=message, Result=result)


@ROUTER_SYNC.get(
    "/sync/{tenant_id}/{provider_id}/comparison",
    response_model=ComparisonResponse,
    responses={status.HTTP_404_NOT_FOUND: _PAIR_NOT_FOUND},
)
async def compare_sides(
    tenant_id: str,
    provider_id: str,
    polling: PollingService = Depends(get_polling_service),
):
    """Compare the tenant's Source with the provider now. Nothing is reconciled."""
    result = await polling.compare_sides(tenant_id, provider_id)
    return ComparisonResponse(Message=f"Found {len(result.drift_reports)} differences", Result=result)


@ROUTER_SYNC.post(
    "/sync/{tenant_id}/{provider_id}/polling",
    response_model=ScheduleResponse,
    responses={status.HTTP_404_NOT_FOUND: _PAIR_NOT_FOUND},
)
async def start_polling(
    tenant_id: str,
    provider_id: str,
    body: StartPollingRequest,
    polling: PollingService = Depends(get_polling_service),
):
    """Start (or restart) the pair's poll schedule. Intervals are clamped to the configured bounds."""
    schedule = await polling.start_polling(
        tenant_id,
        provider_id,
        interval_seconds=body.interval_seconds,
        strategy=body.strategy,
        run_immediately=body.run_immediately,
    )
    return ScheduleResponse(Message="Polling started", Schedule=schedule)


@ROUTER_SYNC.delete("/sync/{tenant_id}/{provider_id}/polling", response_model=ScheduleResponse)
async def stop_polling(
    tenant_id: str,
    provider_id: str,
    polling: PollingService = Depends(get_polling_service),
):
    """Stop the pair's poll schedule; an in-flight cycle finishes."""
    stopped = await polling.stop_polling(tenant_id, provider_id)
    if not stopped:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No poll schedule for {tenant_id}:{provider_id}",
        )
    return ScheduleResponse(Message="Polling stopped", Schedule=polling.get_schedule(tenant_id, provider_id))


@ROUTER_SYNC.get("/sync/{tenant_id}/{provider_id}/schedule", response_model=ScheduleResponse)
async def get_schedule(
    tenant_id: str,
    provider_id: str,
    polling: PollingService = Depends(get_polling_service),
):
    """Get the pair's schedule and backoff state."""
    schedule = polling.get_schedule(tenant_id, provider_id)
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No poll schedule for {tenant_id}:{provider_id}",
        )
    return ScheduleResponse(Message="Schedule fetched", Schedule=schedule)


@ROUTER_SYNC.put(
    "/sync/{tenant_id}/{provider_id}/schedule",
    response_model=ScheduleResponse,
    responses={status.HTTP_404_NOT_FOUND: _PAIR_NOT_FOUND},
)
async def update_schedule(
    tenant_id: str,
    provider_id: str,
    body: UpdateScheduleRequest,
    polling: PollingService = Depends(get_polling_service),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Change interval, enablement or strategy of the pair's schedule."""
    schedule = polling.update_schedule(
        tenant_id,
        provider_id,
        interval_seconds=body.interval_seconds,
        enabled=body.enabled,
        strategy=body.strategy,
    )
    if body.strategy is not None:
        reconciler.set_strategy(tenant_id, provider_id, body.strategy)
    return ScheduleResponse(Message="Schedule updated", Schedule=schedule)


@ROUTER_SYNC.get("/sync/{tenant_id}/{provider_id}/results", response_model=PollResultsResponse)
async def list_poll_results(
    tenant_id: str,
    provider_id: str,
    query_params: RecentResultsQueryParams = Depends(),
    polling: PollingService = Depends(get_polling_service),
):
    """Recent poll results of the pair, most recent first."""
    results = polling.get_recent_results(tenant_id, provider_id, limit=query_params.limit)
    return PollResultsResponse(Message=f"Fetched {len(results)} poll results", Count=len(results), Results=results)


# ════════════════════════════════════════════════════════════════════════════
# State and blocking
# ════════════════════════════════════════════════════════════════════════════


@ROUTER_SYNC.get("/sync/{tenant_id}/{provider_id}/state", response_model=SyncStateResponse)
async def get_sync_state(
    tenant_id: str,
    provider_id: str,
    services: SyncServices = Depends(get_services),
):
    """Summary of the pair's persisted SyncState."""
    state = await services.sync_state_store.get(tenant_id, provider_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sync state for {tenant_id}:{provider_id}",
        )
    return SyncStateResponse(
        TenantId=state.tenant_id,
        ProviderId=state.provider_id,
        Status=state.status,
        Direction=state.sync_direction,
        LastSyncTimestamp=state.last_sync_timestamp,
        SnapshotChecksum=state.snapshot_checksum,
        SnapshotTimestamp=state.snapshot_timestamp,
        UserCount=state.user_count,
        GroupCount=state.group_count,
        PendingDriftCount=len(state.pending_drift),
        PendingConflictCount=len(state.pending_conflicts),
        BlockedResources=state.blocked_resources,
        RecentErrors=state.error_log[-RECENT_ERROR_COUNT:],
        Version=state.version,
    )


@ROUTER_SYNC.post(
    "/sync/{tenant_id}/{provider_id}/blocks/{resource_type}/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def block_resource(
    tenant_id: str,
    provider_id: str,
    resource_type: ResourceType,
    resource_id: str,
    body: BlockSyncRequest,
    reconciler: Reconciler = Depends(get_reconciler),
    actor: str = Depends(get_actor),
):
    """Exclude a resource from automatic reconciliation until unblocked."""
    await reconciler.block_sync(tenant_id, provider_id, resource_type, resource_id, actor=actor, reason=body.reason)


@ROUTER_SYNC.delete(
    "/sync/{tenant_id}/{provider_id}/blocks/{resource_type}/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def unblock_resource(
    tenant_id: str,
    provider_id: str,
    resource_type: ResourceType,
    resource_id: str,
    reconciler: Reconciler = Depends(get_reconciler),
    actor: str = Depends(get_actor),
):
    """Release a resource's block."""
    await reconciler.unblock_sync(tenant_id, provider_id, resource_type, resource_id, actor=actor)
