"""Operator endpoints for pending drift reports and conflicts."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from fastapi import status
from loguru import logger

from scim_sync.dependencies import get_actor
from scim_sync.dependencies import get_reconciler
from scim_sync.schemas.schemas_sync import ConflictListResponse
from scim_sync.schemas.schemas_sync import ConflictResolutionRequest
from scim_sync.schemas.schemas_sync import ConflictResolutionResponse
from scim_sync.schemas.schemas_sync import DriftListResponse
from scim_sync.schemas.schemas_sync import ManualReconciliationRequest
from scim_sync.schemas.schemas_sync import PendingReportsQueryParams
from scim_sync.schemas.schemas_sync import ReconciliationResponse
from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import DriftReport
from scim_sync.sync.reconciler import Reconciler

ROUTER_DRIFT = APIRouter(tags=["Drift"])

_NOT_FOUND = {
    "description": "No pending report with that id",
    "content": {"application/json": {"example": {"detail": "Pending drift report 1234 not found"}}},
}


@ROUTER_DRIFT.get(
    "/drift",
    response_model=DriftListResponse,
    responses={
        status.HTTP_200_OK: {
            "description": "Pending drift fetched successfully",
            "content": {"application/json": {"example": {"Message": "Fetched 2 pending drift reports", "Count": 2}}},
        }
    },
)
async def list_pending_drift(
    request: Request,
    query_params: PendingReportsQueryParams = Depends(),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """List drift reports awaiting review, oldest first."""
    logger.info(
        "Listing pending drift",
        tenant_id=query_params.tenant_id,
        provider_id=query_params.provider_id,
        method=request.method,
        path=request.url.path,
    )
    reports = await reconciler.get_pending_drift(query_params.tenant_id, query_params.provider_id)
    return DriftListResponse(
        Message=f"Fetched {len(reports)} pending drift reports",
        Count=len(reports),
        DriftReports=reports,
    )


##########################


@ROUTER_DRIFT.get(
    "/drift/{drift_id}",
    response_model=DriftReport,
    responses={status.HTTP_404_NOT_FOUND: _NOT_FOUND},
)
async def get_drift_report(drift_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    """Get one pending drift report."""
    return await reconciler.get_drift(drift_id)


@ROUTER_DRIFT.post(
    "/drift/{drift_id}/reconcile",
    response_model=ReconciliationResponse,
    responses={
        status.HTTP_404_NOT_FOUND: _NOT_FOUND,
        status.HTTP_200_OK: {"description": "Decision applied; Result.Success is false when applying failed"},
    },
)
async def reconcile_drift_report(
    request: Request,
    drift_id: str,
    body: ManualReconciliationRequest,
    reconciler: Reconciler = Depends(get_reconciler),
    actor: str = Depends(get_actor),
):
    """
    Approve or reject a pending drift report.

    Approval applies the change (in the active direction unless
    ``direction_override`` is given) and releases the resource's block.
    Rejection closes the report without changing either side.
    """
    logger.info(
        "Manual reconciliation requested",
        drift_id=drift_id,
        approve=body.approve,
        direction_override=body.direction_override.value if body.direction_override else None,
        actor=actor,
        method=request.method,
        path=request.url.path,
    )
    result = await reconciler.process_manual_reconciliation(
        drift_id,
        actor=actor,
        approve=body.approve,
        direction_override=body.direction_override,
        notes=body.notes,
    )
    message = "Drift reconciled" if result.success else f"Reconciliation failed: {result.message}"
    return ReconciliationResponse(Message=message, Result=result)


##########################


@ROUTER_DRIFT.get("/conflicts", response_model=ConflictListResponse)
async def list_pending_conflicts(
    request: Request,
    query_params: PendingReportsQueryParams = Depends(),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """List conflicts awaiting an explicit resolution, oldest first."""
    logger.info(
        "Listing pending conflicts",
        tenant_id=query_params.tenant_id,
        provider_id=query_params.provider_id,
        method=request.method,
        path=request.url.path,
    )
    conflicts = await reconciler.get_pending_conflicts(query_params.tenant_id, query_params.provider_id)
    return ConflictListResponse(
        Message=f"Fetched {len(conflicts)} pending conflicts",
        Count=len(conflicts),
        Conflicts=conflicts,
    )


@ROUTER_DRIFT.get(
    "/conflicts/{conflict_id}",
    response_model=ConflictReport,
    responses={status.HTTP_404_NOT_FOUND: _NOT_FOUND},
)
async def get_conflict_report(conflict_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    """Get one pending conflict report."""
    return await reconciler.get_conflict(conflict_id)


@ROUTER_DRIFT.post(
    "/conflicts/{conflict_id}/resolve",
    response_model=ConflictResolutionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: _NOT_FOUND,
        status.HTTP_400_BAD_REQUEST: {
            "description": "Resolution not applicable to this conflict",
            "content": {
                "application/json": {"example": {"detail": "CUSTOM resolution requires a custom_value"}}
            },
        },
    },
)
async def resolve_conflict(
    request: Request,
    conflict_id: str,
    body: ConflictResolutionRequest,
    reconciler: Reconciler = Depends(get_reconciler),
    actor: str = Depends(get_actor),
):
    """Resolve a conflict. The resolution is always explicit and is never inferred."""
    logger.info(
        "Conflict resolution requested",
        conflict_id=conflict_id,
        resolution=body.resolution.value,
        actor=actor,
        method=request.method,
        path=request.url.path,
    )
    conflict = await reconciler.reconcile_conflict(
        conflict_id,
        body.resolution,
        actor=actor,
        notes=body.notes,
        custom_value=body.custom_value,
    )
    return ConflictResolutionResponse(Message="Conflict resolved", Conflict=conflict)
