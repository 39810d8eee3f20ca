"""Health check endpoints for monitoring application status."""

from datetime import datetime
from datetime import timezone

from fastapi import APIRouter
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

ROUTER_HEALTH = APIRouter(tags=["Health"])


@ROUTER_HEALTH.get(
    "/health",
    summary="Health check endpoint",
    description="Basic health check that returns application status and metadata",
    responses={
        status.HTTP_200_OK: {
            "description": "Application is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "timestamp": "2026-01-05T12:00:00.000000Z",
                        "service": "SCIM Sync Engine",
                        "version": "v1",
                        "active_schedules": 2,
                    }
                }
            },
        }
    },
)
async def health_check(request: Request):
    """
    Basic health check endpoint.

    Returns application status and metadata. This endpoint is lightweight
    and does not call the database or any connector.
    """
    settings = request.app.state.settings
    services = request.app.state.services

    response_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.service_name,
        "version": "v1",
        "active_schedules": len(services.polling.get_active_schedules()),
    }

    logger.debug("Health check requested", status="healthy")

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=response_data,
    )


@ROUTER_HEALTH.get(
    "/health/live",
    summary="Liveness probe",
    responses={status.HTTP_200_OK: {"description": "Process is alive"}},
)
async def liveness_check():
    """Liveness probe: the process is serving requests."""
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "alive"})


@ROUTER_HEALTH.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the sync database when one is configured",
    responses={
        status.HTTP_200_OK: {
            "description": "Ready to serve",
            "content": {"application/json": {"example": {"status": "ready", "database": "connected"}}},
        },
        status.HTTP_503_SERVICE_UNAVAILABLE: {
            "description": "Database unavailable",
            "content": {"application/json": {"example": {"status": "not_ready", "database": "unavailable"}}},
        },
    },
)
async def readiness_check(request: Request):
    """
    Readiness probe.

    Used by load balancers and Kubernetes readiness probes. In-memory
    deployments are always ready.
    """
    services = request.app.state.services
    if services.db_pool is None:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": "in-memory"})

    if await services.is_ready():
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": "connected"})

    logger.warning("Readiness check failed: sync database unavailable")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "unavailable"},
    )
