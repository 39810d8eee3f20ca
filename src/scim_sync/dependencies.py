"""FastAPI dependencies for accessing app state."""

from fastapi import Request

from scim_sync.monitoring.request_context import get_actor_from_headers
from scim_sync.services import SyncServices
from scim_sync.settings import Settings
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.polling import PollingService
from scim_sync.sync.reconciler import Reconciler
from scim_sync.transform.engine import TransformationEngine


def get_settings(request: Request) -> Settings:
    """
    Get application settings from request state.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    Settings
        Application settings instance
    """
    return request.app.state.settings


def get_services(request: Request) -> SyncServices:
    """
    Get the sync service container from app state.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    SyncServices
        Service container built at application creation
    """
    return request.app.state.services


def get_reconciler(request: Request) -> Reconciler:
    return get_services(request).reconciler


def get_polling_service(request: Request) -> PollingService:
    return get_services(request).polling


def get_direction_manager(request: Request) -> SyncDirectionManager:
    return get_services(request).direction_manager


def get_engine(request: Request) -> TransformationEngine:
    return get_services(request).engine


def get_actor(request: Request) -> str:
    """
    Get the operator identity recorded on audit entries.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    str
        Value of the X-Actor header, or "anonymous"
    """
    return get_actor_from_headers(request)
