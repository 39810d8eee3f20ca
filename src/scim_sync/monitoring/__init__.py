"""Monitoring package for logging and request context."""

from scim_sync.monitoring.request_context import RequestContextMiddleware
from scim_sync.monitoring.request_context import get_request_context

__all__ = [
    "RequestContextMiddleware",
    "get_request_context",
]
