"""Connectors to the Source and to providers."""

from scim_sync.connectors.base import Connector
from scim_sync.connectors.base import ConnectorCapabilities
from scim_sync.connectors.base import ConnectorHealth
from scim_sync.connectors.base import PagedResult
from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.connectors.registry import ConnectorRegistry
from scim_sync.connectors.scim_http import ScimHttpConnector

__all__ = [
    "Connector",
    "ConnectorCapabilities",
    "ConnectorHealth",
    "ConnectorRegistry",
    "InMemoryConnector",
    "PagedResult",
    "ScimHttpConnector",
]
