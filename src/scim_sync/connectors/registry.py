"""Connector registry scoped to one service container."""

from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from loguru import logger

from scim_sync.connectors.base import Connector
from scim_sync.sync.exceptions import ConnectorNotRegisteredError


class ConnectorRegistry:
    """Provider connectors per (tenant, provider) and an optional Source connector per tenant."""

    def __init__(self):
        self._connectors: Dict[Tuple[str, str], Connector] = {}
        self._sources: Dict[str, Connector] = {}

    def register(self, connector: Connector) -> None:
        self._connectors[(connector.tenant_id, connector.provider_id)] = connector
        logger.info(
            "Connector registered",
            tenant_id=connector.tenant_id,
            provider_id=connector.provider_id,
            connector_type=type(connector).__name__,
        )

    def register_source(self, connector: Connector) -> None:
        """Register the Source-side connector used by TARGET_TO_SOURCE reconciliation."""
        self._sources[connector.tenant_id] = connector
        logger.info("Source connector registered", tenant_id=connector.tenant_id)

    def unregister(self, tenant_id: str, provider_id: str) -> None:
        self._connectors.pop((tenant_id, provider_id), None)

    def get(self, tenant_id: str, provider_id: str) -> Connector:
        connector = self._connectors.get((tenant_id, provider_id))
        if connector is None:
            raise ConnectorNotRegisteredError(f"No connector registered for {tenant_id}:{provider_id}")
        return connector

    def get_source(self, tenant_id: str) -> Optional[Connector]:
        return self._sources.get(tenant_id)

    def all_connectors(self) -> List[Connector]:
        """Provider connectors followed by Source connectors."""
        return list(self._connectors.values()) + list(self._sources.values())

    def pairs(self) -> List[Tuple[str, str]]:
        return sorted(self._connectors)

    def __contains__(self, pair: Tuple[str, str]) -> bool:
        return pair in self._connectors
