"""
Connector Interface

The single capability-set contract every provider (and the Source) is
reached through. Code outside a connector implementation never branches on
provider identity; it asks ``get_capabilities`` and ``check_health`` instead.
"""

from abc import ABC
from abc import abstractmethod
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import TYPE_CHECKING

from pydantic import BaseModel
from pydantic import Field

from scim_sync.sync.enums import ConnectorHealthStatus
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.exceptions import TransformationError
from scim_sync.sync.models import utc_now
from scim_sync.transform.models import Entitlement

if TYPE_CHECKING:
    from scim_sync.transform.engine import TransformationEngine

Resource = Dict[str, Any]


class ConnectorCapabilities(BaseModel):
    """Feature flags a connector declares."""

    supports_users: bool = True
    supports_groups: bool = True
    supports_membership: bool = True
    supports_entitlements: bool = False
    supports_pagination: bool = True
    supports_patch: bool = False
    supports_external_id_filter: bool = False
    max_page_size: int = 100
    features: Dict[str, bool] = Field(default_factory=dict)


class ConnectorHealth(BaseModel):
    """Result of a connector health check."""

    status: ConnectorHealthStatus
    message: Optional[str] = None
    checked_at: datetime = Field(default_factory=utc_now)
    latency_ms: Optional[float] = None

    @property
    def is_healthy(self) -> bool:
        return self.status != ConnectorHealthStatus.UNHEALTHY


class PagedResult(BaseModel):
    """One page of a list call. ``start_index`` is 1-based as in SCIM."""

    resources: List[Resource] = Field(default_factory=list)
    total_results: int = 0
    start_index: int = 1
    items_per_page: int = 0


class Connector(ABC):
    """Provider (or Source) reachable for user, group and membership operations."""

    def __init__(
        self,
        tenant_id: str,
        provider_id: str,
        transformation_engine: Optional["TransformationEngine"] = None,
    ):
        self.tenant_id = tenant_id
        self.provider_id = provider_id
        self.transformation_engine = transformation_engine

    # Users

    @abstractmethod
    async def create_user(self, user: Resource) -> Resource:
        """Create a user; returns the stored resource with its id."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Resource]:
        """Fetch a user, or None when it does not exist."""

    @abstractmethod
    async def update_user(self, user_id: str, user: Resource) -> Resource:
        """Replace a user's attributes."""

    @abstractmethod
    async def delete_user(self, user_id: str) -> None:
        """Delete a user."""

    @abstractmethod
    async def list_users(self, start_index: int = 1, count: int = 100) -> PagedResult:
        """One page of users."""

    # Groups

    @abstractmethod
    async def create_group(self, group: Resource) -> Resource:
        """Create a group; returns the stored resource with its id."""

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[Resource]:
        """Fetch a group, or None when it does not exist."""

    @abstractmethod
    async def update_group(self, group_id: str, group: Resource) -> Resource:
        """Replace a group's attributes. Membership is changed through the membership calls."""

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        """Delete a group."""

    @abstractmethod
    async def list_groups(self, start_index: int = 1, count: int = 100) -> PagedResult:
        """One page of groups."""

    # Membership

    @abstractmethod
    async def add_user_to_group(self, group_id: str, user_id: str) -> None:
        """Add one member."""

    @abstractmethod
    async def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        """Remove one member."""

    @abstractmethod
    async def get_group_members(self, group_id: str) -> List[str]:
        """Member ids of a group."""

    # Health and capabilities

    @abstractmethod
    async def check_health(self) -> ConnectorHealth:
        """Check that the provider is reachable."""

    @abstractmethod
    def get_capabilities(self) -> ConnectorCapabilities:
        """Declared feature flags."""

    # Lookups shared by every connector

    async def get_resource(self, resource_type: ResourceType, resource_id: str) -> Optional[Resource]:
        if resource_type == ResourceType.USER:
            return await self.get_user(resource_id)
        return await self.get_group(resource_id)

    async def list_resources(self, resource_type: ResourceType, start_index: int = 1, count: int = 100) -> PagedResult:
        if resource_type == ResourceType.USER:
            return await self.list_users(start_index=start_index, count=count)
        return await self.list_groups(start_index=start_index, count=count)

    async def find_by_external_id(self, resource_type: ResourceType, external_id: str) -> Optional[Resource]:
        """
        Locate a resource by externalId by paging through the listing.

        Connectors that can filter server-side should override this.
        """
        page_size = self.get_capabilities().max_page_size
        start_index = 1
        while True:
            page = await self.list_resources(resource_type, start_index=start_index, count=page_size)
            for resource in page.resources:
                if resource.get("externalId") == external_id:
                    return resource
            start_index += len(page.resources)
            if not page.resources or start_index > page.total_results:
                return None

    # Entitlement mapping, delegated to the transformation engine

    async def map_group_to_entitlement(self, group_name: str) -> List[Entitlement]:
        """Entitlements a group grants on this provider."""
        engine = self._require_engine()
        result = await engine.transform_group(self.tenant_id, self.provider_id, group_name)
        return result.entitlements

    async def map_entitlement_to_group(self, entitlement_name: str, required: bool = False) -> Optional[str]:
        """The group behind an entitlement, or None when unresolved or ambiguous."""
        engine = self._require_engine()
        return await engine.resolve_group(self.tenant_id, self.provider_id, entitlement_name, required=required)

    def _require_engine(self) -> "TransformationEngine":
        if self.transformation_engine is None:
            raise TransformationError(
                f"Connector {self.tenant_id}:{self.provider_id} has no transformation engine attached"
            )
        return self.transformation_engine
