"""
In-memory connector.

Holds users and groups in dictionaries. Used as a stand-in Source and in
tests; failures and health can be injected per operation.
"""

import copy
from typing import Dict
from typing import List
from typing import Optional
from typing import TYPE_CHECKING

from scim_sync.connectors.base import Connector
from scim_sync.connectors.base import ConnectorCapabilities
from scim_sync.connectors.base import ConnectorHealth
from scim_sync.connectors.base import PagedResult
from scim_sync.connectors.base import Resource
from scim_sync.sync.enums import ConnectorHealthStatus
from scim_sync.sync.exceptions import PermanentProviderError
from scim_sync.sync.models import new_id

if TYPE_CHECKING:
    from scim_sync.transform.engine import TransformationEngine


class InMemoryConnector(Connector):
    """Dictionary-backed connector with injectable failures."""

    def __init__(
        self,
        tenant_id: str,
        provider_id: str,
        users: Optional[List[Resource]] = None,
        groups: Optional[List[Resource]] = None,
        capabilities: Optional[ConnectorCapabilities] = None,
        transformation_engine: Optional["TransformationEngine"] = None,
    ):
        super().__init__(tenant_id, provider_id, transformation_engine)
        self.users: Dict[str, Resource] = {}
        self.groups: Dict[str, Resource] = {}
        self.capabilities = capabilities or ConnectorCapabilities()
        self.health = ConnectorHealth(status=ConnectorHealthStatus.HEALTHY)
        self.calls: List[str] = []
        self._failures: Dict[str, List[Exception]] = {}

        for user in users or []:
            self.users[str(user["id"])] = copy.deepcopy(user)
        for group in groups or []:
            self.groups[str(group["id"])] = copy.deepcopy(group)

    # ────────────────────────────────────────────────────────────────────────
    # Failure injection
    # ────────────────────────────────────────────────────────────────────────

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls of ``operation``."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def set_health(self, status: ConnectorHealthStatus, message: Optional[str] = None) -> None:
        self.health = ConnectorHealth(status=status, message=message)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # ────────────────────────────────────────────────────────────────────────
    # Users
    # ────────────────────────────────────────────────────────────────────────

    async def create_user(self, user: Resource) -> Resource:
        self._record("create_user")
        return self._create(self.users, user)

    async def get_user(self, user_id: str) -> Optional[Resource]:
        self._record("get_user")
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def update_user(self, user_id: str, user: Resource) -> Resource:
        self._record("update_user")
        return self._update(self.users, user_id, user)

    async def delete_user(self, user_id: str) -> None:
        self._record("delete_user")
        self._delete(self.users, user_id)
        for group in self.groups.values():
            group["members"] = [member for member in group.get("members", []) if member.get("value") != user_id]

    async def list_users(self, start_index: int = 1, count: int = 100) -> PagedResult:
        self._record("list_users")
        return self._page(self.users, start_index, count)

    # ────────────────────────────────────────────────────────────────────────
    # Groups
    # ────────────────────────────────────────────────────────────────────────

    async def create_group(self, group: Resource) -> Resource:
        self._record("create_group")
        return self._create(self.groups, group)

    async def get_group(self, group_id: str) -> Optional[Resource]:
        self._record("get_group")
        group = self.groups.get(group_id)
        return copy.deepcopy(group) if group else None

    async def update_group(self, group_id: str, group: Resource) -> Resource:
        self._record("update_group")
        members = self.groups.get(group_id, {}).get("members", [])
        updated = self._update(self.groups, group_id, {**group, "members": members})
        return updated

    async def delete_group(self, group_id: str) -> None:
        self._record("delete_group")
        self._delete(self.groups, group_id)

    async def list_groups(self, start_index: int = 1, count: int = 100) -> PagedResult:
        self._record("list_groups")
        return self._page(self.groups, start_index, count)

    # ────────────────────────────────────────────────────────────────────────
    # Membership
    # ────────────────────────────────────────────────────────────────────────

    async def add_user_to_group(self, group_id: str, user_id: str) -> None:
        self._record("add_user_to_group")
        group = self._require(self.groups, group_id)
        members = group.setdefault("members", [])
        if all(member.get("value") != user_id for member in members):
            members.append({"value": user_id})

    async def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        self._record("remove_user_from_group")
        group = self._require(self.groups, group_id)
        group["members"] = [member for member in group.get("members", []) if member.get("value") != user_id]

    async def get_group_members(self, group_id: str) -> List[str]:
        self._record("get_group_members")
        group = self._require(self.groups, group_id)
        return [str(member["value"]) for member in group.get("members", []) if member.get("value")]

    # ────────────────────────────────────────────────────────────────────────
    # Health and capabilities
    # ────────────────────────────────────────────────────────────────────────

    async def check_health(self) -> ConnectorHealth:
        self._record("check_health")
        return self.health

    def get_capabilities(self) -> ConnectorCapabilities:
        return self.capabilities

    # ────────────────────────────────────────────────────────────────────────
    # Storage helpers
    # ────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _create(store: Dict[str, Resource], resource: Resource) -> Resource:
        stored = copy.deepcopy(resource)
        resource_id = str(stored.get("id") or new_id())
        if resource_id in store:
            raise PermanentProviderError(f"Resource {resource_id} already exists", status_code=409)
        stored["id"] = resource_id
        store[resource_id] = stored
        return copy.deepcopy(stored)

    def _update(self, store: Dict[str, Resource], resource_id: str, resource: Resource) -> Resource:
        self._require(store, resource_id)
        stored = copy.deepcopy(resource)
        stored["id"] = resource_id
        store[resource_id] = stored
        return copy.deepcopy(stored)

    def _delete(self, store: Dict[str, Resource], resource_id: str) -> None:
        self._require(store, resource_id)
        del store[resource_id]

    @staticmethod
    def _require(store: Dict[str, Resource], resource_id: str) -> Resource:
        resource = store.get(resource_id)
        if resource is None:
            raise PermanentProviderError(f"Resource {resource_id} not found", status_code=404)
        return resource

    @staticmethod
    def _page(store: Dict[str, Resource], start_index: int, count: int) -> PagedResult:
        ordered = [store[key] for key in sorted(store)]
        offset = max(start_index, 1) - 1
        page = ordered[offset : offset + count]
        return PagedResult(
            resources=copy.deepcopy(page),
            total_results=len(ordered),
            start_index=start_index,
            items_per_page=len(page),
        )
