"""
Generic SCIM 2.0 connector over httpx.

HTTP failures are mapped onto the connector error taxonomy through
``ConnectorError.from_http_status``; network failures and timeouts become
``TransientProviderError``.
"""

import time
from email.utils import parsedate_to_datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from scim_sync.connectors.base import Connector
from scim_sync.connectors.base import ConnectorCapabilities
from scim_sync.connectors.base import ConnectorHealth
from scim_sync.connectors.base import PagedResult
from scim_sync.connectors.base import Resource
from scim_sync.sync.enums import ConnectorHealthStatus
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.exceptions import ConnectorError
from scim_sync.sync.exceptions import SyncEngineError
from scim_sync.sync.exceptions import TransientProviderError
from scim_sync.sync.models import utc_now

if TYPE_CHECKING:
    from scim_sync.transform.engine import TransformationEngine

SCIM_CONTENT_TYPE = "application/scim+json"
PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"

# Health checks slower than this are reported as degraded
DEGRADED_LATENCY_MS = 5000.0


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - utc_now()).total_seconds(), 0.0)


class ScimHttpConnector(Connector):
    """Talks to any SCIM 2.0 service provider at ``base_url``."""

    def __init__(
        self,
        tenant_id: str,
        provider_id: str,
        base_url: str,
        bearer_token: Optional[str] = None,
        timeout: float = 30.0,
        capabilities: Optional[ConnectorCapabilities] = None,
        transformation_engine: Optional["TransformationEngine"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the connector.

        Args:
            tenant_id: Tenant this connector serves
            provider_id: Provider this connector reaches
            base_url: SCIM base URL, e.g. ``https://idp.example.com/scim/v2``
            bearer_token: Sent as ``Authorization: Bearer``
            timeout: Per-request timeout in seconds
            capabilities: Declared feature flags
            transformation_engine: Used for entitlement mapping
            transport: Custom httpx transport, e.g. ``httpx.MockTransport`` in tests
        """
        super().__init__(tenant_id, provider_id, transformation_engine)
        self.base_url = base_url.rstrip("/")
        self.capabilities = capabilities or ConnectorCapabilities()
        headers = {"Accept": SCIM_CONTENT_TYPE, "Content-Type": SCIM_CONTENT_TYPE}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{method} {path} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientProviderError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code >= 400:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "SCIM request failed",
                method=method,
                path=path,
                status_code=response.status_code,
                tenant_id=self.tenant_id,
                provider_id=self.provider_id,
            )
            raise ConnectorError.from_http_status(
                response.status_code,
                f"{method} {path} failed with {response.status_code}: {self._error_detail(response)}",
                retry_after=retry_after,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("scimType") or body)
        return str(body)

    @staticmethod
    def _to_page(body: Dict[str, Any], start_index: int) -> PagedResult:
        resources = body.get("Resources") or []
        return PagedResult(
            resources=resources,
            total_results=int(body.get("totalResults", len(resources))),
            start_index=int(body.get("startIndex", start_index)),
            items_per_page=int(body.get("itemsPerPage", len(resources))),
        )

    # Users

    async def create_user(self, user: Resource) -> Resource:
        return await self._request("POST", "/Users", json=user)

    async def get_user(self, user_id: str) -> Optional[Resource]:
        return await self._request("GET", f"/Users/{user_id}", allow_not_found=True)

    async def update_user(self, user_id: str, user: Resource) -> Resource:
        return await self._request("PUT", f"/Users/{user_id}", json={**user, "id": user_id})

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"/Users/{user_id}")

    async def list_users(self, start_index: int = 1, count: int = 100) -> PagedResult:
        body = await self._request("GET", "/Users", params={"startIndex": start_index, "count": count})
        return self._to_page(body, start_index)

    # Groups

    async def create_group(self, group: Resource) -> Resource:
        return await self._request("POST", "/Groups", json=group)

    async def get_group(self, group_id: str) -> Optional[Resource]:
        return await self._request("GET", f"/Groups/{group_id}", allow_not_found=True)

    async def update_group(self, group_id: str, group: Resource) -> Resource:
        attributes = {key: value for key, value in group.items() if key not in ("id", "members", "meta")}
        if self.capabilities.supports_patch:
            operations = [{"op": "replace", "path": key, "value": value} for key, value in attributes.items()]
            await self._request("PATCH", f"/Groups/{group_id}", json={"schemas": [PATCH_OP_SCHEMA], "Operations": operations})
            return await self.get_group(group_id)

        # PUT replaces the whole resource, so carry the current members along
        members = await self.get_group_members(group_id)
        body = {**attributes, "id": group_id, "members": [{"value": member} for member in members]}
        return await self._request("PUT", f"/Groups/{group_id}", json=body)

    async def delete_group(self, group_id: str) -> None:
        await self._request("DELETE", f"/Groups/{group_id}")

    async def list_groups(self, start_index: int = 1, count: int = 100) -> PagedResult:
        body = await self._request("GET", "/Groups", params={"startIndex": start_index, "count": count})
        return self._to_page(body, start_index)

    # Membership

    async def add_user_to_group(self, group_id: str, user_id: str) -> None:
        operation = {"op": "add", "path": "members", "value": [{"value": user_id}]}
        await self._request("PATCH", f"/Groups/{group_id}", json={"schemas": [PATCH_OP_SCHEMA], "Operations": [operation]})

    async def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        operation = {"op": "remove", "path": f'members[value eq "{user_id}"]'}
        await self._request("PATCH", f"/Groups/{group_id}", json={"schemas": [PATCH_OP_SCHEMA], "Operations": [operation]})

    async def get_group_members(self, group_id: str) -> List[str]:
        group = await self._request("GET", f"/Groups/{group_id}")
        return [str(member["value"]) for member in group.get("members") or [] if member.get("value")]

    async def find_by_external_id(self, resource_type: ResourceType, external_id: str) -> Optional[Resource]:
        if not self.capabilities.supports_external_id_filter:
            return await super().find_by_external_id(resource_type, external_id)
        path = "/Users" if resource_type == ResourceType.USER else "/Groups"
        body = await self._request("GET", path, params={"filter": f'externalId eq "{external_id}"'})
        resources = body.get("Resources") or []
        return resources[0] if resources else None

    # Health and capabilities

    async def check_health(self) -> ConnectorHealth:
        started = time.monotonic()
        try:
            await self._request("GET", "/ServiceProviderConfig")
        except SyncEngineError as e:
            logger.warning(
                "SCIM health check failed",
                tenant_id=self.tenant_id,
                provider_id=self.provider_id,
                error=e.message,
            )
            return ConnectorHealth(status=ConnectorHealthStatus.UNHEALTHY, message=e.message)

        latency_ms = (time.monotonic() - started) * 1000
        status = ConnectorHealthStatus.DEGRADED if latency_ms > DEGRADED_LATENCY_MS else ConnectorHealthStatus.HEALTHY
        return ConnectorHealth(status=status, latency_ms=latency_ms)

    def get_capabilities(self) -> ConnectorCapabilities:
        return self.capabilities
