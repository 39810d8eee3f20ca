"""Unit tests for connectors: in-memory, SCIM over HTTP, and the shared lookups."""

import json

import httpx
import pytest

from scim_sync.connectors.base import ConnectorCapabilities
from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.connectors.scim_http import ScimHttpConnector
from scim_sync.connectors.scim_http import parse_retry_after
from scim_sync.sync.enums import ConnectorHealthStatus
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.exceptions import PermanentProviderError
from scim_sync.sync.exceptions import RateLimitedError
from scim_sync.sync.exceptions import TransformationError
from scim_sync.sync.exceptions import TransientProviderError
from scim_sync.transform.models import RuleType
from scim_sync.transform.models import TransformationRule
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID

BASE_URL = "https://idp.example.test/scim/v2"


def _users(count):
    return [{"id": f"u{i}", "externalId": f"ext-{i}", "userName": f"user{i}@acme.test"} for i in range(1, count + 1)]


class TestInMemoryConnector:
    """Tests for the dictionary-backed connector."""

    @pytest.mark.asyncio
    async def test_paging(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID, users=_users(5))

        first = await connector.list_users(start_index=1, count=2)
        last = await connector.list_users(start_index=5, count=2)

        assert [user["id"] for user in first.resources] == ["u1", "u2"]
        assert first.total_results == 5
        assert [user["id"] for user in last.resources] == ["u5"]

    @pytest.mark.asyncio
    async def test_create_duplicate_is_permanent_error(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID, users=_users(1))

        with pytest.raises(PermanentProviderError) as exc_info:
            await connector.create_user({"id": "u1", "userName": "dup@acme.test"})

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_missing_resource_is_not_found(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID)

        assert await connector.get_user("nope") is None
        with pytest.raises(PermanentProviderError) as exc_info:
            await connector.delete_group("nope")
        assert exc_info.value.not_found is True

    @pytest.mark.asyncio
    async def test_delete_user_removes_memberships(self):
        connector = InMemoryConnector(
            TENANT_ID,
            PROVIDER_ID,
            users=_users(2),
            groups=[{"id": "g1", "displayName": "Ops", "members": [{"value": "u1"}, {"value": "u2"}]}],
        )

        await connector.delete_user("u1")

        assert await connector.get_group_members("g1") == ["u2"]

    @pytest.mark.asyncio
    async def test_update_group_keeps_members(self):
        connector = InMemoryConnector(
            TENANT_ID, PROVIDER_ID, groups=[{"id": "g1", "displayName": "Ops", "members": [{"value": "u1"}]}]
        )

        await connector.update_group("g1", {"displayName": "Operations"})

        group = await connector.get_group("g1")
        assert group["displayName"] == "Operations"
        assert group["members"] == [{"value": "u1"}]

    @pytest.mark.asyncio
    async def test_membership_calls_are_idempotent(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID, groups=[{"id": "g1", "displayName": "Ops"}])

        await connector.add_user_to_group("g1", "u1")
        await connector.add_user_to_group("g1", "u1")
        await connector.remove_user_from_group("g1", "u2")

        assert await connector.get_group_members("g1") == ["u1"]

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID)
        connector.fail_next("list_users", TransientProviderError("flaky"), times=2)

        for _ in range(2):
            with pytest.raises(TransientProviderError):
                await connector.list_users()
        page = await connector.list_users()

        assert page.total_results == 0
        assert connector.calls == ["list_users", "list_users", "list_users"]

    @pytest.mark.asyncio
    async def test_returned_resources_are_copies(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID, users=_users(1))

        user = await connector.get_user("u1")
        user["userName"] = "changed"

        assert connector.users["u1"]["userName"] == "user1@acme.test"

    @pytest.mark.asyncio
    async def test_health(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID)
        connector.set_health(ConnectorHealthStatus.DEGRADED, "slow")

        health = await connector.check_health()

        assert health.status == ConnectorHealthStatus.DEGRADED
        assert health.is_healthy is True


class TestSharedLookups:
    """Tests for the lookups every connector inherits."""

    @pytest.mark.asyncio
    async def test_find_by_external_id_pages_through(self):
        connector = InMemoryConnector(
            TENANT_ID, PROVIDER_ID, users=_users(5), capabilities=ConnectorCapabilities(max_page_size=2)
        )

        found = await connector.find_by_external_id(ResourceType.USER, "ext-5")
        missing = await connector.find_by_external_id(ResourceType.USER, "ext-9")

        assert found["id"] == "u5"
        assert missing is None
        assert connector.calls.count("list_users") == 6

    @pytest.mark.asyncio
    async def test_get_resource_dispatches_on_type(self):
        connector = InMemoryConnector(
            TENANT_ID, PROVIDER_ID, users=_users(1), groups=[{"id": "g1", "displayName": "Ops"}]
        )

        assert (await connector.get_resource(ResourceType.USER, "u1"))["userName"] == "user1@acme.test"
        assert (await connector.get_resource(ResourceType.GROUP, "g1"))["displayName"] == "Ops"

    @pytest.mark.asyncio
    async def test_entitlement_mapping_through_engine(self, engine):
        await engine.create_rule(
            TransformationRule(
                tenant_id=TENANT_ID,
                provider_id=PROVIDER_ID,
                rule_type=RuleType.REGEX,
                source_pattern="^Sales-(.*)$",
                target_mapping="Sales_${1}_Rep",
            )
        )
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID, transformation_engine=engine)

        entitlements = await connector.map_group_to_entitlement("Sales-EMEA")
        group = await connector.map_entitlement_to_group("Sales_EMEA_Rep")

        assert [entitlement.name for entitlement in entitlements] == ["Sales_EMEA_Rep"]
        assert group == "Sales-EMEA"

    @pytest.mark.asyncio
    async def test_entitlement_mapping_needs_engine(self):
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID)

        with pytest.raises(TransformationError):
            await connector.map_group_to_entitlement("Sales-EMEA")


class TestScimHttpConnector:
    """Tests for the SCIM 2.0 HTTP connector against a mock transport."""

    @staticmethod
    def _connector(handler, **kwargs) -> ScimHttpConnector:
        return ScimHttpConnector(
            TENANT_ID,
            PROVIDER_ID,
            base_url=BASE_URL + "/",
            bearer_token="secret-token",
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_list_users_paging_and_headers(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"totalResults": 3, "startIndex": 1, "itemsPerPage": 2, "Resources": _users(2)},
            )

        connector = self._connector(handler)
        page = await connector.list_users(start_index=1, count=2)
        await connector.close()

        assert page.total_results == 3
        assert [user["id"] for user in page.resources] == ["u1", "u2"]
        request = seen[0]
        assert request.url.path == "/scim/v2/Users"
        assert request.url.params["startIndex"] == "1"
        assert request.url.params["count"] == "2"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["Accept"] == "application/scim+json"

    @pytest.mark.asyncio
    async def test_get_missing_user_is_none(self):
        connector = self._connector(lambda request: httpx.Response(404, json={"detail": "not found"}))

        assert await connector.get_user("u404") is None
        await connector.close()

    @pytest.mark.parametrize(
        "status_code,error_type",
        [
            (400, PermanentProviderError),
            (404, PermanentProviderError),
            (409, PermanentProviderError),
            (408, TransientProviderError),
            (500, TransientProviderError),
            (503, TransientProviderError),
            (429, RateLimitedError),
        ],
        ids=["bad-request", "not-found", "conflict", "request-timeout", "server-error", "unavailable", "throttled"],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(self, status_code, error_type):
        connector = self._connector(
            lambda request: httpx.Response(status_code, json={"detail": "nope"}, headers={"Retry-After": "30"})
        )

        with pytest.raises(error_type) as exc_info:
            await connector.create_user({"userName": "x@acme.test"})
        await connector.close()

        assert type(exc_info.value) is error_type
        assert "nope" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        connector = self._connector(lambda request: httpx.Response(429, headers={"Retry-After": "45"}))

        with pytest.raises(RateLimitedError) as exc_info:
            await connector.list_groups()
        await connector.close()

        assert exc_info.value.retry_after == 45

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("connect timed out", request=request)

        connector = self._connector(handler)

        with pytest.raises(TransientProviderError):
            await connector.get_user("u1")
        await connector.close()

    @pytest.mark.asyncio
    async def test_update_group_with_put_carries_members(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"id": "g1", "displayName": "Ops", "members": [{"value": "u1"}]})
            return httpx.Response(200, json=json.loads(request.content))

        connector = self._connector(handler)
        await connector.update_group("g1", {"displayName": "Operations", "members": []})
        await connector.close()

        put = seen[-1]
        assert put.method == "PUT"
        assert json.loads(put.content) == {"displayName": "Operations", "id": "g1", "members": [{"value": "u1"}]}

    @pytest.mark.asyncio
    async def test_update_group_with_patch(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"id": "g1", "displayName": "Operations"})
            return httpx.Response(204)

        connector = self._connector(handler, capabilities=ConnectorCapabilities(supports_patch=True))
        await connector.update_group("g1", {"displayName": "Operations"})
        await connector.close()

        patch = json.loads(seen[0].content)
        assert seen[0].method == "PATCH"
        assert patch["Operations"] == [{"op": "replace", "path": "displayName", "value": "Operations"}]

    @pytest.mark.asyncio
    async def test_remove_member_uses_value_filter(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        connector = self._connector(handler)
        await connector.remove_user_from_group("g1", "u7")
        await connector.close()

        body = json.loads(seen[0].content)
        assert body["Operations"] == [{"op": "remove", "path": 'members[value eq "u7"]'}]

    @pytest.mark.asyncio
    async def test_find_by_external_id_filter(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"totalResults": 1, "Resources": _users(1)})

        connector = self._connector(handler, capabilities=ConnectorCapabilities(supports_external_id_filter=True))
        found = await connector.find_by_external_id(ResourceType.USER, "ext-1")
        await connector.close()

        assert found["id"] == "u1"
        assert seen[0].url.params["filter"] == 'externalId eq "ext-1"'

    @pytest.mark.asyncio
    async def test_health(self):
        healthy = self._connector(lambda request: httpx.Response(200, json={}))
        unhealthy = self._connector(lambda request: httpx.Response(503))

        assert (await healthy.check_health()).status == ConnectorHealthStatus.HEALTHY
        assert (await unhealthy.check_health()).status == ConnectorHealthStatus.UNHEALTHY
        await healthy.close()
        await unhealthy.close()


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        "value,expected",
        [(None, None), ("", None), ("120", 120.0), ("-3", 0.0), ("not a date", None)],
        ids=["missing", "empty", "seconds", "negative", "garbage"],
    )
    def test_values(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_past_http_date(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
