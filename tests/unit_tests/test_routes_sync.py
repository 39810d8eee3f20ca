"""Test suite for sync pair API endpoints: direction, polling, schedules, state and blocks."""

from fastapi import status

from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.sync.enums import ReconciliationStrategy
from scim_sync.sync.exceptions import TransientProviderError
from tests.consts import ACTOR
from tests.consts import API_BASE
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID

PAIR_PATH = f"{API_BASE}/sync/{TENANT_ID}/{PROVIDER_ID}"
UNKNOWN_PAIR_PATH = f"{API_BASE}/sync/{TENANT_ID}/unknown"


class TestDirectionEndpoints:
    """Tests for GET/PUT /sync/{tenant_id}/{provider_id}/direction."""

    def test_first_read_selects_default(self, client, audit_trail):
        response = client.get(f"{PAIR_PATH}/direction")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"TenantId": TENANT_ID, "ProviderId": PROVIDER_ID, "Direction": "SOURCE_TO_TARGET"}
        assert len(audit_trail.find(operation="SyncDirectionDefaulted")) == 1

    def test_set_direction(self, client, audit_trail):
        response = client.put(
            f"{PAIR_PATH}/direction",
            json={"direction": "TARGET_TO_SOURCE", "reason": "provider is now the system of record"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["Direction"] == "TARGET_TO_SOURCE"
        assert client.get(f"{PAIR_PATH}/direction").json()["Direction"] == "TARGET_TO_SOURCE"

        changed = audit_trail.find(operation="SyncDirectionChanged")
        assert changed[0].actor == ACTOR

    def test_invalid_direction(self, client):
        response = client.put(f"{PAIR_PATH}/direction", json={"direction": "BOTH"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestPollEndpoint:
    """Tests for POST /sync/{tenant_id}/{provider_id}/poll."""

    def test_first_poll_is_baseline(self, client):
        response = client.post(f"{PAIR_PATH}/poll")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Poll completed"
        assert data["Result"]["success"] is True
        assert data["Result"]["baseline"] is True
        assert data["Result"]["users_polled"] == 1
        assert data["Result"]["groups_polled"] == 1

    def test_failure_reported_in_result(self, client, provider_connector):
        provider_connector.fail_next("list_users", TransientProviderError("upstream timeout"))

        response = client.post(f"{PAIR_PATH}/poll")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Poll failed: upstream timeout"
        assert data["Result"]["success"] is False
        assert data["Result"]["error_code"] == "TRANSIENT_PROVIDER_ERROR"

    def test_unknown_pair(self, client):
        response = client.post(f"{UNKNOWN_PAIR_PATH}/poll")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "CONNECTOR_NOT_REGISTERED"

    def test_recent_results(self, client):
        client.post(f"{PAIR_PATH}/poll")
        client.post(f"{PAIR_PATH}/poll")

        response = client.get(f"{PAIR_PATH}/results", params={"limit": 1})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Count"] == 1
        assert data["Results"][0]["unchanged"] is True

    def test_results_invalid_limit(self, client):
        response = client.get(f"{PAIR_PATH}/results", params={"limit": 0})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestScheduleEndpoints:
    """Tests for polling schedule management."""

    def test_start_polling_clamps_interval(self, client):
        response = client.post(f"{PAIR_PATH}/polling", json={"interval_seconds": 10})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Polling started"
        assert data["Schedule"]["interval_seconds"] == 60
        assert data["Schedule"]["enabled"] is True

        schedules = client.get(f"{API_BASE}/sync/schedules").json()
        assert schedules["Count"] == 1

    def test_start_polling_unknown_pair(self, client):
        response = client.post(f"{UNKNOWN_PAIR_PATH}/polling", json={})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_start_polling_rejects_non_positive_interval(self, client):
        response = client.post(f"{PAIR_PATH}/polling", json={"interval_seconds": 0})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_stop_polling(self, client):
        client.post(f"{PAIR_PATH}/polling", json={})

        response = client.delete(f"{PAIR_PATH}/polling")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["Schedule"]["enabled"] is False
        assert client.get(f"{API_BASE}/sync/schedules").json()["Count"] == 0

    def test_stop_polling_without_schedule(self, client):
        response = client.delete(f"{PAIR_PATH}/polling")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_get_schedule_not_found(self, client):
        response = client.get(f"{PAIR_PATH}/schedule")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_update_schedule_sets_pair_strategy(self, client, services):
        client.post(f"{PAIR_PATH}/polling", json={})

        response = client.put(f"{PAIR_PATH}/schedule", json={"interval_seconds": 900, "strategy": "AUTO_APPLY"})

        assert response.status_code == status.HTTP_200_OK
        schedule = response.json()["Schedule"]
        assert schedule["interval_seconds"] == 900
        assert schedule["strategy"] == "AUTO_APPLY"
        assert services.reconciler.get_strategy(TENANT_ID, PROVIDER_ID) == ReconciliationStrategy.AUTO_APPLY

        fetched = client.get(f"{PAIR_PATH}/schedule")
        assert fetched.json()["Schedule"]["interval_seconds"] == 900


class TestStateEndpoint:
    """Tests for GET /sync/{tenant_id}/{provider_id}/state."""

    def test_state_before_first_poll(self, client):
        response = client.get(f"{PAIR_PATH}/state")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_state_after_poll(self, client):
        client.post(f"{PAIR_PATH}/poll")

        response = client.get(f"{PAIR_PATH}/state")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Status"] == "COMPLETED"
        assert data["UserCount"] == 1
        assert data["GroupCount"] == 1
        assert data["PendingDriftCount"] == 0
        assert data["SnapshotChecksum"] is not None
        assert data["RecentErrors"] == []

    def test_state_lists_recent_errors(self, client, provider_connector):
        client.post(f"{PAIR_PATH}/poll")
        provider_connector.fail_next("list_users", TransientProviderError("upstream timeout"))
        client.post(f"{PAIR_PATH}/poll")

        data = client.get(f"{PAIR_PATH}/state").json()

        assert data["Status"] == "FAILED"
        assert data["RecentErrors"][0]["error_code"] == "TRANSIENT_PROVIDER_ERROR"
        assert data["RecentErrors"][0]["is_transient"] is True


class TestBlockEndpoints:
    """Tests for blocking and unblocking a resource."""

    def test_block_and_unblock(self, client, audit_trail):
        client.post(f"{PAIR_PATH}/poll")

        blocked = client.post(f"{PAIR_PATH}/blocks/USER/u1", json={"reason": "legal hold"})

        assert blocked.status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"{PAIR_PATH}/state").json()["BlockedResources"] == ["USER:u1"]
        assert audit_trail.find(operation="SyncBlocked", resource_id="u1")[0].actor == ACTOR

        unblocked = client.delete(f"{PAIR_PATH}/blocks/USER/u1")

        assert unblocked.status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"{PAIR_PATH}/state").json()["BlockedResources"] == []
        assert len(audit_trail.find(operation="SyncUnblocked", resource_id="u1")) == 1

    def test_invalid_resource_type(self, client):
        response = client.post(f"{PAIR_PATH}/blocks/DEVICE/d1", json={})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestComparisonEndpoint:
    """Tests for GET /sync/{tenant_id}/{provider_id}/comparison."""

    def test_differences_with_the_source(self, client, services):
        services.register_connector(
            InMemoryConnector(
                TENANT_ID,
                "hr",
                users=[{"id": "s1", "externalId": "alice", "userName": "alice@hr.test", "active": True}],
            ),
            is_source=True,
        )

        response = client.get(f"{PAIR_PATH}/comparison")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        reports = data["Result"]["drift_reports"]
        assert data["Message"] == f"Found {len(reports)} differences"
        mismatched = [report for report in reports if report["drift_type"] == "ATTRIBUTE_MISMATCH"]
        assert [report["external_id"] for report in mismatched] == ["alice"]

    def test_without_a_source(self, client):
        response = client.get(f"{PAIR_PATH}/comparison")

        assert response.status_code == status.HTTP_404_NOT_FOUND
