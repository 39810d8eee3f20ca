"""Test suite for drift and conflict API endpoints."""

from unittest.mock import AsyncMock
from unittest.mock import patch

import pytest
from fastapi import status

from scim_sync.sync.enums import ConflictResolution
from scim_sync.sync.enums import ConflictType
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import Severity
from scim_sync.sync.exceptions import InvalidResolutionError
from scim_sync.sync.exceptions import ReportNotFoundError
from scim_sync.sync.models import ConflictReport
from tests.consts import ACTOR
from tests.consts import API_BASE
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID

POLL_PATH = f"{API_BASE}/sync/{TENANT_ID}/{PROVIDER_ID}/poll"


@pytest.fixture
def pending_drift(client, provider_connector):
    """Baseline poll, then a user removed on the provider and picked up by a second poll."""
    client.post(POLL_PATH)
    del provider_connector.users["u1"]
    client.post(POLL_PATH)

    response = client.get(f"{API_BASE}/drift", params={"tenant_id": TENANT_ID})
    return response.json()["DriftReports"][0]


@pytest.fixture
def sample_conflict():
    return ConflictReport(
        tenant_id=TENANT_ID,
        provider_id=PROVIDER_ID,
        conflict_type=ConflictType.DUAL_MODIFICATION,
        resource_type=ResourceType.USER,
        resource_id="u1",
        severity=Severity.MEDIUM,
        suggested_resolution=ConflictResolution.USE_SOURCE_VALUE,
    )


class TestListDriftEndpoint:
    """Tests for GET /drift endpoint."""

    def test_missing_tenant_id(self, client):
        response = client.get(f"{API_BASE}/drift")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_no_pending_drift(self, client):
        response = client.get(f"{API_BASE}/drift", params={"tenant_id": TENANT_ID})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"Message": "Fetched 0 pending drift reports", "Count": 0, "DriftReports": []}

    def test_lists_drift_found_by_poll(self, client, pending_drift):
        response = client.get(f"{API_BASE}/drift", params={"tenant_id": TENANT_ID, "provider_id": PROVIDER_ID})

        data = response.json()
        assert data["Count"] == 1
        assert pending_drift["drift_type"] == "DELETED"
        assert pending_drift["resource_type"] == "USER"
        assert pending_drift["resource_id"] == "u1"
        assert pending_drift["reconciled"] is False

    def test_other_provider_filtered_out(self, client, pending_drift):
        response = client.get(f"{API_BASE}/drift", params={"tenant_id": TENANT_ID, "provider_id": "salesforce"})

        assert response.json()["Count"] == 0


class TestGetDriftEndpoint:
    """Tests for GET /drift/{drift_id} endpoint."""

    def test_get_drift(self, client, pending_drift):
        response = client.get(f"{API_BASE}/drift/{pending_drift['id']}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["id"] == pending_drift["id"]

    def test_unknown_drift(self, client):
        response = client.get(f"{API_BASE}/drift/nope")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "REPORT_NOT_FOUND"


class TestReconcileDriftEndpoint:
    """Tests for POST /drift/{drift_id}/reconcile endpoint."""

    def test_approve_restores_user(self, client, pending_drift, provider_connector, audit_trail):
        response = client.post(
            f"{API_BASE}/drift/{pending_drift['id']}/reconcile",
            json={"approve": True, "notes": "offboarding was a mistake"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Drift reconciled"
        assert data["Result"]["action"] == "MANUAL_APPROVED"
        assert data["Result"]["operations"] == ["create USER u1"]
        assert "u1" in provider_connector.users

        applied = audit_trail.find(operation="ManualReconciliationApplied", resource_id="u1")
        assert applied[0].actor == ACTOR

        remaining = client.get(f"{API_BASE}/drift", params={"tenant_id": TENANT_ID})
        assert remaining.json()["Count"] == 0

    def test_reject_leaves_provider_untouched(self, client, pending_drift, provider_connector):
        response = client.post(f"{API_BASE}/drift/{pending_drift['id']}/reconcile", json={"approve": False})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["Result"]["action"] == "MANUAL_REJECTED"
        assert "u1" not in provider_connector.users

    def test_reconciled_twice(self, client, pending_drift):
        client.post(f"{API_BASE}/drift/{pending_drift['id']}/reconcile", json={"approve": False})

        response = client.post(f"{API_BASE}/drift/{pending_drift['id']}/reconcile", json={"approve": False})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_invalid_direction_override(self, client, pending_drift):
        response = client.post(
            f"{API_BASE}/drift/{pending_drift['id']}/reconcile",
            json={"direction_override": "SIDEWAYS"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestConflictEndpoints:
    """Tests for the /conflicts endpoints."""

    def test_list_conflicts(self, client, services, sample_conflict):
        with patch.object(
            services.reconciler, "get_pending_conflicts", new=AsyncMock(return_value=[sample_conflict])
        ) as mock_list:
            response = client.get(f"{API_BASE}/conflicts", params={"tenant_id": TENANT_ID})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Count"] == 1
        assert data["Conflicts"][0]["conflict_type"] == "DUAL_MODIFICATION"
        mock_list.assert_awaited_once_with(TENANT_ID, None)

    def test_get_conflict_not_found(self, client, services):
        with patch.object(
            services.reconciler, "get_conflict", new=AsyncMock(side_effect=ReportNotFoundError("gone"))
        ):
            response = client.get(f"{API_BASE}/conflicts/c1")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_resolve_conflict(self, client, services, sample_conflict):
        resolved = sample_conflict.model_copy(
            update={"resolved": True, "resolution": ConflictResolution.USE_SOURCE_VALUE, "resolved_by": ACTOR}
        )
        with patch.object(
            services.reconciler, "reconcile_conflict", new=AsyncMock(return_value=resolved)
        ) as mock_resolve:
            response = client.post(
                f"{API_BASE}/conflicts/{sample_conflict.id}/resolve",
                json={"resolution": "USE_SOURCE_VALUE", "notes": "HR is authoritative"},
            )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Conflict resolved"
        assert data["Conflict"]["resolved"] is True
        mock_resolve.assert_awaited_once_with(
            sample_conflict.id,
            ConflictResolution.USE_SOURCE_VALUE,
            actor=ACTOR,
            notes="HR is authoritative",
            custom_value=None,
        )

    def test_resolve_conflict_invalid_resolution(self, client, services):
        with patch.object(
            services.reconciler,
            "reconcile_conflict",
            new=AsyncMock(side_effect=InvalidResolutionError("CUSTOM resolution requires a custom_value")),
        ):
            response = client.post(f"{API_BASE}/conflicts/c1/resolve", json={"resolution": "CUSTOM"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "CUSTOM resolution requires a custom_value"

    def test_resolution_is_required(self, client):
        response = client.post(f"{API_BASE}/conflicts/c1/resolve", json={})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
