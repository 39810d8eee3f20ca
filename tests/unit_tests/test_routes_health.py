"""Tests for health check endpoints."""

from datetime import datetime
from unittest.mock import AsyncMock

from fastapi import status

from tests.consts import API_BASE
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID


class TestHealthEndpointsNoActorRequired:
    """Tests verifying health endpoints work without the operator header."""

    def test_health_check_no_actor_required(self, anonymous_client):
        response = anonymous_client.get(f"{API_BASE}/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    def test_liveness_no_actor_required(self, anonymous_client):
        response = anonymous_client.get(f"{API_BASE}/health/live")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "alive"

    def test_openapi_no_actor_required(self, anonymous_client):
        response = anonymous_client.get("/openapi.json")

        assert response.status_code == status.HTTP_200_OK


def test_health_check(client):
    """Test basic health check endpoint."""
    response = client.get(f"{API_BASE}/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()

    assert data["status"] == "healthy"
    assert data["service"] == "SCIM Sync Engine"
    assert data["version"] == "v1"
    assert data["active_schedules"] == 0

    # Verify timestamp is a valid ISO format
    datetime.fromisoformat(data["timestamp"])


def test_health_check_counts_active_schedules(client):
    client.post(f"{API_BASE}/sync/{TENANT_ID}/{PROVIDER_ID}/polling", json={})

    response = client.get(f"{API_BASE}/health")

    assert response.json()["active_schedules"] == 1


def test_readiness_in_memory(client):
    """In-memory deployments are always ready."""
    response = client.get(f"{API_BASE}/health/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ready", "database": "in-memory"}


def test_readiness_database_connected(client, services):
    services.db_pool = AsyncMock()
    services.is_ready = AsyncMock(return_value=True)

    response = client.get(f"{API_BASE}/health/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["database"] == "connected"


def test_readiness_database_unavailable(client, services):
    """Test readiness check returns 503 when the database does not answer."""
    services.db_pool = AsyncMock()
    services.is_ready = AsyncMock(return_value=False)

    response = client.get(f"{API_BASE}/health/ready")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json() == {"status": "not_ready", "database": "unavailable"}
