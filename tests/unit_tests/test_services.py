"""Unit tests for the service container."""

from unittest.mock import AsyncMock

import pytest

from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.connectors.scim_http import ScimHttpConnector
from scim_sync.db.pool import SyncDBPool
from scim_sync.db.repository_audit import AuditTrailRepository
from scim_sync.db.repository_rules import InMemoryTransformationRuleStore
from scim_sync.db.repository_rules import TransformationRuleRepository
from scim_sync.db.repository_sync_state import InMemorySyncStateStore
from scim_sync.db.repository_sync_state import SyncStateRepository
from scim_sync.services import build_services
from scim_sync.settings import ConnectorConfig
from scim_sync.settings import Settings
from scim_sync.sync.audit import CompositeAuditSink
from scim_sync.sync.audit import InMemoryAuditSink
from scim_sync.sync.audit import LoggingAuditSink
from scim_sync.sync.enums import ReconciliationStrategy
from tests.consts import OTHER_PROVIDER_ID
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


@pytest.fixture
def configured_settings():
    """One HTTP provider, one in-memory provider and a Source."""
    return _settings(
        enable_polling=True,
        poll_interval_seconds=300,
        connectors=[
            ConnectorConfig(
                tenant_id=TENANT_ID,
                provider_id=PROVIDER_ID,
                base_url="https://okta.example.test/scim/v2",
                bearer_token="token",
                poll_interval_seconds=900,
                strategy=ReconciliationStrategy.AUTO_APPLY,
                capabilities={"supports_patch": True},
                max_page_size=50,
            ),
            ConnectorConfig(tenant_id=TENANT_ID, provider_id=OTHER_PROVIDER_ID, enabled=False),
            ConnectorConfig(tenant_id=TENANT_ID, provider_id="hr", is_source=True),
        ],
    )


class TestBuildServices:
    """Tests for build_services."""

    def test_in_memory_without_connection_string(self):
        services = build_services(_settings(domain_db_connection_string=None))

        assert services.db_pool is None
        assert isinstance(services.sync_state_store, InMemorySyncStateStore)
        assert isinstance(services.rule_store, InMemoryTransformationRuleStore)
        assert isinstance(services.audit_sink, CompositeAuditSink)
        assert [type(sink) for sink in services.audit_sink.sinks] == [LoggingAuditSink, InMemoryAuditSink]

    def test_postgres_with_connection_string(self):
        services = build_services(_settings(domain_db_connection_string="postgresql://sync@localhost/sync"))

        assert isinstance(services.db_pool, SyncDBPool)
        assert isinstance(services.sync_state_store, SyncStateRepository)
        assert isinstance(services.rule_store, TransformationRuleRepository)
        assert isinstance(services.audit_sink.sinks[-1], AuditTrailRepository)
        assert services.sync_state_store.pool is services.db_pool

    def test_connectors_from_settings(self, configured_settings):
        services = build_services(configured_settings)

        provider = services.connectors.get(TENANT_ID, PROVIDER_ID)
        assert isinstance(provider, ScimHttpConnector)
        assert provider.capabilities.max_page_size == 50
        assert provider.capabilities.supports_patch is True
        assert provider.transformation_engine is services.engine

        assert isinstance(services.connectors.get(TENANT_ID, OTHER_PROVIDER_ID), InMemoryConnector)
        assert isinstance(services.connectors.get_source(TENANT_ID), InMemoryConnector)
        assert (TENANT_ID, "hr") not in services.connectors

        assert services.reconciler.get_strategy(TENANT_ID, PROVIDER_ID) == ReconciliationStrategy.AUTO_APPLY
        assert services.reconciler.get_strategy(TENANT_ID, OTHER_PROVIDER_ID) == ReconciliationStrategy.MANUAL_REVIEW

    def test_register_connector_wires_engine(self):
        services = build_services(_settings())
        connector = InMemoryConnector(TENANT_ID, PROVIDER_ID)

        services.register_connector(connector)

        assert connector.transformation_engine is services.engine
        assert services.connectors.get(TENANT_ID, PROVIDER_ID) is connector


class TestLifecycle:
    """Tests for start, stop and readiness."""

    @pytest.mark.asyncio
    async def test_start_schedules_enabled_providers(self, configured_settings):
        services = build_services(configured_settings)

        await services.start()
        try:
            schedules = services.polling.get_active_schedules()
            assert [(schedule.provider_id, schedule.interval_seconds) for schedule in schedules] == [
                (PROVIDER_ID, 900)
            ]
            assert schedules[0].strategy == ReconciliationStrategy.AUTO_APPLY
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_start_without_polling(self, configured_settings):
        configured_settings.enable_polling = False
        services = build_services(configured_settings)

        await services.start()
        await services.stop()

        assert services.polling.get_schedule(TENANT_ID, PROVIDER_ID) is None

    @pytest.mark.asyncio
    async def test_database_lifecycle(self):
        services = build_services(_settings(domain_db_connection_string="postgresql://sync@localhost/sync"))
        services.db_pool = AsyncMock()

        await services.start()
        services.db_pool.health_check.return_value = True
        assert await services.is_ready() is True
        await services.stop()

        services.db_pool.initialize.assert_awaited_once()
        services.db_pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_closes_connectors(self, configured_settings):
        services = build_services(configured_settings)
        provider = services.connectors.get(TENANT_ID, PROVIDER_ID)
        provider.close = AsyncMock()

        await services.stop()

        provider.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_in_memory_is_always_ready(self):
        assert await build_services(_settings()).is_ready() is True
