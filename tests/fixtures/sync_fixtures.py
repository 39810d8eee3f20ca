"""Fixtures for sync engine collaborators wired together without the HTTP layer."""

import pytest

from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.connectors.registry import ConnectorRegistry
from scim_sync.db.repository_rules import InMemoryTransformationRuleStore
from scim_sync.db.repository_sync_state import InMemorySyncStateStore
from scim_sync.sync.alerts import InMemoryAlertSink
from scim_sync.sync.audit import InMemoryAuditSink
from scim_sync.sync.backoff import BackoffPolicy
from scim_sync.sync.change_detector import ChangeDetector
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.polling import PollingOptions
from scim_sync.sync.polling import PollingService
from scim_sync.sync.reconciler import Reconciler
from scim_sync.sync.reconciler import ReconcilerOptions
from scim_sync.transform.engine import TransformationEngine
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID


@pytest.fixture
def detector():
    return ChangeDetector()


@pytest.fixture
def state_store():
    """In-memory SyncState store with small log caps."""
    return InMemorySyncStateStore(max_cas_attempts=3, max_log_entries=50)


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def alert_sink():
    return InMemoryAlertSink()


@pytest.fixture
def rule_store():
    return InMemoryTransformationRuleStore()


@pytest.fixture
def engine(rule_store, audit_sink):
    """Transformation engine over an empty rule store."""
    return TransformationEngine(rule_store, audit_sink=audit_sink)


@pytest.fixture
def provider():
    """Empty in-memory provider connector for the default pair."""
    return InMemoryConnector(TENANT_ID, PROVIDER_ID)


@pytest.fixture
def source():
    """Empty in-memory Source connector for the default tenant."""
    return InMemoryConnector(TENANT_ID, "source")


@pytest.fixture
def registry(provider, engine):
    """Registry holding the provider only; tests register a Source when they need one."""
    registry = ConnectorRegistry()
    provider.transformation_engine = engine
    registry.register(provider)
    return registry


@pytest.fixture
def direction_manager(state_store, audit_sink):
    return SyncDirectionManager(state_store, audit_sink)


@pytest.fixture
def notifications():
    """Reports passed to the reconciler's notifier."""
    return []


@pytest.fixture
def reconciler(state_store, audit_sink, registry, direction_manager, detector, notifications):
    """Reconciler with a recording notifier."""

    async def notifier(report):
        notifications.append(report)

    return Reconciler(
        state_store,
        audit_sink,
        registry,
        direction_manager,
        options=ReconcilerOptions(),
        notifier=notifier,
        detector=detector,
    )


@pytest.fixture
def backoff():
    return BackoffPolicy(
        base_delay_seconds=30,
        max_delay_seconds=300,
        max_retry_attempts=3,
        alert_after_consecutive_failures=3,
    )


@pytest.fixture
def polling(state_store, registry, reconciler, direction_manager, audit_sink, backoff, alert_sink, detector):
    """Polling service with a page size small enough to exercise pagination."""
    return PollingService(
        state_store,
        registry,
        reconciler,
        direction_manager,
        audit_sink,
        backoff=backoff,
        alert_sink=alert_sink,
        detector=detector,
        options=PollingOptions(default_interval_seconds=300, min_interval_seconds=60, page_size=2),
    )
