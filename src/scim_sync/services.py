"""
Service container

Builds the sync engine's collaborators from Settings and owns their
lifecycle. One container per application; nothing here is a module-level
singleton.
"""

from typing import Optional

from loguru import logger

from scim_sync.connectors.base import Connector
from scim_sync.connectors.base import ConnectorCapabilities
from scim_sync.connectors.memory import InMemoryConnector
from scim_sync.connectors.registry import ConnectorRegistry
from scim_sync.connectors.scim_http import ScimHttpConnector
from scim_sync.db.pool import SyncDBPool
from scim_sync.db.repository_audit import AuditTrailRepository
from scim_sync.db.repository_rules import InMemoryTransformationRuleStore
from scim_sync.db.repository_rules import TransformationRuleRepository
from scim_sync.db.repository_rules import TransformationRuleStore
from scim_sync.db.repository_sync_state import InMemorySyncStateStore
from scim_sync.db.repository_sync_state import SyncStateRepository
from scim_sync.db.repository_sync_state import SyncStateStore
from scim_sync.settings import ConnectorConfig
from scim_sync.settings import Settings
from scim_sync.sync.alerts import AlertSink
from scim_sync.sync.alerts import LoggingAlertSink
from scim_sync.sync.alerts import log_operator_notification
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.audit import CompositeAuditSink
from scim_sync.sync.audit import InMemoryAuditSink
from scim_sync.sync.audit import LoggingAuditSink
from scim_sync.sync.backoff import BackoffPolicy
from scim_sync.sync.change_detector import ChangeDetector
from scim_sync.sync.direction import SyncDirectionManager
from scim_sync.sync.polling import PollingOptions
from scim_sync.sync.polling import PollingService
from scim_sync.sync.reconciler import Reconciler
from scim_sync.sync.reconciler import ReconcilerOptions
from scim_sync.transform.engine import TransformationEngine


class SyncServices:
    """Every collaborator of one running sync engine."""

    def __init__(
        self,
        settings: Settings,
        sync_state_store: SyncStateStore,
        rule_store: TransformationRuleStore,
        audit_sink: AuditSink,
        alert_sink: Optional[AlertSink] = None,
        connectors: Optional[ConnectorRegistry] = None,
        db_pool: Optional[SyncDBPool] = None,
    ):
        self.settings = settings
        self.sync_state_store = sync_state_store
        self.rule_store = rule_store
        self.audit_sink = audit_sink
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.connectors = connectors or ConnectorRegistry()
        self.db_pool = db_pool

        detector = ChangeDetector()
        self.engine = TransformationEngine(
            rule_store,
            audit_sink=audit_sink,
            privilege_ranking=settings.privilege_ranking,
            refresh_interval_seconds=settings.rule_cache_refresh_seconds,
        )
        self.direction_manager = SyncDirectionManager(
            sync_state_store, audit_sink, default_direction=settings.default_sync_direction
        )
        self.reconciler = Reconciler(
            sync_state_store,
            audit_sink,
            self.connectors,
            self.direction_manager,
            options=ReconcilerOptions(
                default_strategy=settings.default_reconciliation_strategy,
                max_auto_apply_per_cycle=settings.max_auto_apply_per_cycle,
                notify_severity_threshold=settings.notify_severity_threshold,
            ),
            notifier=log_operator_notification,
            detector=detector,
        )
        self.polling = PollingService(
            sync_state_store,
            self.connectors,
            self.reconciler,
            self.direction_manager,
            audit_sink,
            backoff=BackoffPolicy(
                base_delay_seconds=settings.retry_base_delay_seconds,
                max_delay_seconds=settings.max_retry_delay_seconds,
                max_retry_attempts=settings.max_retry_attempts,
                alert_after_consecutive_failures=settings.alert_after_consecutive_failures,
            ),
            alert_sink=self.alert_sink,
            detector=detector,
            options=PollingOptions(
                default_interval_seconds=settings.poll_interval_seconds,
                min_interval_seconds=settings.min_poll_interval_seconds,
                max_interval_seconds=settings.max_poll_interval_seconds,
                page_size=settings.page_size,
                max_recent_results=settings.max_recent_results,
            ),
        )
        self._started = False

    def register_connector(self, connector: Connector, is_source: bool = False) -> None:
        """Register a connector and wire it to this container's transformation engine."""
        if connector.transformation_engine is None:
            connector.transformation_engine = self.engine
        if is_source:
            self.connectors.register_source(connector)
        else:
            self.connectors.register(connector)

    def build_connector(self, config: ConnectorConfig) -> Connector:
        capabilities = ConnectorCapabilities(max_page_size=config.max_page_size, **config.capabilities)
        if config.base_url:
            return ScimHttpConnector(
                config.tenant_id,
                config.provider_id,
                config.base_url,
                bearer_token=config.bearer_token,
                timeout=config.timeout_seconds,
                capabilities=capabilities,
                transformation_engine=self.engine,
            )
        logger.warning(
            "No base_url configured, registering in-memory connector",
            tenant_id=config.tenant_id,
            provider_id=config.provider_id,
        )
        return InMemoryConnector(
            config.tenant_id,
            config.provider_id,
            capabilities=capabilities,
            transformation_engine=self.engine,
        )

    async def start(self) -> None:
        """Open the database, start the rule refresh and the configured poll schedules."""
        if self._started:
            return
        if self.db_pool is not None:
            await self.db_pool.initialize()

        self.engine.start_refresh()

        if self.settings.enable_polling:
            for config in self.settings.connectors:
                if config.is_source or not config.enabled:
                    continue
                if config.strategy is not None:
                    self.reconciler.set_strategy(config.tenant_id, config.provider_id, config.strategy)
                await self.polling.start_polling(
                    config.tenant_id,
                    config.provider_id,
                    interval_seconds=config.poll_interval_seconds,
                    strategy=config.strategy,
                )
        self._started = True
        logger.success(
            "Sync services started",
            polling_enabled=self.settings.enable_polling,
            active_schedules=len(self.polling.get_active_schedules()),
            persistent=self.db_pool is not None,
        )

    async def stop(self) -> None:
        """Stop timers and background tasks, then release connections."""
        await self.polling.shutdown()
        await self.engine.stop_refresh()
        for connector in self.connectors.all_connectors():
            close = getattr(connector, "close", None)
            if close is not None:
                await close()
        if self.db_pool is not None:
            await self.db_pool.close()
        self._started = False
        logger.info("Sync services stopped")

    async def is_ready(self) -> bool:
        """Readiness: the database (when configured) answers."""
        if self.db_pool is None:
            return True
        return await self.db_pool.health_check()


def build_services(settings: Settings) -> SyncServices:
    """
    Build the service container for the given settings.

    PostgreSQL-backed stores are used when ``domain_db_connection_string`` is
    set; otherwise everything is kept in memory. Audit entries always go to
    the log as well as to the store.
    """
    db_pool: Optional[SyncDBPool] = None
    if settings.domain_db_connection_string:
        db_pool = SyncDBPool(settings.domain_db_connection_string)
        sync_state_store: SyncStateStore = SyncStateRepository(
            db_pool, max_cas_attempts=settings.max_cas_attempts, max_log_entries=settings.max_log_entries
        )
        rule_store: TransformationRuleStore = TransformationRuleRepository(db_pool)
        audit_store: AuditSink = AuditTrailRepository(db_pool)
        logger.info("Using PostgreSQL persistence for sync state, rules and audit trail")
    else:
        sync_state_store = InMemorySyncStateStore(
            max_cas_attempts=settings.max_cas_attempts, max_log_entries=settings.max_log_entries
        )
        rule_store = InMemoryTransformationRuleStore()
        audit_store = InMemoryAuditSink()
        logger.warning("domain_db_connection_string not set, sync state is kept in memory only")

    services = SyncServices(
        settings,
        sync_state_store=sync_state_store,
        rule_store=rule_store,
        audit_sink=CompositeAuditSink(LoggingAuditSink(), audit_store),
        db_pool=db_pool,
    )

    for config in settings.connectors:
        services.register_connector(services.build_connector(config), is_source=config.is_source)
        if config.strategy is not None and not config.is_source:
            services.reconciler.set_strategy(config.tenant_id, config.provider_id, config.strategy)

    return services
