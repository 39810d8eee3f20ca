"""Settings for the SCIM sync engine."""

from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

from scim_sync.sync.enums import ReconciliationStrategy
from scim_sync.sync.enums import Severity
from scim_sync.sync.enums import SyncDirection


class ConnectorConfig(BaseModel):
    """One configured provider (or Source) endpoint."""

    tenant_id: str
    provider_id: str
    base_url: Optional[str] = None
    """SCIM base URL. Without one, an in-memory connector is registered."""

    bearer_token: Optional[str] = None
    is_source: bool = False
    """Register as the tenant's Source connector instead of a provider."""

    poll_interval_seconds: Optional[int] = None
    strategy: Optional[ReconciliationStrategy] = None
    enabled: bool = True
    timeout_seconds: float = 30.0
    capabilities: Dict[str, bool] = Field(default_factory=dict)
    max_page_size: int = 100


class Settings(BaseSettings):
    """
    Settings for the SCIM sync engine.

    [pydantic.BaseSettings](https://docs.pydantic.dev/latest/concepts/pydantic_settings/) is a popular
    framework for organizing, validating, and reading configuration values from a variety of sources
    including environment variables.

    This class automatically reads from:
    1. Environment variables (production)
    2. .env file (local development)

    Environment variable names are treated case-insensitively, but the canonical
    names used in this project are lowercase (poll_interval_seconds, log_level).
    """

    service_name: str = "SCIM Sync Engine"
    """Service name reported by the health endpoints."""

    log_level: str = "INFO"
    """Minimum level written to stdout."""

    # Persistence
    domain_db_connection_string: Optional[str] = None
    """PostgreSQL connection string for SyncState, rules and audit trail. In-memory stores are used when unset."""

    # Polling
    enable_polling: bool = True
    """Start the schedules of configured connectors at startup."""

    poll_interval_seconds: int = 300
    """Default poll interval."""

    min_poll_interval_seconds: int = 60
    """Lower bound for any poll interval; smaller requests are clamped."""

    max_poll_interval_seconds: int = 86400
    """Upper bound for any poll interval; larger requests are clamped."""

    max_retry_attempts: int = 3
    """Consecutive failures retried on the backoff curve before the pair enters cool-down."""

    retry_base_delay_seconds: float = 30
    """First backoff delay; doubles per consecutive failure."""

    max_retry_delay_seconds: float = 300
    """Ceiling for the backoff delay."""

    alert_after_consecutive_failures: int = 3
    """Consecutive failures after which a single operational alert fires."""

    page_size: int = 100
    """Page size for list calls, capped by the connector's declared maximum."""

    max_recent_results: int = 100
    """Poll results kept in memory for the results endpoint."""

    # Reconciliation
    default_reconciliation_strategy: ReconciliationStrategy = ReconciliationStrategy.MANUAL_REVIEW
    """Strategy for pairs without an explicit one."""

    max_auto_apply_per_cycle: int = 100
    """AutoApply budget per cycle; further drift in the same cycle goes to manual review."""

    notify_severity_threshold: Severity = Severity.HIGH
    """Drift and conflicts at or above this severity are sent to the notifier."""

    default_sync_direction: SyncDirection = SyncDirection.SOURCE_TO_TARGET
    """Direction selected (and audited) the first time a pair is used."""

    # Transformation
    rule_cache_refresh_seconds: float = 300
    """Interval of the background transformation rule cache refresh."""

    privilege_ranking: Dict[str, int] = Field(default_factory=dict)
    """Entitlement name to privilege rank, for HIGHEST_PRIVILEGE rule conflicts (JSON)."""

    # SyncState
    max_log_entries: int = 1000
    """Cap for each SyncState log array; oldest entries are dropped."""

    max_cas_attempts: int = 5
    """Optimistic-concurrency attempts before a SyncState write fails."""

    connectors: List[ConnectorConfig] = Field(default_factory=list)
    """Configured connectors (JSON list)."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",  # Load from .env file if it exists (local development)
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables not defined in the model
        validate_default=True,  # Validate default values
    )
