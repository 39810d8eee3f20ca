"""
Sync State Repository

One SyncState document per (tenant, provider) pair. Every write is a
compare-and-swap on the document's version token; ``update`` wraps the
read-modify-write loop and retries against a fresh read on collision.
"""

import json
from abc import ABC
from abc import abstractmethod
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from loguru import logger

from scim_sync.db.pool import SyncDBPool
from scim_sync.sync.exceptions import ConcurrencyConflictError
from scim_sync.sync.models import SyncState
from scim_sync.sync.models import pair_key
from scim_sync.sync.models import utc_now


class SyncStateStore(ABC):
    """Persistence contract for SyncState documents."""

    def __init__(self, max_cas_attempts: int = 5, max_log_entries: int = 1000):
        self.max_cas_attempts = max_cas_attempts
        self.max_log_entries = max_log_entries

    @abstractmethod
    async def get(self, tenant_id: str, provider_id: str) -> Optional[SyncState]:
        """Fetch the current document, or None if the pair was never seen."""

    @abstractmethod
    async def insert(self, state: SyncState) -> SyncState:
        """Create the document. Raises ConcurrencyConflictError if it already exists."""

    @abstractmethod
    async def save(self, state: SyncState, expected_version: int) -> SyncState:
        """Write the document if its stored version still equals expected_version."""

    @abstractmethod
    async def list_states(self, tenant_id: Optional[str] = None) -> List[SyncState]:
        """All documents, optionally restricted to one tenant."""

    async def get_or_create(self, tenant_id: str, provider_id: str) -> SyncState:
        state = await self.get(tenant_id, provider_id)
        if state is not None:
            return state
        try:
            return await self.insert(SyncState.new(tenant_id, provider_id))
        except ConcurrencyConflictError:
            # Another writer created it between our read and insert
            return await self.get(tenant_id, provider_id)

    async def update(
        self,
        tenant_id: str,
        provider_id: str,
        mutate: Callable[[SyncState], None],
    ) -> SyncState:
        """
        Apply ``mutate`` to a fresh copy of the document and compare-and-swap it.

        Args:
            tenant_id: Tenant of the pair
            provider_id: Provider of the pair
            mutate: Callback that edits the document in place. It may run
                more than once, so it must not have side effects beyond the
                document.

        Returns:
            The stored document after the successful write

        Raises:
            ConcurrencyConflictError: every attempt lost to a concurrent writer
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            current = await self.get_or_create(tenant_id, provider_id)
            expected_version = current.version
            working = current.model_copy(deep=True)
            mutate(working)
            working.trim_logs(self.max_log_entries)
            working.modified_at = utc_now()
            try:
                return await self.save(working, expected_version=expected_version)
            except ConcurrencyConflictError:
                logger.warning(
                    "SyncState write collided, retrying with fresh read",
                    tenant_id=tenant_id,
                    provider_id=provider_id,
                    attempt=attempt,
                    expected_version=expected_version,
                )

        raise ConcurrencyConflictError(
            f"SyncState {pair_key(tenant_id, provider_id)} update failed after {self.max_cas_attempts} attempts"
        )


class InMemorySyncStateStore(SyncStateStore):
    """Dictionary-backed store. Reads and writes never await, so each call is atomic on the event loop."""

    def __init__(self, max_cas_attempts: int = 5, max_log_entries: int = 1000):
        super().__init__(max_cas_attempts=max_cas_attempts, max_log_entries=max_log_entries)
        self._documents: Dict[str, SyncState] = {}

    async def get(self, tenant_id: str, provider_id: str) -> Optional[SyncState]:
        stored = self._documents.get(pair_key(tenant_id, provider_id))
        return stored.model_copy(deep=True) if stored else None

    async def insert(self, state: SyncState) -> SyncState:
        key = pair_key(state.tenant_id, state.provider_id)
        if key in self._documents:
            raise ConcurrencyConflictError(f"SyncState {key} already exists")
        stored = state.model_copy(deep=True)
        stored.version = 1
        self._documents[key] = stored
        return stored.model_copy(deep=True)

    async def save(self, state: SyncState, expected_version: int) -> SyncState:
        key = pair_key(state.tenant_id, state.provider_id)
        stored = self._documents.get(key)
        current_version = stored.version if stored else 0
        if current_version != expected_version:
            raise ConcurrencyConflictError(
                f"SyncState {key} version mismatch: expected {expected_version}, found {current_version}"
            )
        updated = state.model_copy(deep=True)
        updated.version = expected_version + 1
        self._documents[key] = updated
        return updated.model_copy(deep=True)

    async def list_states(self, tenant_id: Optional[str] = None) -> List[SyncState]:
        return [
            state.model_copy(deep=True)
            for state in self._documents.values()
            if tenant_id is None or state.tenant_id == tenant_id
        ]


class SyncStateRepository(SyncStateStore):
    """SyncState documents in PostgreSQL (JSONB document plus integer version column)."""

    def __init__(self, pool: SyncDBPool, max_cas_attempts: int = 5, max_log_entries: int = 1000):
        super().__init__(max_cas_attempts=max_cas_attempts, max_log_entries=max_log_entries)
        self.pool = pool

    @staticmethod
    def _from_row(row) -> SyncState:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        state = SyncState.model_validate(document)
        state.version = row["version"]
        return state

    async def get(self, tenant_id: str, provider_id: str) -> Optional[SyncState]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT document, version
                FROM scimsync.sync_states
                WHERE tenant_id = $1 AND provider_id = $2
                """,
                tenant_id,
                provider_id,
            )
        return self._from_row(row) if row else None

    async def insert(self, state: SyncState) -> SyncState:
        stored = state.model_copy(deep=True)
        stored.version = 1
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO scimsync.sync_states (tenant_id, provider_id, version, document, modified_at)
                VALUES ($1, $2, 1, $3::jsonb, NOW())
                ON CONFLICT (tenant_id, provider_id) DO NOTHING
                """,
                stored.tenant_id,
                stored.provider_id,
                stored.model_dump_json(),
            )
        if result != "INSERT 0 1":
            raise ConcurrencyConflictError(f"SyncState {stored.id} already exists")
        return stored

    async def save(self, state: SyncState, expected_version: int) -> SyncState:
        updated = state.model_copy(deep=True)
        updated.version = expected_version + 1
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE scimsync.sync_states
                SET document = $3::jsonb,
                    version = version + 1,
                    modified_at = NOW()
                WHERE tenant_id = $1 AND provider_id = $2 AND version = $4
                """,
                updated.tenant_id,
                updated.provider_id,
                updated.model_dump_json(),
                expected_version,
            )
        if result != "UPDATE 1":
            raise ConcurrencyConflictError(
                f"SyncState {updated.id} version mismatch: expected {expected_version}"
            )
        return updated

    async def list_states(self, tenant_id: Optional[str] = None) -> List[SyncState]:
        async with self.pool.acquire() as conn:
            if tenant_id is None:
                rows = await conn.fetch(
                    "SELECT document, version FROM scimsync.sync_states ORDER BY tenant_id, provider_id"
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT document, version
                    FROM scimsync.sync_states
                    WHERE tenant_id = $1
                    ORDER BY provider_id
                    """,
                    tenant_id,
                )
        return [self._from_row(row) for row in rows]
