"""Unit tests for SyncState persistence and compare-and-swap updates."""

import pytest

from scim_sync.db.repository_sync_state import InMemorySyncStateStore
from scim_sync.sync.enums import SyncDirection
from scim_sync.sync.exceptions import ConcurrencyConflictError
from scim_sync.sync.models import SyncErrorEntry
from scim_sync.sync.models import SyncState
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID


class CollidingStore(InMemorySyncStateStore):
    """Simulates another writer landing between read and write for the first ``collisions`` saves."""

    def __init__(self, collisions: int, **kwargs):
        super().__init__(**kwargs)
        self.collisions = collisions
        self.save_attempts = 0

    async def save(self, state: SyncState, expected_version: int) -> SyncState:
        self.save_attempts += 1
        if self.collisions > 0:
            self.collisions -= 1
            stored = await self.get(state.tenant_id, state.provider_id)
            stored.user_count += 100
            await super().save(stored, expected_version=stored.version)
        return await super().save(state, expected_version)


class TestInMemoryStore:
    """Tests for the basic document operations."""

    @pytest.mark.asyncio
    async def test_get_or_create(self, state_store):
        created = await state_store.get_or_create(TENANT_ID, PROVIDER_ID)
        again = await state_store.get_or_create(TENANT_ID, PROVIDER_ID)

        assert created.version == 1
        assert again.id == created.id
        assert created.last_known_state is None

    @pytest.mark.asyncio
    async def test_insert_twice_conflicts(self, state_store):
        await state_store.insert(SyncState.new(TENANT_ID, PROVIDER_ID))

        with pytest.raises(ConcurrencyConflictError):
            await state_store.insert(SyncState.new(TENANT_ID, PROVIDER_ID))

    @pytest.mark.asyncio
    async def test_save_with_stale_version_conflicts(self, state_store):
        state = await state_store.get_or_create(TENANT_ID, PROVIDER_ID)
        await state_store.save(state, expected_version=1)

        with pytest.raises(ConcurrencyConflictError):
            await state_store.save(state, expected_version=1)

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, state_store):
        state = await state_store.get_or_create(TENANT_ID, PROVIDER_ID)
        state.user_count = 42

        assert (await state_store.get(TENANT_ID, PROVIDER_ID)).user_count == 0

    @pytest.mark.asyncio
    async def test_list_states_by_tenant(self, state_store):
        await state_store.get_or_create(TENANT_ID, PROVIDER_ID)
        await state_store.get_or_create("globex", PROVIDER_ID)

        assert [state.tenant_id for state in await state_store.list_states(TENANT_ID)] == [TENANT_ID]
        assert len(await state_store.list_states()) == 2


class TestUpdate:
    """Tests for the read-modify-write loop."""

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, state_store):
        def mutate(state):
            state.sync_direction = SyncDirection.TARGET_TO_SOURCE

        updated = await state_store.update(TENANT_ID, PROVIDER_ID, mutate)

        assert updated.version == 2
        assert updated.sync_direction == SyncDirection.TARGET_TO_SOURCE

    @pytest.mark.asyncio
    async def test_update_retries_on_collision(self):
        """The losing writer re-reads and re-applies its change on top of the winner's."""
        store = CollidingStore(collisions=2, max_cas_attempts=3)
        await store.get_or_create(TENANT_ID, PROVIDER_ID)

        def mutate(state):
            state.group_count += 1

        updated = await store.update(TENANT_ID, PROVIDER_ID, mutate)

        assert store.save_attempts == 3
        assert updated.group_count == 1
        assert updated.user_count == 200

    @pytest.mark.asyncio
    async def test_update_gives_up_after_max_attempts(self):
        store = CollidingStore(collisions=5, max_cas_attempts=3)
        await store.get_or_create(TENANT_ID, PROVIDER_ID)

        with pytest.raises(ConcurrencyConflictError):
            await store.update(TENANT_ID, PROVIDER_ID, lambda state: None)

        assert store.save_attempts == 3

    @pytest.mark.asyncio
    async def test_logs_are_trimmed(self):
        store = InMemorySyncStateStore(max_log_entries=3)

        def mutate(state):
            for i in range(5):
                state.error_log.append(SyncErrorEntry(error_code=f"E{i}", message="boom"))

        updated = await store.update(TENANT_ID, PROVIDER_ID, mutate)

        assert [entry.error_code for entry in updated.error_log] == ["E2", "E3", "E4"]
