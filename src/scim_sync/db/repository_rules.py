"""
Transformation Rule Repository

Storage for transformation rules, keyed by rule id and listed per pair.
"""

import json
from abc import ABC
from abc import abstractmethod
from typing import Dict
from typing import List
from typing import Optional

from scim_sync.db.pool import SyncDBPool
from scim_sync.transform.models import TransformationRule


class TransformationRuleStore(ABC):
    """Persistence contract for transformation rules."""

    @abstractmethod
    async def list_rules(self, tenant_id: str, provider_id: str) -> List[TransformationRule]:
        """All rules (enabled or not) for a pair."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[TransformationRule]:
        """One rule by id."""

    @abstractmethod
    async def save(self, rule: TransformationRule) -> TransformationRule:
        """Insert or replace a rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Remove a rule; False when it did not exist."""


class InMemoryTransformationRuleStore(TransformationRuleStore):
    """Dictionary-backed rule store."""

    def __init__(self):
        self._rules: Dict[str, TransformationRule] = {}

    async def list_rules(self, tenant_id: str, provider_id: str) -> List[TransformationRule]:
        return [
            rule.model_copy(deep=True)
            for rule in self._rules.values()
            if rule.tenant_id == tenant_id and rule.provider_id == provider_id
        ]

    async def get(self, rule_id: str) -> Optional[TransformationRule]:
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def save(self, rule: TransformationRule) -> TransformationRule:
        self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    async def delete(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None


class TransformationRuleRepository(TransformationRuleStore):
    """Transformation rules in PostgreSQL, one JSONB document per rule."""

    def __init__(self, pool: SyncDBPool):
        self.pool = pool

    @staticmethod
    def _from_row(row) -> TransformationRule:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        return TransformationRule.model_validate(document)

    async def list_rules(self, tenant_id: str, provider_id: str) -> List[TransformationRule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT document
                FROM scimsync.transformation_rules
                WHERE tenant_id = $1 AND provider_id = $2
                """,
                tenant_id,
                provider_id,
            )
        return [self._from_row(row) for row in rows]

    async def get(self, rule_id: str) -> Optional[TransformationRule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT document FROM scimsync.transformation_rules WHERE rule_id = $1",
                rule_id,
            )
        return self._from_row(row) if row else None

    async def save(self, rule: TransformationRule) -> TransformationRule:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO scimsync.transformation_rules (rule_id, tenant_id, provider_id, document, modified_at)
                VALUES ($1, $2, $3, $4::jsonb, NOW())
                ON CONFLICT (rule_id) DO UPDATE
                SET tenant_id = EXCLUDED.tenant_id,
                    provider_id = EXCLUDED.provider_id,
                    document = EXCLUDED.document,
                    modified_at = NOW()
                """,
                rule.id,
                rule.tenant_id,
                rule.provider_id,
                rule.model_dump_json(),
            )
        return rule

    async def delete(self, rule_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM scimsync.transformation_rules WHERE rule_id = $1",
                rule_id,
            )
        return result != "DELETE 0"
