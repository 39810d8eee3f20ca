"""
Transformation Engine

Maps SCIM groups onto provider entitlements through tenant/provider scoped
rules, and maps entitlements back to candidate groups. Rule sets are compiled
once per pair and cached; mutations reload the affected pair, and a single
background task refreshes every cached pair on a fixed interval.
"""

import asyncio
import re
import time
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from loguru import logger

from scim_sync.db.repository_rules import TransformationRuleStore
from scim_sync.sync.audit import AuditSink
from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import ConflictType
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.exceptions import RuleNotFoundError
from scim_sync.sync.exceptions import RuleValidationError
from scim_sync.sync.exceptions import TransformationError
from scim_sync.sync.models import AttributeConflict
from scim_sync.sync.models import AuditEntry
from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import utc_now
from scim_sync.sync.severity import conflict_severity
from scim_sync.transform.models import ConditionalBranch
from scim_sync.transform.models import Entitlement
from scim_sync.transform.models import ReverseCandidate
from scim_sync.transform.models import ReverseTransformationResult
from scim_sync.transform.models import RuleConflictStrategy
from scim_sync.transform.models import RuleMatch
from scim_sync.transform.models import RuleType
from scim_sync.transform.models import RuleValidationResult
from scim_sync.transform.models import TransformationExample
from scim_sync.transform.models import TransformationExampleResult
from scim_sync.transform.models import TransformationResult
from scim_sync.transform.models import TransformationRule
from scim_sync.transform.models import TransformationTestResult
from scim_sync.transform.patterns import compile_predicates
from scim_sync.transform.patterns import evaluate_branch
from scim_sync.transform.patterns import invert_regex
from scim_sync.transform.patterns import match_template
from scim_sync.transform.patterns import parse_condition_expression
from scim_sync.transform.patterns import render_template
from scim_sync.transform.validator import validate_rule

NodeResolver = Callable[[str, str, str], bool]
PairKey = Tuple[str, str]


class CompiledRuleSet:
    """Enabled rules of one pair, ordered by descending priority, with compiled patterns."""

    def __init__(self, rules: List[TransformationRule]):
        self.all_rules = rules
        self.rules = sorted((rule for rule in rules if rule.enabled), key=lambda rule: (-rule.priority, rule.id))
        self.regexes: Dict[str, "re.Pattern[str]"] = {}
        self.branches: Dict[str, List[ConditionalBranch]] = {}
        self.predicate_patterns: Dict[str, "re.Pattern[str]"] = {}
        self.loaded_at = time.monotonic()

        for rule in self.rules:
            if rule.rule_type == RuleType.REGEX:
                self.regexes[rule.id] = re.compile(rule.source_pattern)
            elif rule.rule_type == RuleType.CONDITIONAL:
                branches = rule.conditions or parse_condition_expression(
                    rule.source_pattern, rule.target_mapping, rule.metadata.get("fallback")
                )
                self.branches[rule.id] = branches
                self.predicate_patterns.update(compile_predicates(branches))


class TransformationEngine:
    """Forward and reverse group/entitlement transformation for every tenant and provider."""

    def __init__(
        self,
        store: TransformationRuleStore,
        audit_sink: Optional[AuditSink] = None,
        privilege_ranking: Optional[Dict[str, int]] = None,
        node_resolver: Optional[NodeResolver] = None,
        refresh_interval_seconds: float = 300,
    ):
        """
        Initialize the engine.

        Args:
            store: Rule persistence
            audit_sink: Receives rule create/update/delete entries
            privilege_ranking: Entitlement name (or id) to rank, used by HIGHEST_PRIVILEGE
            node_resolver: Decides whether a rendered hierarchy target exists, for
                rules that do not list their ``hierarchy_nodes``
            refresh_interval_seconds: Background cache refresh period
        """
        self.store = store
        self.audit_sink = audit_sink
        self.privilege_ranking = privilege_ranking or {}
        self.node_resolver = node_resolver
        self.refresh_interval_seconds = refresh_interval_seconds
        self._cache: Dict[PairKey, CompiledRuleSet] = {}
        self._entitlements: Dict[PairKey, Dict[str, Entitlement]] = {}
        self._refresh_task: Optional[asyncio.Task] = None

    # ────────────────────────────────────────────────────────────────────────
    # Cache
    # ────────────────────────────────────────────────────────────────────────

    async def get_rule_set(self, tenant_id: str, provider_id: str) -> CompiledRuleSet:
        """Cached rule set; loaded from the store only on first use of a pair."""
        rule_set = self._cache.get((tenant_id, provider_id))
        if rule_set is None:
            rule_set = await self._load(tenant_id, provider_id)
        return rule_set

    async def _load(self, tenant_id: str, provider_id: str) -> CompiledRuleSet:
        rules = await self.store.list_rules(tenant_id, provider_id)
        rule_set = CompiledRuleSet(rules)
        self._cache[(tenant_id, provider_id)] = rule_set
        logger.debug(
            "Transformation rules loaded",
            tenant_id=tenant_id,
            provider_id=provider_id,
            rule_count=len(rules),
        )
        return rule_set

    def invalidate_cache(self, tenant_id: Optional[str] = None, provider_id: Optional[str] = None) -> None:
        """Drop cached rule sets: one pair, one tenant, or everything."""
        if tenant_id is None:
            self._cache.clear()
            return
        for key in list(self._cache):
            if key[0] == tenant_id and (provider_id is None or key[1] == provider_id):
                del self._cache[key]

    async def refresh_all(self) -> None:
        for tenant_id, provider_id in list(self._cache):
            await self._load(tenant_id, provider_id)

    def start_refresh(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            logger.info("Transformation rule cache refresh started", interval_seconds=self.refresh_interval_seconds)

    async def stop_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            try:
                await self.refresh_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep serving the previous rule sets
                logger.error(f"Transformation rule cache refresh failed: {e}", exc_info=True)

    # ────────────────────────────────────────────────────────────────────────
    # Rule management
    # ────────────────────────────────────────────────────────────────────────

    def validate_rule(self, rule: TransformationRule) -> RuleValidationResult:
        return validate_rule(rule)

    async def list_rules(self, tenant_id: str, provider_id: str) -> List[TransformationRule]:
        rule_set = await self.get_rule_set(tenant_id, provider_id)
        return sorted(rule_set.all_rules, key=lambda rule: (-rule.priority, rule.id))

    async def get_rule(self, rule_id: str) -> TransformationRule:
        rule = await self.store.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Transformation rule {rule_id} not found")
        return rule

    async def create_rule(self, rule: TransformationRule, actor: str = "system") -> TransformationRule:
        """Validate, persist and activate a rule. Invalid rules raise RuleValidationError."""
        self._ensure_valid(rule)
        rule.created_at = utc_now()
        rule.modified_at = rule.created_at
        await self.store.save(rule)
        await self._load(rule.tenant_id, rule.provider_id)
        await self._audit("TransformationRuleCreated", rule, actor, before=None, after=rule)
        logger.info("Transformation rule created", rule_id=rule.id, rule_type=rule.rule_type.value)
        return rule

    async def update_rule(self, rule_id: str, rule: TransformationRule, actor: str = "system") -> TransformationRule:
        existing = await self.get_rule(rule_id)
        rule.id = rule_id
        rule.created_at = existing.created_at
        rule.modified_at = utc_now()
        self._ensure_valid(rule)
        await self.store.save(rule)
        await self._load(rule.tenant_id, rule.provider_id)
        if (existing.tenant_id, existing.provider_id) != (rule.tenant_id, rule.provider_id):
            await self._load(existing.tenant_id, existing.provider_id)
        await self._audit("TransformationRuleUpdated", rule, actor, before=existing, after=rule)
        return rule

    async def delete_rule(self, rule_id: str, actor: str = "system") -> None:
        existing = await self.get_rule(rule_id)
        await self.store.delete(rule_id)
        await self._load(existing.tenant_id, existing.provider_id)
        await self._audit("TransformationRuleDeleted", existing, actor, before=existing, after=None)
        logger.info("Transformation rule deleted", rule_id=rule_id)

    @staticmethod
    def _ensure_valid(rule: TransformationRule) -> None:
        validation = validate_rule(rule)
        if not validation.is_valid:
            raise RuleValidationError(
                f"Transformation rule {rule.id} is invalid: {'; '.join(validation.errors)}",
                errors=validation.errors,
            )
        for warning in validation.warnings:
            logger.warning("Transformation rule warning", rule_id=rule.id, warning=warning)

    async def _audit(
        self,
        operation: str,
        rule: TransformationRule,
        actor: str,
        before: Optional[TransformationRule],
        after: Optional[TransformationRule],
    ) -> None:
        if self.audit_sink is None:
            return
        await self.audit_sink.record(
            AuditEntry(
                tenant_id=rule.tenant_id,
                provider_id=rule.provider_id,
                actor=actor,
                operation=operation,
                resource_type="TransformationRule",
                resource_id=rule.id,
                before=before.model_dump(mode="json") if before else None,
                after=after.model_dump(mode="json") if after else None,
                outcome=AuditOutcome.SUCCESS,
            )
        )

    # ────────────────────────────────────────────────────────────────────────
    # Forward transformation
    # ────────────────────────────────────────────────────────────────────────

    async def transform_group(
        self,
        tenant_id: str,
        provider_id: str,
        group_name: str,
        attributes: Optional[Dict[str, Any]] = None,
        user_attributes: Optional[Dict[str, Any]] = None,
    ) -> TransformationResult:
        """Entitlements for a single group."""
        return await self.transform_groups(
            tenant_id,
            provider_id,
            [group_name],
            attributes={group_name: attributes or {}},
            user_attributes=user_attributes,
        )

    async def transform_groups(
        self,
        tenant_id: str,
        provider_id: str,
        group_names: List[str],
        attributes: Optional[Dict[str, Dict[str, Any]]] = None,
        user_attributes: Optional[Dict[str, Any]] = None,
    ) -> TransformationResult:
        """
        Entitlements for all of a user's groups.

        Every enabled rule is evaluated against every group. When more than one
        entitlement results, the conflict resolution of the highest-priority
        matching rule reduces them.

        Args:
            tenant_id: Tenant of the pair
            provider_id: Provider of the pair
            group_names: SCIM group display names
            attributes: Extra group attributes per group name, for conditional rules
            user_attributes: User attributes, visible to conditional rules as ``user.*``

        Returns:
            TransformationResult with entitlements, warnings, and a
            TRANSFORMATION_CONFLICT report when a required mapping failed or
            MANUAL_REVIEW withheld the assignment
        """
        rule_set = await self.get_rule_set(tenant_id, provider_id)
        attributes = attributes or {}
        result = TransformationResult(group_names=list(group_names))

        matches: List[Tuple[TransformationRule, str, RuleMatch]] = []
        unresolved: List[Tuple[TransformationRule, str]] = []
        for group_name in group_names:
            context = {"displayName": group_name, **(attributes.get(group_name) or {}), "user": user_attributes or {}}
            for rule in rule_set.rules:
                match = self._match_rule(rule, group_name, context, rule_set)
                if match is not None and match.target:
                    matches.append((rule, group_name, match))
                elif rule.required and self._in_scope(rule, group_name, rule_set):
                    unresolved.append((rule, group_name))

        required_conflict = None
        if unresolved:
            failed_groups = sorted({group_name for _, group_name in unresolved})
            logger.error(
                "Required transformation rule produced no entitlement",
                tenant_id=tenant_id,
                provider_id=provider_id,
                rule_ids=sorted({rule.id for rule, _ in unresolved}),
                groups=failed_groups,
            )
            required_conflict = self._transformation_conflict(
                tenant_id, provider_id, failed_groups, [], "required mapping unresolved"
            )

        if not matches:
            result.conflict = required_conflict
            if required_conflict is None:
                message = f"No transformation rule matched group(s): {', '.join(group_names)}"
                logger.warning(message, tenant_id=tenant_id, provider_id=provider_id)
                result.warnings.append(message)
            return result

        # Matches are in descending priority per group; order them globally
        matches.sort(key=lambda item: (-item[0].priority, item[0].id))
        entitlements: Dict[str, Entitlement] = {}
        for rule, group_name, match in matches:
            if rule.id not in result.matched_rule_ids:
                result.matched_rule_ids.append(rule.id)
            entitlement = entitlements.get(match.target)
            if entitlement is None:
                entitlements[match.target] = Entitlement(
                    entitlement_id=match.target,
                    name=match.target,
                    type=rule.target_type,
                    mapped_groups=[group_name],
                    priority=rule.priority,
                    metadata=dict(rule.metadata),
                    source_rule_id=rule.id,
                )
            elif group_name not in entitlement.mapped_groups:
                entitlement.mapped_groups.append(group_name)

        resolved = list(entitlements.values())
        if len(resolved) > 1:
            strategy = matches[0][0].conflict_resolution
            resolved, conflict = self.resolve_conflicts(tenant_id, provider_id, group_names, resolved, strategy)
            result.conflict = conflict
        if result.conflict is None:
            result.conflict = required_conflict

        for entitlement in resolved:
            self._remember(tenant_id, provider_id, entitlement)
        result.entitlements = resolved

        logger.debug(
            "Transformed groups",
            tenant_id=tenant_id,
            provider_id=provider_id,
            group_count=len(group_names),
            entitlement_count=len(resolved),
        )
        return result

    def resolve_conflicts(
        self,
        tenant_id: str,
        provider_id: str,
        group_names: List[str],
        entitlements: List[Entitlement],
        strategy: RuleConflictStrategy,
    ) -> Tuple[List[Entitlement], Optional[ConflictReport]]:
        """Reduce several matched entitlements according to ``strategy``."""
        if strategy == RuleConflictStrategy.UNION:
            return entitlements, None

        if strategy == RuleConflictStrategy.FIRST_MATCH:
            return [self._first_match(entitlements)], None

        if strategy == RuleConflictStrategy.HIGHEST_PRIVILEGE:
            ranked = [(self._privilege_rank(entitlement), entitlement) for entitlement in entitlements]
            if all(rank is None for rank, _ in ranked):
                logger.warning(
                    "HIGHEST_PRIVILEGE resolution has no privilege ranking, falling back to first match",
                    tenant_id=tenant_id,
                    provider_id=provider_id,
                )
                return [self._first_match(entitlements)], None
            best = max(ranked, key=lambda item: (item[0] if item[0] is not None else -1, item[1].priority))
            return [best[1]], None

        # MANUAL_REVIEW: assign nothing automatically
        logger.warning(
            "Transformation conflict requires manual review",
            tenant_id=tenant_id,
            provider_id=provider_id,
            groups=group_names,
            entitlements=[entitlement.name for entitlement in entitlements],
        )
        return [], self._transformation_conflict(
            tenant_id, provider_id, group_names, entitlements, "multiple entitlements matched"
        )

    @staticmethod
    def _first_match(entitlements: List[Entitlement]) -> Entitlement:
        # max() keeps the first of equal priorities, which is match order
        return max(entitlements, key=lambda entitlement: entitlement.priority)

    def _privilege_rank(self, entitlement: Entitlement) -> Optional[int]:
        for key in (entitlement.name, entitlement.entitlement_id):
            if key in self.privilege_ranking:
                return self.privilege_ranking[key]
        level = entitlement.metadata.get("privilege_level")
        if level is None:
            return None
        try:
            return int(level)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _transformation_conflict(
        tenant_id: str,
        provider_id: str,
        group_names: List[str],
        entitlements: List[Entitlement],
        reason: str,
    ) -> ConflictReport:
        return ConflictReport(
            tenant_id=tenant_id,
            provider_id=provider_id,
            conflict_type=ConflictType.TRANSFORMATION_CONFLICT,
            resource_type=ResourceType.GROUP,
            resource_id=",".join(group_names),
            severity=conflict_severity(ConflictType.TRANSFORMATION_CONFLICT),
            conflicting_attributes=[
                AttributeConflict(
                    name="entitlements",
                    source_value=list(group_names),
                    provider_value=[entitlement.name for entitlement in entitlements],
                    is_multi_valued=True,
                )
            ],
            resolution_notes=reason,
            sync_blocked=False,
        )

    def _remember(self, tenant_id: str, provider_id: str, entitlement: Entitlement) -> None:
        """Track which groups map to an entitlement, for reverse lookup."""
        registry = self._entitlements.setdefault((tenant_id, provider_id), {})
        known = registry.get(entitlement.name)
        if known is None:
            registry[entitlement.name] = entitlement.model_copy(deep=True)
            return
        for group_name in entitlement.mapped_groups:
            if group_name not in known.mapped_groups:
                known.mapped_groups.append(group_name)

    def get_entitlement(self, tenant_id: str, provider_id: str, name: str) -> Optional[Entitlement]:
        return self._entitlements.get((tenant_id, provider_id), {}).get(name)

    # ────────────────────────────────────────────────────────────────────────
    # Pattern matching
    # ────────────────────────────────────────────────────────────────────────

    def _match_rule(
        self,
        rule: TransformationRule,
        group_name: str,
        context: Dict[str, Any],
        rule_set: CompiledRuleSet,
    ) -> Optional[RuleMatch]:
        if rule.rule_type == RuleType.EXACT:
            # Exact match is case-sensitive
            if rule.source_pattern != group_name:
                return None
            return RuleMatch(rule_id=rule.id, target=render_template(rule.target_mapping, {"0": group_name}))

        if rule.rule_type == RuleType.REGEX:
            match = rule_set.regexes[rule.id].search(group_name)
            if not match:
                return None
            captures = {"0": match.group(0)}
            for index, value in enumerate(match.groups(), start=1):
                captures[str(index)] = value or ""
            return RuleMatch(rule_id=rule.id, target=render_template(rule.target_mapping, captures), captures=captures)

        if rule.rule_type == RuleType.HIERARCHICAL:
            return self._match_hierarchical(rule, group_name)

        for branch in rule_set.branches[rule.id]:
            if evaluate_branch(branch, context, rule_set.predicate_patterns):
                return RuleMatch(rule_id=rule.id, target=render_template(branch.target, {"0": group_name}))
        return None

    def _match_hierarchical(self, rule: TransformationRule, group_name: str) -> Optional[RuleMatch]:
        """Walk from the deepest level upward; the deepest level that resolves to a known node wins."""
        separator = rule.path_separator
        levels = [level.strip() for level in group_name.split(separator)]
        pattern_levels = [level.strip() for level in rule.source_pattern.split(separator)]
        if len(levels) < len(pattern_levels):
            return None
        for expected, actual in zip(pattern_levels, levels):
            if expected != "*" and expected != actual:
                return None

        for depth in range(len(levels) - 1, -1, -1):
            values = {
                "level": levels[depth],
                "path": separator.join(levels[: depth + 1]),
                "depth": str(depth),
            }
            for index in range(depth + 1):
                values[f"level{index}"] = levels[index]
                values[str(index)] = levels[index]
            candidate = render_template(rule.target_mapping, values)
            if self._node_exists(rule, candidate):
                return RuleMatch(rule_id=rule.id, target=candidate, captures=values)
            logger.debug("Hierarchy level unresolved, walking up", rule_id=rule.id, depth=depth, candidate=candidate)

        return None

    @staticmethod
    def _in_scope(rule: TransformationRule, group_name: str, rule_set: CompiledRuleSet) -> bool:
        """
        Whether ``group_name`` is one the rule is responsible for mapping.

        Exact and regex rules own the groups their pattern matches, hierarchical
        rules the paths under their pattern. Conditional rules own every group.
        """
        if rule.rule_type == RuleType.EXACT:
            return rule.source_pattern == group_name
        if rule.rule_type == RuleType.REGEX:
            return rule_set.regexes[rule.id].search(group_name) is not None
        if rule.rule_type == RuleType.HIERARCHICAL:
            levels = [level.strip() for level in group_name.split(rule.path_separator)]
            pattern_levels = [level.strip() for level in rule.source_pattern.split(rule.path_separator)]
            return len(levels) >= len(pattern_levels) and all(
                expected in ("*", actual) for expected, actual in zip(pattern_levels, levels)
            )
        return True

    def _node_exists(self, rule: TransformationRule, candidate: str) -> bool:
        if rule.hierarchy_nodes is not None:
            return candidate in rule.hierarchy_nodes
        if self.node_resolver is not None:
            return self.node_resolver(rule.tenant_id, rule.provider_id, candidate)
        return True

    # ────────────────────────────────────────────────────────────────────────
    # Reverse transformation
    # ────────────────────────────────────────────────────────────────────────

    async def reverse_transform(
        self,
        tenant_id: str,
        provider_id: str,
        entitlement_name: str,
    ) -> ReverseTransformationResult:
        """
        Candidate source groups for a provider entitlement.

        Candidates come from groups already observed mapping to the entitlement
        and from inverting every reverse-enabled rule. They are ordered by rule
        priority (descending) then group name. The result is ambiguous when
        more than one candidate remains or any candidate is only a pattern.
        """
        rule_set = await self.get_rule_set(tenant_id, provider_id)
        candidates: Dict[str, ReverseCandidate] = {}

        def add(candidate: ReverseCandidate) -> None:
            existing = candidates.get(candidate.group_name)
            if existing is None or (candidate.exact and not existing.exact):
                candidates[candidate.group_name] = candidate

        known = self.get_entitlement(tenant_id, provider_id, entitlement_name)
        if known is not None:
            for group_name in known.mapped_groups:
                add(ReverseCandidate(group_name=group_name, rule_id=known.source_rule_id, priority=known.priority))

        for rule in rule_set.rules:
            if not rule.reverse_enabled:
                continue
            candidate = self._reverse_rule(rule, entitlement_name, rule_set)
            if candidate is not None:
                add(candidate)

        ordered = sorted(candidates.values(), key=lambda candidate: (-candidate.priority, candidate.group_name))
        result = ReverseTransformationResult(
            entitlement_name=entitlement_name,
            candidates=ordered,
            ambiguous=len(ordered) > 1 or any(not candidate.exact for candidate in ordered),
        )
        if result.ambiguous:
            logger.warning(
                "Ambiguous reverse transformation",
                tenant_id=tenant_id,
                provider_id=provider_id,
                entitlement=entitlement_name,
                candidates=[candidate.group_name for candidate in ordered],
            )
        return result

    async def resolve_group(
        self,
        tenant_id: str,
        provider_id: str,
        entitlement_name: str,
        required: bool = False,
    ) -> Optional[str]:
        """
        The single group behind an entitlement.

        Raises:
            TransformationError: the mapping is ambiguous or missing and ``required`` is set
        """
        result = await self.reverse_transform(tenant_id, provider_id, entitlement_name)
        if result.group_name is not None:
            return result.group_name
        if required:
            raise TransformationError(
                f"Entitlement '{entitlement_name}' does not map back to exactly one group",
                candidates=[candidate.group_name for candidate in result.candidates],
            )
        return None

    def _reverse_rule(
        self,
        rule: TransformationRule,
        entitlement_name: str,
        rule_set: CompiledRuleSet,
    ) -> Optional[ReverseCandidate]:
        if rule.rule_type == RuleType.EXACT:
            if rule.target_mapping != entitlement_name:
                return None
            return ReverseCandidate(group_name=rule.source_pattern, rule_id=rule.id, priority=rule.priority)

        if rule.rule_type == RuleType.REGEX:
            values = match_template(rule.target_mapping, entitlement_name)
            if values is None:
                return None
            if "0" in values:
                group_name, exact = values["0"], True
            else:
                captures = {int(name): value for name, value in values.items() if name.isdigit()}
                group_name, exact = invert_regex(rule.source_pattern, captures)
            if exact:
                # The rebuilt name must transform back to the same entitlement
                match = self._match_rule(rule, group_name, {"displayName": group_name}, rule_set)
                exact = match is not None and match.target == entitlement_name
            return ReverseCandidate(group_name=group_name, rule_id=rule.id, priority=rule.priority, exact=exact)

        if rule.rule_type == RuleType.HIERARCHICAL:
            values = match_template(rule.target_mapping, entitlement_name)
            if values is None:
                return None
            if values.get("path"):
                return ReverseCandidate(group_name=values["path"], rule_id=rule.id, priority=rule.priority)
            # Only a level is recoverable, not the full path
            hint = values.get("level") or next((value for value in values.values() if value), None)
            if not hint:
                return None
            return ReverseCandidate(group_name=hint, rule_id=rule.id, priority=rule.priority, exact=False)

        # Conditional rules are not reversible
        return None

    # ────────────────────────────────────────────────────────────────────────
    # Testing and preview
    # ────────────────────────────────────────────────────────────────────────

    def test_rule(self, rule: TransformationRule, examples: List[TransformationExample]) -> TransformationTestResult:
        """Run a (possibly unsaved) rule against examples without touching the cache."""
        validation = validate_rule(rule)
        if not validation.is_valid:
            return TransformationTestResult(rule_id=rule.id, passed=False, validation=validation)

        single = CompiledRuleSet([rule.model_copy(update={"enabled": True})])
        results = []
        for example in examples:
            context = {"displayName": example.group_name, **example.attributes}
            match = self._match_rule(single.rules[0], example.group_name, context, single)
            actual = [match.target] if match else []
            results.append(
                TransformationExampleResult(
                    group_name=example.group_name,
                    expected=example.expected,
                    actual=actual,
                    passed=sorted(actual) == sorted(example.expected),
                )
            )
        return TransformationTestResult(
            rule_id=rule.id,
            passed=all(item.passed for item in results),
            results=results,
            validation=validation,
        )

    async def preview_transformation(
        self,
        tenant_id: str,
        provider_id: str,
        group_names: List[str],
    ) -> Dict[str, TransformationResult]:
        """Transform each group independently with the active rules."""
        preview = {}
        for group_name in group_names:
            preview[group_name] = await self.transform_group(tenant_id, provider_id, group_name)
        return preview
