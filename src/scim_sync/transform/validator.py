"""Registration-time validation of transformation rules."""

import re
from typing import List

from scim_sync.transform.models import ConditionOperator
from scim_sync.transform.models import RuleType
from scim_sync.transform.models import RuleValidationResult
from scim_sync.transform.models import TransformationRule
from scim_sync.transform.patterns import parse_condition_expression
from scim_sync.transform.patterns import placeholders

_LEVEL_REFERENCE = re.compile(r"^level(\d+)$")
_HIERARCHY_NAMES = {"level", "path", "depth"}


def validate_rule(rule: TransformationRule) -> RuleValidationResult:
    """
    Validate a rule so that malformed patterns never reach evaluation.

    Errors:
    - missing tenant, provider, source pattern or target mapping
    - regex that does not compile, or template index beyond the capture groups
    - hierarchical template with unknown placeholders
    - conditional branch with no target, or MATCHES value that does not compile

    Warnings:
    - hierarchical pattern with a single level
    - level reference deeper than the pattern
    - conditional rule without a default branch
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not rule.tenant_id:
        errors.append("tenant_id is required")
    if not rule.provider_id:
        errors.append("provider_id is required")

    if rule.rule_type == RuleType.CONDITIONAL:
        _validate_conditional(rule, errors, warnings)
    else:
        if not rule.source_pattern:
            errors.append("source_pattern is required")
        if not rule.target_mapping:
            errors.append("target_mapping is required")

    if not errors:
        if rule.rule_type == RuleType.REGEX:
            _validate_regex(rule, errors)
        elif rule.rule_type == RuleType.HIERARCHICAL:
            _validate_hierarchical(rule, errors, warnings)
        elif rule.rule_type == RuleType.EXACT and placeholders(rule.target_mapping):
            warnings.append("Exact rules do not capture values; placeholders in target_mapping render empty")

    return RuleValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _validate_regex(rule: TransformationRule, errors: List[str]) -> None:
    try:
        compiled = re.compile(rule.source_pattern)
    except re.error as e:
        errors.append(f"Invalid regex pattern: {e}")
        return

    for name in placeholders(rule.target_mapping):
        if not name.isdigit():
            errors.append(f"Regex templates only support numeric placeholders, found ${{{name}}}")
        elif int(name) > compiled.groups:
            errors.append(
                f"Template references ${{{name}}} but pattern only has {compiled.groups} capture group(s)"
            )


def _validate_hierarchical(rule: TransformationRule, errors: List[str], warnings: List[str]) -> None:
    if not rule.path_separator:
        errors.append("path_separator must not be empty")
        return

    levels = rule.source_pattern.split(rule.path_separator)
    if len(levels) < 2:
        warnings.append(f"Hierarchical pattern should contain at least 2 levels separated by '{rule.path_separator}'")

    for name in placeholders(rule.target_mapping):
        level_match = _LEVEL_REFERENCE.match(name)
        if level_match:
            level = int(level_match.group(1))
            if level >= len(levels):
                warnings.append(
                    f"Template references ${{level{level}}} but pattern only defines {len(levels)} levels"
                )
        elif name.isdigit():
            continue
        elif name not in _HIERARCHY_NAMES:
            errors.append(f"Unknown placeholder ${{{name}}} in hierarchical template")


def _validate_conditional(rule: TransformationRule, errors: List[str], warnings: List[str]) -> None:
    branches = rule.conditions
    if not branches:
        if not rule.source_pattern or not rule.target_mapping:
            errors.append("Conditional rules need conditions, or a source_pattern expression with a target_mapping")
            return
        branches = parse_condition_expression(
            rule.source_pattern, rule.target_mapping, rule.metadata.get("fallback")
        )

    for position, branch in enumerate(branches):
        if not branch.target:
            errors.append(f"Condition branch {position} has no target")
        for predicate in branch.predicates:
            if predicate.operator == ConditionOperator.MATCHES:
                try:
                    re.compile(predicate.value or "")
                except re.error as e:
                    errors.append(f"Condition branch {position} has an invalid regex: {e}")
            elif predicate.operator != ConditionOperator.EXISTS and predicate.value is None:
                errors.append(f"Condition branch {position} operator {predicate.operator.value} needs a value")

    if not any(branch.default or not branch.predicates for branch in branches):
        warnings.append("Consider adding a default branch for when no condition matches")
