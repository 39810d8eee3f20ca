"""
Pattern helpers for the transformation engine.

Template placeholders have the form ``${name}`` where name is a capture index
(``${1}``), a hierarchy level (``${level2}``), or one of ``${level}``,
``${path}`` and ``${depth}`` for hierarchical rules.
"""

import re
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from scim_sync.transform.models import ConditionalBranch
from scim_sync.transform.models import ConditionMatch
from scim_sync.transform.models import ConditionOperator
from scim_sync.transform.models import ConditionPredicate

PLACEHOLDER_PATTERN = re.compile(r"\$\{(\w+)\}")

_REGEX_METACHARACTERS = set(".^$*+?{}[]|()")
_CONDITION_EXPRESSION = re.compile(r"^\s*([A-Z_]+)\s+(?:'(.*)'|\"(.*)\"|(\S.*))\s*$")


def placeholders(template: str) -> List[str]:
    """Placeholder names in order of appearance."""
    return PLACEHOLDER_PATTERN.findall(template)


def render_template(template: str, values: Dict[str, str]) -> str:
    """Substitute placeholders; unknown placeholders render as empty strings."""
    return PLACEHOLDER_PATTERN.sub(lambda match: values.get(match.group(1), ""), template)


def template_to_regex(template: str) -> "re.Pattern[str]":
    """
    Turn a target template into a regex that captures each placeholder.

    ``Sales_${1}_Rep`` becomes ``Sales_(?P<p_1>.*?)_Rep``. Repeated placeholders
    become back-references so both occurrences must agree. Use with fullmatch.
    """
    parts = []
    seen = set()
    position = 0
    for match in PLACEHOLDER_PATTERN.finditer(template):
        parts.append(re.escape(template[position : match.start()]))
        name = match.group(1)
        if name in seen:
            parts.append(f"(?P=p_{name})")
        else:
            parts.append(f"(?P<p_{name}>.*?)")
            seen.add(name)
        position = match.end()
    parts.append(re.escape(template[position:]))
    return re.compile("".join(parts))


def match_template(template: str, value: str) -> Optional[Dict[str, str]]:
    """Placeholder values recovered from ``value``, or None if it does not fit the template."""
    match = template_to_regex(template).fullmatch(value)
    if not match:
        return None
    return {name[2:]: captured for name, captured in match.groupdict().items()}


# ════════════════════════════════════════════════════════════════════════════
# Regex inversion
# ════════════════════════════════════════════════════════════════════════════


def strip_anchors(pattern: str) -> str:
    if pattern.startswith("^"):
        pattern = pattern[1:]
    if pattern.endswith("$") and not pattern.endswith("\\$"):
        pattern = pattern[:-1]
    return pattern


def capture_group_spans(pattern: str) -> Dict[int, Tuple[int, int]]:
    """
    Map capture group number to its (start, end) span in ``pattern``.

    Groups are numbered by their opening parenthesis, as ``re`` does.
    Non-capturing groups and lookarounds are skipped.
    """
    spans: Dict[int, Tuple[int, int]] = {}
    stack: List[Tuple[Optional[int], int]] = []
    group_number = 0
    in_class = False
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\":
            index += 2
            continue
        if in_class:
            if char == "]":
                in_class = False
        elif char == "[":
            in_class = True
            # A ']' right after '[' or '[^' is literal
            if pattern.startswith("^]", index + 1):
                index += 2
            elif pattern.startswith("]", index + 1):
                index += 1
        elif char == "(":
            if pattern.startswith("(?P<", index) or (
                pattern.startswith("(?<", index) and not pattern.startswith(("(?<=", "(?<!"), index)
            ):
                group_number += 1
                stack.append((group_number, index))
            elif pattern.startswith("(?", index):
                stack.append((None, index))
            else:
                group_number += 1
                stack.append((group_number, index))
        elif char == ")" and stack:
            number, start = stack.pop()
            if number is not None:
                spans[number] = (start, index + 1)
        index += 1
    return spans


def regex_to_literal(fragment: str) -> Tuple[str, bool]:
    """
    Unescape a regex fragment that should contain only literal text.

    Returns the literal text and whether the conversion was exact (no
    unescaped metacharacters or character-class escapes remained).
    """
    literal = []
    exact = True
    index = 0
    while index < len(fragment):
        char = fragment[index]
        if char == "\\" and index + 1 < len(fragment):
            escaped = fragment[index + 1]
            if escaped.isalnum():
                # \d, \w, \s ... stand for sets of characters
                exact = False
                literal.append(char + escaped)
            else:
                literal.append(escaped)
            index += 2
            continue
        if char in _REGEX_METACHARACTERS:
            exact = False
        literal.append(char)
        index += 1
    return "".join(literal), exact


def invert_regex(source_pattern: str, captures: Dict[int, str]) -> Tuple[str, bool]:
    """
    Rebuild the group name a regex rule was matched against.

    Each capture group with a recovered value is replaced by that value; the
    remaining pattern text is unescaped. The result is exact only when no
    regex construct survives (an unreferenced group, a wildcard outside a
    group, a character class).
    """
    pattern = strip_anchors(source_pattern)
    spans = capture_group_spans(pattern)

    selected: List[Tuple[int, int, str]] = []
    for number in sorted(captures):
        if number not in spans:
            continue
        start, end = spans[number]
        if any(start >= s and end <= e for s, e, _ in selected):
            continue
        # Drop already-selected groups nested inside this one
        selected = [item for item in selected if not (item[0] >= start and item[1] <= end)]
        selected.append((start, end, captures[number]))
    selected.sort()

    pieces = []
    exact = True
    position = 0
    for start, end, value in selected:
        literal, fragment_exact = regex_to_literal(pattern[position:start])
        pieces.append(literal)
        exact = exact and fragment_exact
        pieces.append(value)
        position = end
    literal, fragment_exact = regex_to_literal(pattern[position:])
    pieces.append(literal)
    exact = exact and fragment_exact
    return "".join(pieces), exact


# ════════════════════════════════════════════════════════════════════════════
# Conditional predicates
# ════════════════════════════════════════════════════════════════════════════


def parse_condition_expression(expression: str, target: str, fallback: Optional[str] = None) -> List[ConditionalBranch]:
    """
    Parse the shorthand ``OPERATOR 'value'`` form into branches against displayName.

    An expression whose first token is not a known operator is treated as a
    regular expression (MATCHES). A fallback target becomes a trailing
    default branch.
    """
    match = _CONDITION_EXPRESSION.match(expression)
    operator_names = {operator.value for operator in ConditionOperator}
    if match and match.group(1) in operator_names:
        value = next((group for group in match.groups()[1:] if group is not None), None)
        predicate = ConditionPredicate(attribute="displayName", operator=ConditionOperator(match.group(1)), value=value)
    else:
        predicate = ConditionPredicate(attribute="displayName", operator=ConditionOperator.MATCHES, value=expression)

    branches = [ConditionalBranch(predicates=[predicate], target=target)]
    if fallback:
        branches.append(ConditionalBranch(target=fallback, default=True))
    return branches


def lookup_attribute(attributes: Dict[str, Any], path: str) -> Any:
    """Dotted lookup, e.g. ``user.department`` or ``name.givenName``."""
    value: Any = attributes
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def compile_predicates(branches: List[ConditionalBranch]) -> Dict[str, "re.Pattern[str]"]:
    """MATCHES patterns of every branch, compiled case-insensitively and keyed by pattern text."""
    patterns: Dict[str, "re.Pattern[str]"] = {}
    for branch in branches:
        for predicate in branch.predicates:
            if predicate.operator == ConditionOperator.MATCHES:
                value = predicate.value or ""
                if value not in patterns:
                    patterns[value] = re.compile(value, re.IGNORECASE)
    return patterns


def evaluate_predicate(
    predicate: ConditionPredicate,
    attributes: Dict[str, Any],
    patterns: Dict[str, "re.Pattern[str]"],
) -> bool:
    value = lookup_attribute(attributes, predicate.attribute)
    if predicate.operator == ConditionOperator.EXISTS:
        return value not in (None, "", [], {})
    if value is None:
        return predicate.operator == ConditionOperator.NOT_EQUALS

    candidates = value if isinstance(value, list) else [value]
    expected = (predicate.value or "").lower()

    def test(candidate: Any) -> bool:
        text = str(candidate).lower()
        if predicate.operator == ConditionOperator.EQUALS:
            return text == expected
        if predicate.operator == ConditionOperator.CONTAINS:
            return expected in text
        if predicate.operator == ConditionOperator.STARTS_WITH:
            return text.startswith(expected)
        if predicate.operator == ConditionOperator.ENDS_WITH:
            return text.endswith(expected)
        if predicate.operator == ConditionOperator.MATCHES:
            return patterns[predicate.value or ""].search(str(candidate)) is not None
        return False

    if predicate.operator == ConditionOperator.NOT_EQUALS:
        return all(str(candidate).lower() != expected for candidate in candidates)
    return any(test(candidate) for candidate in candidates)


def evaluate_branch(
    branch: ConditionalBranch,
    attributes: Dict[str, Any],
    patterns: Dict[str, "re.Pattern[str]"],
) -> bool:
    if branch.default or not branch.predicates:
        return True
    results = (evaluate_predicate(predicate, attributes, patterns) for predicate in branch.predicates)
    if branch.match == ConditionMatch.ANY:
        return any(results)
    return all(results)
