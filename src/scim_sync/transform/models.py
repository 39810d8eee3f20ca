"""
Transformation Models

Rules mapping SCIM group names onto provider entitlements, and the results
of forward and reverse transformation.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

from scim_sync.sync.models import ConflictReport
from scim_sync.sync.models import new_id
from scim_sync.sync.models import utc_now

# ════════════════════════════════════════════════════════════════════════════
# Rule Enums
# ════════════════════════════════════════════════════════════════════════════


class RuleType(str, Enum):
    """How a rule's source pattern is matched."""

    EXACT = "EXACT"  # Case-sensitive literal match
    REGEX = "REGEX"  # Capture groups substituted into ${n}
    HIERARCHICAL = "HIERARCHICAL"  # Path levels, deepest resolvable wins
    CONDITIONAL = "CONDITIONAL"  # Ordered predicate branches


class RuleConflictStrategy(str, Enum):
    """How multiple matched entitlements are reduced."""

    UNION = "UNION"
    FIRST_MATCH = "FIRST_MATCH"
    HIGHEST_PRIVILEGE = "HIGHEST_PRIVILEGE"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class EntitlementType(str, Enum):
    """Provider-specific access construct."""

    ROLE = "ROLE"
    PERMISSION_SET = "PERMISSION_SET"
    PROFILE = "PROFILE"
    ORG_UNIT = "ORG_UNIT"
    GROUP = "GROUP"
    PERMISSION = "PERMISSION"
    LICENSE = "LICENSE"
    CUSTOM = "CUSTOM"


class ConditionOperator(str, Enum):
    """Predicate operators. Comparisons are case-insensitive."""

    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    MATCHES = "MATCHES"
    EXISTS = "EXISTS"


class ConditionMatch(str, Enum):
    """Combination of a branch's predicates."""

    ALL = "ALL"
    ANY = "ANY"


# ════════════════════════════════════════════════════════════════════════════
# Rules
# ════════════════════════════════════════════════════════════════════════════


class ConditionPredicate(BaseModel):
    """One attribute test. ``attribute`` may be ``user.<name>`` to read user attributes."""

    attribute: str = "displayName"
    operator: ConditionOperator
    value: Optional[str] = None


class ConditionalBranch(BaseModel):
    """Predicates combined by ``match``; a default branch always matches."""

    predicates: List[ConditionPredicate] = Field(default_factory=list)
    match: ConditionMatch = ConditionMatch.ALL
    target: str
    default: bool = False


class TransformationRule(BaseModel):
    """Maps a group naming pattern to an entitlement, optionally reversible."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    provider_id: str
    name: Optional[str] = None
    rule_type: RuleType
    source_pattern: str = ""
    target_mapping: str = ""
    target_type: EntitlementType = EntitlementType.ROLE
    priority: int = 0  # Higher value wins
    conflict_resolution: RuleConflictStrategy = RuleConflictStrategy.UNION
    reverse_enabled: bool = True
    enabled: bool = True
    required: bool = False

    path_separator: str = "/"
    hierarchy_nodes: Optional[List[str]] = None  # None: every rendered level resolves
    conditions: List[ConditionalBranch] = Field(default_factory=list)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)


class Entitlement(BaseModel):
    """Provider-specific target of a transformation, with the groups mapped to it."""

    entitlement_id: str
    name: str
    type: EntitlementType = EntitlementType.ROLE
    mapped_groups: List[str] = Field(default_factory=list)
    priority: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    source_rule_id: Optional[str] = None


# ════════════════════════════════════════════════════════════════════════════
# Results
# ════════════════════════════════════════════════════════════════════════════


class RuleMatch(BaseModel):
    """A single rule matching a single group."""

    rule_id: str
    target: str
    captures: Dict[str, str] = Field(default_factory=dict)


class TransformationResult(BaseModel):
    """Forward transformation of one group (or of all of a user's groups)."""

    group_names: List[str]
    entitlements: List[Entitlement] = Field(default_factory=list)
    matched_rule_ids: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    conflict: Optional[ConflictReport] = None


class ReverseCandidate(BaseModel):
    """One source group that may have produced an entitlement."""

    group_name: str
    rule_id: Optional[str] = None
    priority: int = 0
    exact: bool = True  # False when only a pattern or partial hint was recoverable


class ReverseTransformationResult(BaseModel):
    """Reverse transformation of one entitlement name."""

    entitlement_name: str
    candidates: List[ReverseCandidate] = Field(default_factory=list)
    ambiguous: bool = False

    @property
    def group_name(self) -> Optional[str]:
        """The single exact candidate, or None when ambiguous or unresolved."""
        if self.ambiguous or not self.candidates:
            return None
        return self.candidates[0].group_name


class RuleValidationResult(BaseModel):
    """Errors reject a rule; warnings are reported but accepted."""

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class TransformationExample(BaseModel):
    """Input and expected entitlement names for ``test_rule``."""

    group_name: str
    expected: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class TransformationExampleResult(BaseModel):
    group_name: str
    expected: List[str]
    actual: List[str]
    passed: bool


class TransformationTestResult(BaseModel):
    """Outcome of running a rule against examples."""

    rule_id: str
    passed: bool
    results: List[TransformationExampleResult] = Field(default_factory=list)
    validation: RuleValidationResult
