"""
Transformation Module

Group to entitlement mapping rules, their validation, and the engine that
applies them forward and in reverse.
"""

from scim_sync.transform.engine import TransformationEngine
from scim_sync.transform.models import Entitlement
from scim_sync.transform.models import EntitlementType
from scim_sync.transform.models import RuleConflictStrategy
from scim_sync.transform.models import RuleType
from scim_sync.transform.models import TransformationRule

__all__ = [
    "Entitlement",
    "EntitlementType",
    "RuleConflictStrategy",
    "RuleType",
    "TransformationEngine",
    "TransformationRule",
]
