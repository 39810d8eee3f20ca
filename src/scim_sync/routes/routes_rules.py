"""Transformation rule management, testing and preview endpoints."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from fastapi import Response
from fastapi import status
from loguru import logger

from scim_sync.dependencies import get_actor
from scim_sync.dependencies import get_engine
from scim_sync.schemas.schemas_sync import PairQueryParams
from scim_sync.schemas.schemas_sync import PreviewTransformationRequest
from scim_sync.schemas.schemas_sync import PreviewTransformationResponse
from scim_sync.schemas.schemas_sync import ReverseTransformationResponse
from scim_sync.schemas.schemas_sync import ReverseTransformQueryParams
from scim_sync.schemas.schemas_sync import RuleListResponse
from scim_sync.schemas.schemas_sync import RuleResponse
from scim_sync.schemas.schemas_sync import RuleTestRequest
from scim_sync.schemas.schemas_sync import RuleTestResponse
from scim_sync.schemas.schemas_sync import RuleValidationResponse
from scim_sync.transform.engine import TransformationEngine
from scim_sync.transform.models import TransformationRule

ROUTER_RULES = APIRouter(tags=["Transformation Rules"])

_RULE_NOT_FOUND = {
    "description": "Rule not found",
    "content": {"application/json": {"example": {"detail": "Transformation rule 1234 not found"}}},
}
_RULE_INVALID = {
    "description": "Rule failed validation",
    "content": {
        "application/json": {
            "example": {
                "detail": "Transformation rule 1234 is invalid: Invalid regex pattern",
                "errors": ["Invalid regex pattern: unbalanced parenthesis"],
            }
        }
    },
}


@ROUTER_RULES.get("/rules", response_model=RuleListResponse)
async def list_rules(
    request: Request,
    query_params: PairQueryParams = Depends(),
    engine: TransformationEngine = Depends(get_engine),
):
    """List a pair's rules, highest priority first, including disabled ones."""
    logger.info(
        "Listing transformation rules",
        tenant_id=query_params.tenant_id,
        provider_id=query_params.provider_id,
        method=request.method,
        path=request.url.path,
    )
    rules = await engine.list_rules(query_params.tenant_id, query_params.provider_id)
    return RuleListResponse(Message=f"Fetched {len(rules)} rules", Count=len(rules), Rules=rules)


@ROUTER_RULES.post(
    "/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_400_BAD_REQUEST: _RULE_INVALID},
)
async def create_rule(
    rule: TransformationRule,
    engine: TransformationEngine = Depends(get_engine),
    actor: str = Depends(get_actor),
):
    """Validate and activate a new rule. The pair's cached rule set is reloaded."""
    created = await engine.create_rule(rule, actor=actor)
    return RuleResponse(Message="Rule created", Rule=created)


@ROUTER_RULES.post("/rules/validate", response_model=RuleValidationResponse)
async def validate_rule(rule: TransformationRule, engine: TransformationEngine = Depends(get_engine)):
    """Validate a rule without saving it."""
    validation = engine.validate_rule(rule)
    return RuleValidationResponse(IsValid=validation.is_valid, Errors=validation.errors, Warnings=validation.warnings)


@ROUTER_RULES.post("/rules/preview", response_model=PreviewTransformationResponse)
async def preview_transformation(
    body: PreviewTransformationRequest,
    engine: TransformationEngine = Depends(get_engine),
):
    """Transform each group with the pair's active rules, without side effects on either system."""
    preview = await engine.preview_transformation(body.tenant_id, body.provider_id, body.group_names)
    return PreviewTransformationResponse(Message=f"Previewed {len(preview)} groups", Preview=preview)


@ROUTER_RULES.get("/rules/reverse", response_model=ReverseTransformationResponse)
async def reverse_transform(
    query_params: ReverseTransformQueryParams = Depends(),
    engine: TransformationEngine = Depends(get_engine),
):
    """
    Candidate groups for an entitlement.

    ``GroupName`` is set only when exactly one exact candidate exists;
    otherwise every candidate is listed and ``Result.ambiguous`` is true.
    """
    result = await engine.reverse_transform(query_params.tenant_id, query_params.provider_id, query_params.entitlement)
    message = "Ambiguous reverse mapping" if result.ambiguous else f"Found {len(result.candidates)} candidates"
    return ReverseTransformationResponse(Message=message, GroupName=result.group_name, Result=result)


##########################


@ROUTER_RULES.get(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    responses={status.HTTP_404_NOT_FOUND: _RULE_NOT_FOUND},
)
async def get_rule(rule_id: str, engine: TransformationEngine = Depends(get_engine)):
    """Get one rule."""
    rule = await engine.get_rule(rule_id)
    return RuleResponse(Message="Rule fetched", Rule=rule)


@ROUTER_RULES.put(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    responses={status.HTTP_404_NOT_FOUND: _RULE_NOT_FOUND, status.HTTP_400_BAD_REQUEST: _RULE_INVALID},
)
async def update_rule(
    rule_id: str,
    rule: TransformationRule,
    engine: TransformationEngine = Depends(get_engine),
    actor: str = Depends(get_actor),
):
    """Replace a rule. The cached rule sets of the old and new pair are reloaded."""
    updated = await engine.update_rule(rule_id, rule, actor=actor)
    return RuleResponse(Message="Rule updated", Rule=updated)


@ROUTER_RULES.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: _RULE_NOT_FOUND},
)
async def delete_rule(
    rule_id: str,
    engine: TransformationEngine = Depends(get_engine),
    actor: str = Depends(get_actor),
):
    """Delete a rule."""
    await engine.delete_rule(rule_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@ROUTER_RULES.post(
    "/rules/{rule_id}/test",
    response_model=RuleTestResponse,
    responses={status.HTTP_404_NOT_FOUND: _RULE_NOT_FOUND},
)
async def test_rule(
    rule_id: str,
    body: RuleTestRequest,
    engine: TransformationEngine = Depends(get_engine),
):
    """Run a stored rule against examples. The rule is evaluated even when disabled."""
    rule = await engine.get_rule(rule_id)
    result = engine.test_rule(rule, body.examples)
    message = "All examples passed" if result.passed else "Some examples failed"
    return RuleTestResponse(Message=message, Result=result)
