"""Error handling for the FastAPI application and sync engine exceptions."""

import pydantic
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

from scim_sync.monitoring.logger import log_response_info
from scim_sync.sync.exceptions import ConcurrencyConflictError
from scim_sync.sync.exceptions import ConnectorNotRegisteredError
from scim_sync.sync.exceptions import ConnectorUnhealthyError
from scim_sync.sync.exceptions import InvalidResolutionError
from scim_sync.sync.exceptions import PermanentProviderError
from scim_sync.sync.exceptions import RateLimitedError
from scim_sync.sync.exceptions import ReportNotFoundError
from scim_sync.sync.exceptions import RuleNotFoundError
from scim_sync.sync.exceptions import RuleValidationError
from scim_sync.sync.exceptions import SyncEngineError
from scim_sync.sync.exceptions import TransformationError
from scim_sync.sync.exceptions import TransientProviderError

# Explicit exports
__all__ = [
    "handle_broad_exceptions",
    "handle_pydantic_validation_errors",
    "handle_sync_engine_errors",
    "status_for_sync_error",
]

# Most specific classes first
_STATUS_BY_ERROR = [
    (ReportNotFoundError, status.HTTP_404_NOT_FOUND),
    (RuleNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConnectorNotRegisteredError, status.HTTP_404_NOT_FOUND),
    (RuleValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidResolutionError, status.HTTP_400_BAD_REQUEST),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConnectorUnhealthyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TransientProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PermanentProviderError, status.HTTP_502_BAD_GATEWAY),
    (TransformationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
]


# fastapi docs on middlewares: https://fastapi.tiangolo.com/tutorial/middleware/
async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that goes unhandled by a more specific exception handler."""
    try:
        return await call_next(request)
    except Exception as err:  # pylint: disable=broad-except
        error_response = {"detail": "Internal server error", "error_type": type(err).__name__}

        # Get request body from request state (set by RequestContextMiddleware)
        request_body = getattr(request.state, "request_body", None)

        logger.error(
            f"Unhandled exception: {type(err).__name__}: {str(err)}",
            http_status=500,
            status_code=500,
            http_method=request.method,
            url_path=str(request.url.path),
            error_type=type(err).__name__,
            error_message=str(err),
            request_body=request_body,
            response_body=error_response,
            exc_info=True,  # Include full traceback
        )

        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_response,
        )
        log_response_info(response)
        return response


# fastapi docs on error handlers: https://fastapi.tiangolo.com/tutorial/handling-errors/
async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = exc.errors()
    error_response = {
        "detail": [
            {
                "msg": error["msg"],
                "input": error["input"],
            }
            for error in errors
        ]
    }

    request_body = getattr(request.state, "request_body", None)

    logger.warning(
        f"Validation error: {len(errors)} validation errors",
        http_status=422,
        status_code=422,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type="ValidationError",
        validation_errors=errors,
        request_body=request_body,
        response_body=error_response,
    )

    response = JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content=error_response,
    )
    log_response_info(response)

    return response


def status_for_sync_error(exc: SyncEngineError) -> int:
    """HTTP status for a sync engine error; 500 for anything unmapped."""
    for error_class, http_status in _STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            return http_status
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_sync_engine_errors(request: Request, exc: SyncEngineError) -> JSONResponse:
    """
    Convert sync engine errors into HTTP responses.

    Maps engine exceptions to HTTP status codes:
    - ReportNotFoundError, RuleNotFoundError, ConnectorNotRegisteredError -> 404 Not Found
    - RuleValidationError, InvalidResolutionError -> 400 Bad Request
    - ConcurrencyConflictError -> 409 Conflict
    - RateLimitedError -> 429 Too Many Requests (with Retry-After)
    - ConnectorUnhealthyError, TransientProviderError -> 503 Service Unavailable
    - PermanentProviderError -> 502 Bad Gateway (upstream provider error)
    - TransformationError -> 422 Unprocessable Content

    Parameters
    ----------
    request : Request
        FastAPI request object
    exc : SyncEngineError
        Sync engine exception

    Returns
    -------
    JSONResponse
        HTTP response with appropriate status code and error details
    """
    http_status = status_for_sync_error(exc)
    error_response = {"detail": exc.message, "error_type": type(exc).__name__, "error_code": exc.error_code}
    if isinstance(exc, RuleValidationError) and exc.errors:
        error_response["errors"] = exc.errors
    if isinstance(exc, TransformationError) and exc.candidates:
        error_response["candidates"] = exc.candidates

    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if http_status == status.HTTP_429_TOO_MANY_REQUESTS and retry_after is not None:
        headers["Retry-After"] = str(int(retry_after))

    request_body = getattr(request.state, "request_body", None)
    log = logger.warning if http_status < 500 else logger.error
    log(
        f"Sync engine error: {type(exc).__name__}: {exc.message}",
        http_status=http_status,
        status_code=http_status,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type=type(exc).__name__,
        error_code=exc.error_code,
        request_body=request_body,
        response_body=error_response,
    )

    response = JSONResponse(status_code=http_status, content=error_response, headers=headers or None)
    log_response_info(response)
    return response
