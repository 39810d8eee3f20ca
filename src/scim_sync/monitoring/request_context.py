"""Request context middleware for logging."""

import json
import time
import uuid
from contextvars import ContextVar
from typing import Any
from typing import Callable
from typing import Optional

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables to store request-specific data
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
client_ip_ctx: ContextVar[str] = ContextVar("client_ip", default="")
actor_ctx: ContextVar[str] = ContextVar("actor", default="")
user_agent_ctx: ContextVar[str] = ContextVar("user_agent", default="")
request_path_ctx: ContextVar[str] = ContextVar("request_path", default="")

# Maximum size for request body logging (to avoid memory issues)
MAX_BODY_LOG_SIZE = 10000  # 10KB limit

ACTOR_HEADER = "X-Actor"
ANONYMOUS_ACTOR = "anonymous"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to capture and log request context information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        """
        Capture request context and add to logging.

        Captures:
        - Request ID (from header or generated)
        - Client IP (first X-Forwarded-For entry or direct)
        - Operator identity (X-Actor header)
        - Request path and method
        - Request body (for POST/PUT/PATCH/DELETE)
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(request_id)

        client_ip = self._get_client_ip(request)
        client_ip_ctx.set(client_ip)

        actor = get_actor_from_headers(request)
        actor_ctx.set(actor)

        user_agent = request.headers.get("User-Agent", "unknown")
        user_agent_ctx.set(user_agent)

        request_path = f"{request.method} {request.url.path}"
        request_path_ctx.set(request_path)

        # Store in request state early so error handlers can access it
        request.state.request_body = None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            request.state.request_body = await self._get_request_body(request)

        with logger.contextualize(
            request_id=request_id,
            client_ip=client_ip,
            actor=actor,
            user_agent=user_agent,
            request_path=request_path,
        ):
            start_time = time.time()
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            logger.info(
                f"{request.method} {request.url.path} - {response.status_code}",
                method=request.method,
                path=request.url.path,
                query_params=str(request.query_params),
                event_type="http_request",
                status_code=response.status_code,
                response_time_ms=round(duration_ms, 2),
                request_body=request.state.request_body,
            )

            response.headers["X-Request-ID"] = request_id
            return response

    async def _get_request_body(self, request: Request) -> Optional[dict]:
        """
        Read the request body for logging.

        Returns:
            Parsed JSON body, a truncation marker for large bodies, or None if empty
        """
        body = await request.body()
        if not body:
            return None

        if len(body) > MAX_BODY_LOG_SIZE:
            return {"_truncated": True, "_size": len(body), "_preview": body[:1000].decode("utf-8", errors="replace")}

        content_type = request.headers.get("Content-Type", "")
        if "json" not in content_type.lower():
            return {"_raw": body.decode("utf-8", errors="replace")[:200], "_content_type": content_type}

        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            # Return error info instead of None so we know parsing failed
            return {"_error": "Failed to parse request body", "_error_detail": str(e)}

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first one
            return forwarded_for.split(",")[0].strip()

        if request.client:
            return request.client.host

        return "unknown"


def get_actor_from_headers(request: Request) -> str:
    """Operator identity for audit entries; anonymous when the header is absent."""
    actor = request.headers.get(ACTOR_HEADER, "").strip()
    return actor or ANONYMOUS_ACTOR


def get_request_context() -> dict:
    """
    Get current request context for logging.

    Returns:
        Dictionary with request context variables
    """
    return {
        "request_id": request_id_ctx.get(),
        "client_ip": client_ip_ctx.get(),
        "actor": actor_ctx.get(),
        "user_agent": user_agent_ctx.get(),
        "request_path": request_path_ctx.get(),
    }
