import os
from pathlib import Path
from textwrap import dedent
from typing import Optional

import pydantic
from fastapi import FastAPI
from fastapi.routing import APIRoute
from loguru import logger

from scim_sync.errors import handle_broad_exceptions
from scim_sync.errors import handle_pydantic_validation_errors
from scim_sync.errors import handle_sync_engine_errors
from scim_sync.monitoring.logger import configure_logger
from scim_sync.monitoring.request_context import RequestContextMiddleware
from scim_sync.routes.routes_drift import ROUTER_DRIFT
from scim_sync.routes.routes_health import ROUTER_HEALTH
from scim_sync.routes.routes_rules import ROUTER_RULES
from scim_sync.routes.routes_sync import ROUTER_SYNC
from scim_sync.services import SyncServices
from scim_sync.services import build_services
from scim_sync.settings import Settings
from scim_sync.sync.exceptions import SyncEngineError


def _detect_environment() -> str:
    """Detect where configuration is being read from."""
    if os.getenv("KUBERNETES_SERVICE_HOST"):
        return "kubernetes"
    elif Path(".env").exists():
        return "local-env-file"
    else:
        return "local-env-vars"


def create_app(settings: Optional[Settings] = None, services: Optional[SyncServices] = None) -> FastAPI:
    """Create a FastAPI application.

    Configuration is loaded directly from environment variables via pydantic-settings.
    - Deployed: set variables in the container environment
    - Local development: use a .env file in the working directory

    A prebuilt ``services`` container may be passed in (tests do this);
    otherwise one is built from the settings.
    """
    settings = settings or Settings()

    configure_logger(log_level=settings.log_level)

    logger.info(
        "Configuration loaded successfully",
        environment=_detect_environment(),
        persistent_storage=bool(settings.domain_db_connection_string),
        polling_enabled=settings.enable_polling,
        connectors_configured=len(settings.connectors),
        default_strategy=settings.default_reconciliation_strategy.value,
        default_direction=settings.default_sync_direction.value,
    )

    app = FastAPI(
        title=settings.service_name,
        version="v1",
        description=dedent(
            """
        Operator surface of the SCIM sync engine.

        | Area | Notes |
        | --- | --- |
        | Drift | Pending drift reports awaiting manual review |
        | Conflicts | Resources changed on both sides, resolved explicitly |
        | Sync | Direction, poll schedules, on-demand polls and pair state |
        | Transformation Rules | Group to entitlement mapping rules |

        Send the operator identity in the `X-Actor` header; it is recorded on every audit entry.
        """
        ),
        generate_unique_id_function=custom_generate_unique_id,
        swagger_ui_parameters={
            "defaultModelsExpandDepth": -1,  # Hide schemas section
            "defaultModelExpandDepth": 1,  # Keep models collapsed if shown
        },
    )
    app.state.settings = settings
    app.state.services = services or build_services(settings)
    logger.info("Sync services initialized", connectors=len(app.state.services.connectors.pairs()))

    # Add request context middleware for tracking who/where requests come from
    app.add_middleware(RequestContextMiddleware)
    app.include_router(ROUTER_HEALTH, prefix="/api")
    app.include_router(ROUTER_DRIFT, prefix="/api")
    app.include_router(ROUTER_SYNC, prefix="/api")
    app.include_router(ROUTER_RULES, prefix="/api")

    @app.on_event("startup")
    async def startup_sync_services():
        """Open the database and start rule refresh and poll schedules."""
        await app.state.services.start()

    @app.on_event("shutdown")
    async def shutdown_sync_services():
        """Stop schedules and close connections."""
        await app.state.services.stop()

    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=SyncEngineError,
        handler=handle_sync_engine_errors,
    )

    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    if route.tags:
        return f"{route.tags[0]}-{route.name}"
    return route.name


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
