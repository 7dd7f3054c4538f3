from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scim_provider.modules.scim.domain.schema import get_schema_registry
from scim_provider.shared.core.app_routes import (
    register_api_routers,
    register_lifecycle_routes,
)
from scim_provider.shared.core.config import get_settings, reload_settings_from_environment
from scim_provider.shared.core.exceptions import ScimError
from scim_provider.shared.core.logging import setup_logging
from scim_provider.shared.core.middleware import RequestIDMiddleware
from scim_provider.shared.core.responses import scim_error_response
from scim_provider.shared.db.session import dispose_database, init_db

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, base_path=settings.SCIM_BASE_PATH)

    # A broken extension schema file aborts startup.
    registry = get_schema_registry()
    app.state.schema_registry = registry

    if settings.DB_AUTO_CREATE:
        await init_db()
    else:
        logger.info("db_auto_create_skipped")

    yield

    logger.info("app_stopping")
    await dispose_database()


# Application instance
scim_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = scim_app

__all__ = ["app", "scim_app", "lifespan"]


@scim_app.exception_handler(ScimError)
async def scim_error_handler(request: Request, exc: ScimError) -> JSONResponse:
    """Return SCIM-compliant error responses."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "scim_request_failed",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        scim_type=exc.scim_type,
        detail=exc.detail,
    )
    return scim_error_response(exc)


@scim_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed JSON or a body of the wrong shape is a SCIM invalidSyntax error."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location}: {err.get('msg', 'invalid')}")
    return scim_error_response(
        ScimError(
            400,
            "Request is not valid: " + "; ".join(problems),
            scim_type="invalidSyntax",
        )
    )


@scim_app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Routing errors (unknown path, wrong method) rendered as SCIM errors."""
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    scim_type = "invalidSyntax" if exc.status_code == 400 else None
    response = scim_error_response(ScimError(exc.status_code, detail, scim_type=scim_type))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@scim_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    detail = "An unexpected internal error occurred"
    if not settings.is_production:
        detail = f"{detail}: {type(exc).__name__}"
    return scim_error_response(ScimError(500, detail))


register_lifecycle_routes(
    scim_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(scim_app)

scim_app.add_middleware(RequestIDMiddleware)
