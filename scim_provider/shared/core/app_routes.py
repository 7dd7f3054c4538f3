from typing import Annotated, Any, Sequence

from fastapi import APIRouter, Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scim_provider.shared.core.config import get_settings
from scim_provider.shared.db.session import get_db

_REQUIRED_SCIM_PATHS = (
    "/Users",
    "/Users/{user_id}",
    "/Groups",
    "/Groups/{group_id}",
    "/ServiceProviderConfig",
    "/ResourceTypes",
    "/Schemas",
)


def _validate_scim_routers(routers: Sequence[APIRouter], prefix: str) -> None:
    if not prefix.startswith("/") or prefix.endswith("/"):
        raise RuntimeError(f"SCIM router prefix must start but not end with '/': {prefix!r}")
    paths = {
        getattr(route, "path", None) for router in routers for route in router.routes
    }
    missing = [path for path in _REQUIRED_SCIM_PATHS if path not in paths]
    if missing:
        raise RuntimeError("SCIM router is missing required endpoints: " + ", ".join(missing))


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        return {
            "status": "ok",
            "app": app_name,
            "version": version,
            "scim_base_path": get_settings().SCIM_BASE_PATH,
        }

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Process is up; no dependencies are touched."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(db: Annotated[AsyncSession, Depends(get_db)]) -> Any:
        """Readiness: the identity store database must answer."""
        try:
            await db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": {"status": "down", "error": str(exc)}},
            )
        return {"status": "healthy", "database": {"status": "up"}}


def register_api_routers(app: FastAPI) -> None:
    """Mount the SCIM resource and discovery routers under SCIM_BASE_PATH."""
    from scim_provider.modules.scim.api.v1.discovery import router as discovery_router
    from scim_provider.modules.scim.api.v1.scim import router as scim_router

    routers = (scim_router, discovery_router)
    prefix = get_settings().SCIM_BASE_PATH
    _validate_scim_routers(routers, prefix)
    for router in routers:
        app.include_router(router, prefix=prefix)
