"""
SCIM 2.0 resource endpoints.

Supported resources:
- Users
- Groups

Every handler is thin: it builds a `ResourceController` for the resource type
and turns the controller's result into a SCIM response. Errors raised as
`ScimError` are rendered by the application-level handler.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Header, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from scim_provider.modules.scim.api.v1.scim_models import (
    ScimListResponse,
    ScimPatchRequest,
)
from scim_provider.modules.scim.domain.mapper import mapper_for
from scim_provider.modules.scim.domain.patch import PATCH_OP_SCHEMA
from scim_provider.modules.scim.domain.projection import project
from scim_provider.modules.scim.domain.schema import get_schema_registry
from scim_provider.modules.scim.domain.service import ResourceController, etag_matches
from scim_provider.modules.scim.domain.store import (
    GROUP,
    USER,
    IdentityStore,
    SqlAlchemyIdentityStore,
)
from scim_provider.shared.core.config import get_settings
from scim_provider.shared.core.exceptions import ScimError
from scim_provider.shared.core.responses import ScimJSONResponse, scim_base_url
from scim_provider.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["SCIM"])


async def get_identity_store(db: AsyncSession = Depends(get_db)) -> IdentityStore:
    settings = get_settings()
    return SqlAlchemyIdentityStore(db, managed_only=settings.SCIM_LIST_MANAGED_ONLY)


def _controller(request: Request, store: IdentityStore, resource_type_id: str) -> ResourceController:
    settings = get_settings()
    resource_type = get_schema_registry().resource_type(resource_type_id)
    mapper = mapper_for(
        resource_type,
        base_url=scim_base_url(request),
        email_as_username=settings.SCIM_EMAIL_AS_USERNAME,
    )
    return ResourceController(store, resource_type, mapper, settings)


def _resource_response(
    resource: dict[str, Any], *, status_code: int = 200, created: bool = False
) -> ScimJSONResponse:
    meta = resource.get("meta") or {}
    headers: dict[str, str] = {}
    if meta.get("version"):
        headers["ETag"] = str(meta["version"])
    if created and meta.get("location"):
        headers["Location"] = str(meta["location"])
    return ScimJSONResponse(status_code=status_code, content=resource, headers=headers)


def _require_patch_schema(body: ScimPatchRequest) -> None:
    if PATCH_OP_SCHEMA not in body.schemas:
        raise ScimError(
            400,
            f"PATCH request must declare schema {PATCH_OP_SCHEMA}",
            scim_type="invalidSyntax",
        )


async def _list_resources(
    request: Request,
    store: IdentityStore,
    resource_type_id: str,
    *,
    filter: str | None,
    attributes: str | None,
    excludedAttributes: str | None,
    startIndex: int | None,
    count: int | None,
    sortBy: str | None,
    sortOrder: str | None,
) -> ScimJSONResponse:
    controller = _controller(request, store, resource_type_id)
    page = await controller.search(
        filter_text=filter,
        sort_by=sortBy,
        sort_order=sortOrder,
        start_index=startIndex,
        count=count,
    )
    page.resources = [
        project(resource, controller.resource_type, attributes, excludedAttributes)
        for resource in page.resources
    ]
    return ScimJSONResponse(
        status_code=200, content=ScimListResponse.from_page(page).model_dump()
    )


async def _get_resource(
    request: Request,
    store: IdentityStore,
    resource_type_id: str,
    resource_id: str,
    *,
    attributes: str | None,
    excludedAttributes: str | None,
    if_none_match: str | None,
) -> Response:
    controller = _controller(request, store, resource_type_id)
    record = await controller.load(resource_id)
    if if_none_match and etag_matches(if_none_match, record.version):
        return Response(status_code=304, headers={"ETag": f'W/"{record.version}"'})
    resource = controller.mapper.to_representation(record)
    return _resource_response(
        project(resource, controller.resource_type, attributes, excludedAttributes)
    )


# -- Users -------------------------------------------------------------------


@router.get("/Users")
async def list_users(
    request: Request,
    filter: str | None = None,
    attributes: str | None = None,
    excludedAttributes: str | None = None,
    startIndex: int | None = None,
    count: int | None = None,
    sortBy: str | None = None,
    sortOrder: str | None = None,
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    return await _list_resources(
        request,
        store,
        USER,
        filter=filter,
        attributes=attributes,
        excludedAttributes=excludedAttributes,
        startIndex=startIndex,
        count=count,
        sortBy=sortBy,
        sortOrder=sortOrder,
    )


@router.post("/Users")
async def create_user(
    request: Request,
    body: dict[str, Any] = Body(...),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    resource = await _controller(request, store, USER).create(body)
    return _resource_response(resource, status_code=201, created=True)


@router.get("/Users/{user_id}")
async def get_user(
    request: Request,
    user_id: str,
    attributes: str | None = None,
    excludedAttributes: str | None = None,
    if_none_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> Response:
    return await _get_resource(
        request,
        store,
        USER,
        user_id,
        attributes=attributes,
        excludedAttributes=excludedAttributes,
        if_none_match=if_none_match,
    )


@router.put("/Users/{user_id}")
async def put_user(
    request: Request,
    user_id: str,
    body: dict[str, Any] = Body(...),
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    resource = await _controller(request, store, USER).replace(user_id, body, if_match)
    return _resource_response(resource)


@router.patch("/Users/{user_id}")
async def patch_user(
    request: Request,
    user_id: str,
    body: ScimPatchRequest,
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    _require_patch_schema(body)
    resource = await _controller(request, store, USER).patch(
        user_id, body.operations(), if_match
    )
    return _resource_response(resource)


@router.delete("/Users/{user_id}")
async def delete_user(
    request: Request,
    user_id: str,
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> Response:
    await _controller(request, store, USER).delete(user_id, if_match)
    return Response(status_code=204)


# -- Groups ------------------------------------------------------------------


@router.get("/Groups")
async def list_groups(
    request: Request,
    filter: str | None = None,
    attributes: str | None = None,
    excludedAttributes: str | None = None,
    startIndex: int | None = None,
    count: int | None = None,
    sortBy: str | None = None,
    sortOrder: str | None = None,
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    return await _list_resources(
        request,
        store,
        GROUP,
        filter=filter,
        attributes=attributes,
        excludedAttributes=excludedAttributes,
        startIndex=startIndex,
        count=count,
        sortBy=sortBy,
        sortOrder=sortOrder,
    )


@router.post("/Groups")
async def create_group(
    request: Request,
    body: dict[str, Any] = Body(...),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    resource = await _controller(request, store, GROUP).create(body)
    return _resource_response(resource, status_code=201, created=True)


@router.get("/Groups/{group_id}")
async def get_group(
    request: Request,
    group_id: str,
    attributes: str | None = None,
    excludedAttributes: str | None = None,
    if_none_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> Response:
    return await _get_resource(
        request,
        store,
        GROUP,
        group_id,
        attributes=attributes,
        excludedAttributes=excludedAttributes,
        if_none_match=if_none_match,
    )


@router.put("/Groups/{group_id}")
async def put_group(
    request: Request,
    group_id: str,
    body: dict[str, Any] = Body(...),
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    resource = await _controller(request, store, GROUP).replace(group_id, body, if_match)
    return _resource_response(resource)


@router.patch("/Groups/{group_id}")
async def patch_group(
    request: Request,
    group_id: str,
    body: ScimPatchRequest,
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> ScimJSONResponse:
    _require_patch_schema(body)
    resource = await _controller(request, store, GROUP).patch(
        group_id, body.operations(), if_match
    )
    return _resource_response(resource)


@router.delete("/Groups/{group_id}")
async def delete_group(
    request: Request,
    group_id: str,
    if_match: str | None = Header(default=None),
    store: IdentityStore = Depends(get_identity_store),
) -> Response:
    await _controller(request, store, GROUP).delete(group_id, if_match)
    return Response(status_code=204)
