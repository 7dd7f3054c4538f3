"""
SCIM discovery endpoints (RFC 7644 section 4).

ServiceProviderConfig, ResourceTypes and Schemas are served from the loaded
schema registry, so extension schemas configured at startup show up here too.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from scim_provider.modules.scim.api.v1.scim_models import (
    SCIM_SERVICE_PROVIDER_CONFIG_SCHEMA,
    ScimListResponse,
)
from scim_provider.modules.scim.domain.pagination import Page
from scim_provider.modules.scim.domain.schema import get_schema_registry
from scim_provider.shared.core.config import get_settings
from scim_provider.shared.core.exceptions import NotFoundError
from scim_provider.shared.core.responses import ScimJSONResponse, scim_base_url

router = APIRouter(tags=["SCIM Discovery"])


def _list_response(resources: list[dict[str, Any]]) -> ScimJSONResponse:
    page = Page(
        total_results=len(resources),
        start_index=1,
        items_per_page=len(resources),
        resources=resources,
    )
    return ScimJSONResponse(
        status_code=200, content=ScimListResponse.from_page(page).model_dump()
    )


@router.get("/ServiceProviderConfig")
async def get_service_provider_config(request: Request) -> ScimJSONResponse:
    settings = get_settings()
    payload: dict[str, Any] = {
        "schemas": [SCIM_SERVICE_PROVIDER_CONFIG_SCHEMA],
        "patch": {"supported": True},
        "bulk": {"supported": False, "maxOperations": 0, "maxPayloadSize": 0},
        "filter": {"supported": True, "maxResults": settings.SCIM_MAX_RESULTS},
        "changePassword": {"supported": False},
        "sort": {"supported": True},
        "etag": {"supported": True},
        # Caller authentication is enforced by the hosting gateway.
        "authenticationSchemes": [],
        "meta": {
            "resourceType": "ServiceProviderConfig",
            "location": f"{scim_base_url(request)}/ServiceProviderConfig",
        },
    }
    if settings.SCIM_DOCUMENTATION_URI:
        payload["documentationUri"] = settings.SCIM_DOCUMENTATION_URI
    return ScimJSONResponse(status_code=200, content=payload)


@router.get("/ResourceTypes")
async def list_resource_types(request: Request) -> ScimJSONResponse:
    base_url = scim_base_url(request)
    return _list_response(
        [rt.to_dict(base_url=base_url) for rt in get_schema_registry().resource_types()]
    )


@router.get("/ResourceTypes/{resource_type_id}")
async def get_resource_type(request: Request, resource_type_id: str) -> ScimJSONResponse:
    resource_type = get_schema_registry().find_resource_type(resource_type_id)
    if resource_type is None:
        raise NotFoundError(f"Resource type {resource_type_id} not found")
    return ScimJSONResponse(
        status_code=200, content=resource_type.to_dict(base_url=scim_base_url(request))
    )


@router.get("/Schemas")
async def list_schemas(request: Request) -> ScimJSONResponse:
    base_url = scim_base_url(request)
    return _list_response(
        [schema.to_dict(base_url=base_url) for schema in get_schema_registry().schemas()]
    )


@router.get("/Schemas/{schema_id:path}")
async def get_schema(request: Request, schema_id: str) -> ScimJSONResponse:
    schema = get_schema_registry().schema(schema_id)
    if schema is None:
        raise NotFoundError(f"Schema {schema_id} not found")
    return ScimJSONResponse(
        status_code=200, content=schema.to_dict(base_url=scim_base_url(request))
    )
