from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from scim_provider.shared.core.config import get_settings
from scim_provider.shared.core.exceptions import ScimError

SCIM_MEDIA_TYPE = "application/scim+json"
SCIM_ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"


class ScimJSONResponse(JSONResponse):
    media_type = SCIM_MEDIA_TYPE


def scim_base_url(request: Request) -> str:
    """Absolute URL of the SCIM root, used for meta.location and $ref values."""
    return f"{str(request.base_url).rstrip('/')}{get_settings().SCIM_BASE_PATH}"


def scim_error_response(exc: ScimError) -> JSONResponse:
    payload: dict[str, Any] = {
        "schemas": [SCIM_ERROR_SCHEMA],
        "status": str(exc.status_code),
        "detail": exc.detail,
    }
    if exc.scim_type:
        payload["scimType"] = exc.scim_type
    return ScimJSONResponse(status_code=exc.status_code, content=payload)
