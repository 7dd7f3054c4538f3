"""Payload builders shared by the SCIM tests."""
from typing import Any

USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
ENTERPRISE_SCHEMA = "urn:ietf:params:scim:schemas:extension:enterprise:2.0:User"
PATCH_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"


def user_payload(user_name: str = "bjensen", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schemas": [USER_SCHEMA],
        "userName": user_name,
        "name": {"givenName": "Barbara", "familyName": "Jensen"},
        "emails": [{"value": f"{user_name}@example.com", "type": "work", "primary": True}],
        "active": True,
    }
    payload.update(extra)
    return payload


def group_payload(display_name: str = "Tour Guides", members: list[str] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"schemas": [GROUP_SCHEMA], "displayName": display_name}
    if members is not None:
        payload["members"] = [{"value": member} for member in members]
    return payload


def patch_body(*operations: dict[str, Any]) -> dict[str, Any]:
    return {"schemas": [PATCH_SCHEMA], "Operations": list(operations)}
