"""HTTP-level tests for the /Users endpoints."""
import json
from uuid import uuid4

import pytest

from scim_provider.modules.scim.domain.store import USER, UserRecord
from tests.utils import ENTERPRISE_SCHEMA, USER_SCHEMA, patch_body, user_payload

BASE = "/scim/v2"
ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"
LIST_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"


async def _create_user(ac, user_name="bjensen", **extra):
    response = await ac.post(f"{BASE}/Users", json=user_payload(user_name, **extra))
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_user_returns_location_and_etag(ac):
    response = await ac.post(f"{BASE}/Users", json=user_payload())

    assert response.status_code == 201
    assert response.headers["content-type"] == "application/scim+json"
    body = response.json()
    assert body["schemas"] == [USER_SCHEMA]
    assert body["userName"] == "bjensen"
    assert body["name"] == {"givenName": "Barbara", "familyName": "Jensen"}
    assert body["emails"] == [{"value": "bjensen@example.com", "type": "work", "primary": True}]
    assert body["active"] is True
    assert body["meta"]["resourceType"] == "User"
    assert body["meta"]["version"] == 'W/"1"'
    assert body["meta"]["location"] == f"http://test{BASE}/Users/{body['id']}"
    assert response.headers["Location"] == body["meta"]["location"]
    assert response.headers["ETag"] == 'W/"1"'


@pytest.mark.asyncio
async def test_create_accepts_scim_media_type(ac):
    response = await ac.post(
        f"{BASE}/Users",
        content=json.dumps(user_payload()),
        headers={"Content-Type": "application/scim+json"},
    )

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_create_user_with_enterprise_extension(ac):
    body = await _create_user(
        ac,
        schemas=[USER_SCHEMA, ENTERPRISE_SCHEMA],
        **{ENTERPRISE_SCHEMA: {"employeeNumber": "701984", "department": "Tour Operations"}},
    )

    assert body["schemas"] == [USER_SCHEMA, ENTERPRISE_SCHEMA]
    assert body[ENTERPRISE_SCHEMA] == {"employeeNumber": "701984", "department": "Tour Operations"}


@pytest.mark.asyncio
async def test_get_user_and_not_found(ac):
    created = await _create_user(ac)

    response = await ac.get(f"{BASE}/Users/{created['id']}")
    assert response.status_code == 200
    assert response.json() == created

    missing = await ac.get(f"{BASE}/Users/{uuid4()}")
    assert missing.status_code == 404
    error = missing.json()
    assert error["schemas"] == [ERROR_SCHEMA]
    assert error["status"] == "404"


@pytest.mark.asyncio
async def test_duplicate_username_is_a_uniqueness_conflict(ac):
    await _create_user(ac)

    response = await ac.post(f"{BASE}/Users", json=user_payload("BJensen"))

    assert response.status_code == 409
    assert response.json()["scimType"] == "uniqueness"
    assert "BJensen" in response.json()["detail"]


@pytest.mark.asyncio
async def test_schema_violations_are_reported_together(ac):
    payload = user_payload(active="yes")
    del payload["userName"]

    response = await ac.post(f"{BASE}/Users", json=payload)

    assert response.status_code == 400
    error = response.json()
    assert error["scimType"] == "invalidValue"
    assert "Attribute 'userName' is required" in error["detail"]
    assert "Attribute 'active' must be of type boolean" in error["detail"]


@pytest.mark.asyncio
async def test_non_object_body_is_invalid_syntax(ac):
    response = await ac.post(f"{BASE}/Users", json=["not", "an", "object"])

    assert response.status_code == 400
    assert response.json()["scimType"] == "invalidSyntax"


@pytest.mark.asyncio
async def test_list_filters_sorts_and_pages(ac):
    for name in ("carol", "alice", "bob"):
        await _create_user(ac, name)

    response = await ac.get(f"{BASE}/Users", params={"filter": 'userName eq "BOB"'})
    body = response.json()
    assert body["schemas"] == [LIST_SCHEMA]
    assert body["totalResults"] == 1
    assert body["Resources"][0]["userName"] == "bob"

    response = await ac.get(
        f"{BASE}/Users", params={"sortBy": "userName", "startIndex": 2, "count": 1}
    )
    body = response.json()
    assert body["totalResults"] == 3
    assert body["startIndex"] == 2
    assert body["itemsPerPage"] == 1
    assert [r["userName"] for r in body["Resources"]] == ["bob"]

    response = await ac.get(
        f"{BASE}/Users", params={"sortBy": "userName", "sortOrder": "descending"}
    )
    assert [r["userName"] for r in response.json()["Resources"]] == ["carol", "bob", "alice"]

    response = await ac.get(f"{BASE}/Users", params={"count": 0})
    body = response.json()
    assert body["totalResults"] == 3
    assert body["itemsPerPage"] == 0
    assert body["Resources"] == []


@pytest.mark.asyncio
async def test_list_rejects_bad_filter_and_sort_order(ac):
    response = await ac.get(f"{BASE}/Users", params={"filter": "userName eq"})
    assert response.status_code == 400
    assert response.json()["scimType"] == "invalidFilter"

    response = await ac.get(f"{BASE}/Users", params={"sortBy": "userName", "sortOrder": "up"})
    assert response.status_code == 400
    assert response.json()["scimType"] == "invalidValue"


@pytest.mark.asyncio
async def test_list_hides_unmanaged_users(ac, store):
    await store.create(USER, UserRecord(username="break-glass", managed=False))
    await _create_user(ac, "provisioned")

    response = await ac.get(f"{BASE}/Users")

    assert [r["userName"] for r in response.json()["Resources"]] == ["provisioned"]


@pytest.mark.asyncio
async def test_attribute_projection(ac):
    created = await _create_user(ac)

    response = await ac.get(
        f"{BASE}/Users/{created['id']}", params={"attributes": "userName"}
    )
    assert set(response.json()) == {"schemas", "id", "meta", "userName"}

    response = await ac.get(
        f"{BASE}/Users", params={"excludedAttributes": "emails,name"}
    )
    resource = response.json()["Resources"][0]
    assert "emails" not in resource
    assert "name" not in resource
    assert resource["userName"] == "bjensen"


@pytest.mark.asyncio
async def test_put_replaces_and_bumps_version(ac):
    created = await _create_user(ac)
    payload = user_payload(displayName="Babs")
    payload["name"] = {"givenName": "Babs"}

    response = await ac.put(
        f"{BASE}/Users/{created['id']}", json=payload, headers={"If-Match": 'W/"1"'}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["displayName"] == "Babs"
    assert body["name"] == {"givenName": "Babs"}
    assert body["meta"]["version"] == 'W/"2"'
    assert body["meta"]["created"] == created["meta"]["created"]
    assert response.headers["ETag"] == 'W/"2"'


@pytest.mark.asyncio
async def test_put_cannot_change_immutable_username(ac):
    created = await _create_user(ac)

    response = await ac.put(f"{BASE}/Users/{created['id']}", json=user_payload("someone-else"))

    assert response.status_code == 400
    assert response.json()["scimType"] == "mutability"


@pytest.mark.asyncio
async def test_stale_if_match_is_rejected(ac):
    created = await _create_user(ac)
    url = f"{BASE}/Users/{created['id']}"

    response = await ac.put(url, json=user_payload(), headers={"If-Match": 'W/"7"'})
    assert response.status_code == 412

    response = await ac.delete(url, headers={"If-Match": '"7"'})
    assert response.status_code == 412

    response = await ac.delete(url, headers={"If-Match": '"1"'})
    assert response.status_code == 204


@pytest.mark.asyncio
async def test_if_none_match_returns_not_modified(ac):
    created = await _create_user(ac)

    response = await ac.get(
        f"{BASE}/Users/{created['id']}", headers={"If-None-Match": 'W/"1"'}
    )

    assert response.status_code == 304
    assert response.headers["ETag"] == 'W/"1"'


@pytest.mark.asyncio
async def test_if_match_required_when_configured(ac, settings, monkeypatch):
    created = await _create_user(ac)
    monkeypatch.setattr(settings, "SCIM_REQUIRE_IF_MATCH", True)

    response = await ac.put(f"{BASE}/Users/{created['id']}", json=user_payload())

    assert response.status_code == 412
    assert response.json()["detail"] == "If-Match header is required"


@pytest.mark.asyncio
async def test_patch_with_mixed_case_ops(ac):
    created = await _create_user(ac)

    response = await ac.patch(
        f"{BASE}/Users/{created['id']}",
        json=patch_body(
            {"op": "Replace", "path": "active", "value": False},
            {"op": "Add", "path": "name.givenName", "value": "Babs"},
        ),
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["active"] is False
    assert body["name"]["givenName"] == "Babs"
    assert body["meta"]["version"] == 'W/"2"'


@pytest.mark.asyncio
async def test_patch_changing_nothing_keeps_version(ac):
    created = await _create_user(ac)

    response = await ac.patch(
        f"{BASE}/Users/{created['id']}",
        json=patch_body({"op": "replace", "path": "active", "value": True}),
    )

    assert response.status_code == 200
    assert response.json()["meta"]["version"] == 'W/"1"'


@pytest.mark.asyncio
async def test_patch_failures(ac):
    created = await _create_user(ac)
    url = f"{BASE}/Users/{created['id']}"

    response = await ac.patch(
        url, json=patch_body({"op": "add", "path": "groups", "value": [{"value": "x"}]})
    )
    assert response.status_code == 400
    assert response.json()["scimType"] == "mutability"

    response = await ac.patch(
        url, json=patch_body({"op": "replace", "path": "favouriteColour", "value": "red"})
    )
    assert response.status_code == 400
    assert response.json()["scimType"] == "invalidPath"

    response = await ac.patch(
        url,
        json={"schemas": [USER_SCHEMA], "Operations": [{"op": "add", "path": "title", "value": "x"}]},
    )
    assert response.status_code == 400
    assert response.json()["scimType"] == "invalidSyntax"


@pytest.mark.asyncio
async def test_delete_user(ac):
    created = await _create_user(ac)
    url = f"{BASE}/Users/{created['id']}"

    assert (await ac.delete(url)).status_code == 204
    assert (await ac.get(url)).status_code == 404
    assert (await ac.delete(url)).status_code == 404


@pytest.mark.asyncio
async def test_email_as_username(ac, settings, monkeypatch):
    monkeypatch.setattr(settings, "SCIM_EMAIL_AS_USERNAME", True)

    created = await _create_user(ac, "bjensen")
    assert created["userName"] == "bjensen@example.com"

    response = await ac.patch(
        f"{BASE}/Users/{created['id']}",
        json=patch_body(
            {"op": "replace", "path": "emails", "value": [{"value": "babs@example.com", "primary": True}]}
        ),
    )
    assert response.status_code == 200, response.text
    assert response.json()["userName"] == "babs@example.com"


@pytest.mark.asyncio
async def test_responses_carry_request_id(ac):
    response = await ac.get(f"{BASE}/Users", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
