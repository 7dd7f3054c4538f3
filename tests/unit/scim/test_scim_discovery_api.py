import pytest

BASE = "/scim/v2"
USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
ENTERPRISE_SCHEMA = "urn:ietf:params:scim:schemas:extension:enterprise:2.0:User"


@pytest.mark.asyncio
async def test_service_provider_config(ac, settings):
    response = await ac.get(f"{BASE}/ServiceProviderConfig")

    assert response.status_code == 200
    body = response.json()
    assert body["patch"] == {"supported": True}
    assert body["bulk"]["supported"] is False
    assert body["filter"] == {"supported": True, "maxResults": settings.SCIM_MAX_RESULTS}
    assert body["sort"] == {"supported": True}
    assert body["etag"] == {"supported": True}
    assert body["changePassword"] == {"supported": False}
    assert body["meta"]["location"] == f"http://test{BASE}/ServiceProviderConfig"
    assert "documentationUri" not in body


@pytest.mark.asyncio
async def test_documentation_uri_is_advertised_when_configured(ac, settings, monkeypatch):
    monkeypatch.setattr(settings, "SCIM_DOCUMENTATION_URI", "https://docs.example.com/scim")

    response = await ac.get(f"{BASE}/ServiceProviderConfig")

    assert response.json()["documentationUri"] == "https://docs.example.com/scim"


@pytest.mark.asyncio
async def test_resource_types(ac):
    response = await ac.get(f"{BASE}/ResourceTypes")

    body = response.json()
    assert body["totalResults"] == 2
    by_id = {rt["id"]: rt for rt in body["Resources"]}
    assert by_id["User"]["endpoint"] == "/Users"
    assert by_id["User"]["schema"] == USER_SCHEMA
    assert by_id["User"]["schemaExtensions"] == [{"schema": ENTERPRISE_SCHEMA, "required": False}]
    assert by_id["Group"]["schemaExtensions"] == []

    single = await ac.get(f"{BASE}/ResourceTypes/User")
    assert single.status_code == 200
    assert single.json()["meta"]["location"] == f"http://test{BASE}/ResourceTypes/User"

    missing = await ac.get(f"{BASE}/ResourceTypes/Device")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_schemas(ac):
    response = await ac.get(f"{BASE}/Schemas")

    ids = {schema["id"] for schema in response.json()["Resources"]}
    assert ids == {
        USER_SCHEMA,
        ENTERPRISE_SCHEMA,
        "urn:ietf:params:scim:schemas:core:2.0:Group",
    }

    single = await ac.get(f"{BASE}/Schemas/{USER_SCHEMA}")
    assert single.status_code == 200
    attributes = {attr["name"]: attr for attr in single.json()["attributes"]}
    assert attributes["userName"]["uniqueness"] == "server"
    assert attributes["userName"]["required"] is True

    assert (await ac.get(f"{BASE}/Schemas/urn:example:unknown")).status_code == 404


@pytest.mark.asyncio
async def test_unknown_route_is_a_scim_error(ac):
    response = await ac.get(f"{BASE}/Devices")

    assert response.status_code == 404
    assert response.json()["schemas"] == ["urn:ietf:params:scim:api:messages:2.0:Error"]
