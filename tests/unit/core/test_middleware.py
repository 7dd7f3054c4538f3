import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from scim_provider.shared.core.middleware import RequestIDMiddleware


@pytest.fixture
def echo_app():
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": request.state.request_id}

    return app


@pytest.mark.asyncio
async def test_request_id_is_generated(echo_app):
    transport = ASGITransport(app=echo_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/echo")

    request_id = response.headers["X-Request-ID"]
    assert request_id
    assert response.json() == {"request_id": request_id}


@pytest.mark.asyncio
async def test_client_request_id_is_propagated(echo_app):
    transport = ASGITransport(app=echo_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/echo", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"
    assert response.json() == {"request_id": "abc-123"}


@pytest.mark.asyncio
async def test_unsafe_request_id_is_replaced(echo_app):
    transport = ASGITransport(app=echo_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/echo", headers={"X-Request-ID": "x" * 300})

    request_id = response.headers["X-Request-ID"]
    assert request_id != "x" * 300
    assert len(request_id) == 36
