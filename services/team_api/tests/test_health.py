import pytest

from team_api.request_id import REQUEST_ID_HEADER

pytestmark = pytest.mark.asyncio


async def test_health_ok(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_request_id_is_echoed(async_client):
    resp = await async_client.get("/health", headers={REQUEST_ID_HEADER: "req-123"})
    assert resp.headers[REQUEST_ID_HEADER] == "req-123"


async def test_request_id_is_generated(async_client):
    resp = await async_client.get("/health")
    assert resp.headers.get(REQUEST_ID_HEADER)


async def test_db_ping(async_client):
    resp = await async_client.get("/internal/db-ping")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
