"""HTTP API tests against the FastAPI app with an in-test database and Redis."""

import datetime

import pytest
from httpx import ASGITransport, AsyncClient

from crowdbus.api import reports, sessions, vehicles, ws
from crowdbus.db.session import get_session
from crowdbus.main import app

TOKEN = "rider-token-0001"


@pytest.fixture
async def client(tracker, session_factory, broadcaster):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    reports.tracker = tracker
    sessions.tracker = tracker
    vehicles.tracker = tracker
    ws.broadcaster = broadcaster

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
    reports.tracker = sessions.tracker = vehicles.tracker = None
    ws.broadcaster = None


def _body(**overrides):
    body = {
        "device_id": TOKEN,
        "vehicle_id": "bus-1",
        "lat": 23.800,
        "lon": 90.400,
        "accuracy": 12.0,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    body.update(overrides)
    return body


async def _start(client, token=TOKEN, vehicle="bus-1"):
    response = await client.post("/api/sessions", json={"device_id": token, "vehicle_id": vehicle})
    assert response.status_code == 201
    return response.json()


async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_start_and_end_session(client):
    started = await _start(client)
    assert started["is_active"]
    assert started["vehicle_id"] == "bus-1"
    assert started["trust_score_at_start"] == 0.5

    response = await client.delete(f"/api/sessions/{started['session_id']}")
    assert response.status_code == 200
    ended = response.json()
    assert not ended["is_active"]
    assert ended["end_reason"] == "stopped"


async def test_end_unknown_session(client):
    response = await client.delete("/api/sessions/nope")
    assert response.status_code == 404
    body = response.json()
    assert body["error_code"] == "not_found"
    assert body["details"]["id"] == "nope"


async def test_submit_report(client):
    await _start(client)
    response = await client.post("/api/reports", json=_body())
    assert response.status_code == 201
    body = response.json()
    assert body["accepted"]
    assert body["valid"]
    assert body["confidence_score"] >= 0.6
    assert body["trust_score"] == pytest.approx(0.58)
    assert body["report_id"] > 0


async def test_report_without_session(client):
    response = await client.post("/api/reports", json=_body())
    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "no_active_session"
    assert body["details"]["recommendations"]


async def test_report_at_null_island(client):
    await _start(client)
    response = await client.post("/api/reports", json=_body(lat=0.0, lon=0.0))
    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "coordinates_outside_region"
    assert body["details"]["confidence_score"] == 0.0
    assert body["details"]["flags"] == ["coordinates_outside_region"]
    assert body["message"]


async def test_report_without_timestamp_is_rejected(client):
    await _start(client)
    body = _body()
    del body["timestamp"]
    response = await client.post("/api/reports", json=body)
    assert response.status_code == 422
    assert response.json()["error_code"] == "invalid_timestamp"


async def test_malformed_report(client):
    response = await client.post("/api/reports", json=_body(device_id="short"))
    assert response.status_code == 422
    assert "detail" in response.json()


async def test_validate_does_not_store(client, tracker):
    response = await client.post("/api/reports/validate", json=_body())
    assert response.status_code == 200
    body = response.json()
    assert body["valid"]
    assert set(body["checks"]) == {
        "boundary", "speed", "route", "timestamp", "accuracy", "movement", "schedule",
    }
    assert await tracker.trust.trust_of(reports.hash_device_id(TOKEN)) == 0.5


async def test_vehicle_position(client, tracker):
    response = await client.get("/api/vehicles/bus-1/position")
    assert response.status_code == 200
    assert response.json()["status"] == "no_data"

    await _start(client)
    await client.post("/api/reports", json=_body())
    await tracker.run_cycle()
    body = (await client.get("/api/vehicles/bus-1/position")).json()
    assert body["vehicle_id"] == "bus-1"
    assert body["active_trackers"] == 1
    assert body["status"] in {"single_tracker", "no_tracking"}


async def test_device_trust(client):
    response = await client.get(f"/api/devices/{TOKEN}/trust")
    assert response.status_code == 404

    await _start(client)
    await client.post("/api/reports", json=_body())
    response = await client.get(f"/api/devices/{TOKEN}/trust")
    assert response.status_code == 200
    body = response.json()
    assert body["trust_score"] == pytest.approx(0.58)
    assert body["total_contributions"] == 1
    assert not body["is_trusted"]


async def test_service_not_ready(client):
    vehicles.tracker = None
    response = await client.get("/api/vehicles/bus-1/position")
    assert response.status_code == 503


async def test_unexpected_error_is_rendered(tracker, monkeypatch):
    async def explode(vehicle_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(tracker, "current_position", explode)
    vehicles.tracker = tracker
    try:
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/api/vehicles/bus-1/position")
    finally:
        vehicles.tracker = None
    assert response.status_code == 500
    assert response.json()["error_code"] == "internal_error"
