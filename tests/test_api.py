from __future__ import annotations

import base64

import httpx
import pytest
import pytest_asyncio

from conftest import FakeConnection, fake_openai_client
from homepost.analysis import AnalysisService
from homepost.api import create_app
from homepost.protocol import DeviceInfo, WebClient, encode


@pytest_asyncio.fixture
async def client(hub):
    transport = httpx.ASGITransport(app=create_app(hub))
    async with httpx.AsyncClient(transport=transport, base_url="http://hub.test") as c:
        yield c


async def seed(hub) -> None:
    await hub.store.upsert_device("kitchen", name="Kitchen", location="Ground", capabilities={"audio": True})
    await hub.store.upsert_device("hall", name=None, location=None, capabilities={})
    await hub.store.insert_transcription("kitchen", "2024-01-01T10:00:00.000+00:00", "hello world")
    await hub.store.insert_transcription("hall", "2024-01-05T10:00:00.000+00:00", "is anyone there")
    await hub.store.insert_alert("kitchen", "2024-01-01T10:00:00.000+00:00", "keyword_detected", 'Detected "fire" (high severity)')
    await hub.store.insert_alert("hall", "2024-01-05T10:00:00.000+00:00", "keyword_detected", 'Detected "help" (medium severity)')


@pytest.mark.asyncio
async def test_health(client, hub):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "devices": 0, "observers": 0}


@pytest.mark.asyncio
async def test_devices_listing_marks_connected(client, hub):
    await seed(hub)
    session = hub.registry.attach(FakeConnection())
    await hub._on_frame(session, encode(DeviceInfo(device_id="kitchen")))

    resp = await client.get("/api/devices", params={"online": "true"})
    body = resp.json()
    assert resp.status_code == 200
    assert body["pagination"]["total"] == 2
    by_id = {d["id"]: d for d in body["devices"]}
    assert by_id["kitchen"]["connected"] is True
    assert by_id["hall"]["connected"] is False
    assert by_id["kitchen"]["capabilities"] == {"audio": True, "video": False, "speaker": False}


@pytest.mark.asyncio
async def test_transcriptions_filters(client, hub):
    await seed(hub)

    resp = await client.get("/api/transcriptions", params={"deviceId": "hall"})
    assert [t["text"] for t in resp.json()["transcriptions"]] == ["is anyone there"]

    resp = await client.get("/api/transcriptions", params={"search": "hello"})
    assert resp.json()["pagination"]["total"] == 1

    resp = await client.get("/api/transcriptions", params={"startDate": "2024-01-02", "limit": 9999})
    body = resp.json()
    assert [t["text"] for t in body["transcriptions"]] == ["is anyone there"]
    assert body["pagination"]["limit"] == 500


@pytest.mark.asyncio
async def test_bad_date_is_400(client):
    resp = await client.get("/api/transcriptions", params={"startDate": "yesterday"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_alerts_filters(client, hub):
    await seed(hub)
    resp = await client.get("/api/alerts", params={"severity": "high"})
    body = resp.json()
    assert body["pagination"] == {"total": 1, "limit": 100, "offset": 0}
    assert body["alerts"][0]["device_id"] == "kitchen"


@pytest.mark.asyncio
async def test_alert_status_lifecycle(client, hub):
    await seed(hub)
    observer = FakeConnection()
    await hub._on_frame(hub.registry.attach(observer), encode(WebClient()))
    rows, _ = await hub.store.list_alerts(severity="high")
    alert_id = rows[0]["id"]

    resp = await client.post(f"/api/alerts/{alert_id}/status", json={"status": "acknowledged"})
    assert resp.status_code == 200
    assert resp.json()["alert"]["status"] == "acknowledged"
    (updated,) = observer.of_type("alert_updated")
    assert updated["alert"]["id"] == alert_id

    resp = await client.post(f"/api/alerts/{alert_id}/status", json={"status": "new"})
    assert resp.status_code == 409

    resp = await client.post(f"/api/alerts/{alert_id}/status", json={"status": "resolved"})
    assert resp.status_code == 200

    assert (await client.post(f"/api/alerts/{alert_id}/status", json={"status": "closed"})).status_code == 400
    assert (await client.post("/api/alerts/9999/status", json={"status": "resolved"})).status_code == 404


@pytest.mark.asyncio
async def test_assistant_unconfigured(client):
    resp = await client.post("/api/assistant/query", json={"query": "anything?"})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_assistant_query_and_image(client, hub):
    openai_client = fake_openai_client(["All quiet.", "An empty room."])
    hub.analysis = AnalysisService(client=openai_client)

    resp = await client.post("/api/assistant/query", json={"query": "anything?", "clientId": "web-1"})
    assert resp.json() == {"response": "All quiet."}

    assert (await client.post("/api/assistant/query", json={"query": "  "})).status_code == 400

    image = "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8\xff\xe0").decode()
    resp = await client.post("/api/assistant/analyze-image", json={"image": image, "deviceId": "cam"})
    assert resp.json() == {"description": "An empty room."}

    assert (await client.post("/api/assistant/analyze-image", json={"image": "@@"})).status_code == 400


@pytest.mark.asyncio
async def test_assistant_upstream_failure_is_502(client, hub):
    hub.analysis = AnalysisService(client=fake_openai_client(error=RuntimeError("down")))
    resp = await client.post("/api/assistant/query", json={"query": "anything?"})
    assert resp.status_code == 502
