from __future__ import annotations

import sqlite3

import pytest

from homepost.store import Store


@pytest.mark.asyncio
async def test_upsert_device_keeps_known_name(store):
    row = await store.upsert_device("kitchen", name="Kitchen", location="Ground floor", capabilities={"audio": True})
    assert row["name"] == "Kitchen"
    assert row["capabilities"] == {"audio": True}

    row = await store.upsert_device("kitchen", name=None, location=None, capabilities={"audio": True, "speaker": True})
    assert row["name"] == "Kitchen"
    assert row["location"] == "Ground floor"
    assert row["capabilities"]["speaker"] is True
    assert await store.count("devices") == 1


@pytest.mark.asyncio
async def test_new_device_defaults(store):
    row = await store.upsert_device("hall", name=None, location=None, capabilities={})
    assert row["name"] == "hall"
    assert row["location"] == "Unknown"
    assert row["last_seen"]


@pytest.mark.asyncio
async def test_transcriptions_filter_and_page(store):
    await store.upsert_device("kitchen", name=None, location=None, capabilities={})
    await store.upsert_device("hall", name=None, location=None, capabilities={})
    await store.insert_transcription("kitchen", "2024-01-01T10:00:00.000+00:00", "hello there")
    await store.insert_transcription("kitchen", "2024-01-02T10:00:00.000+00:00", "help me")
    await store.insert_transcription("hall", "2024-01-03T10:00:00.000+00:00", "hello hall")

    rows, total = await store.list_transcriptions(device_id="kitchen")
    assert total == 2
    assert [r["text"] for r in rows] == ["help me", "hello there"]

    rows, total = await store.list_transcriptions(search="hello", limit=1)
    assert total == 2
    assert [r["text"] for r in rows] == ["hello hall"]

    rows, _ = await store.list_transcriptions(start="2024-01-02T00:00:00.000+00:00", end="2024-01-02T23:59:59.000+00:00")
    assert [r["text"] for r in rows] == ["help me"]


@pytest.mark.asyncio
async def test_alert_status_and_filters(store):
    await store.upsert_device("kitchen", name=None, location=None, capabilities={})
    fire = await store.insert_alert("kitchen", "2024-01-01T10:00:00.000+00:00", "keyword_detected", 'Detected "fire" (high severity)')
    await store.insert_alert("kitchen", "2024-01-01T11:00:00.000+00:00", "keyword_detected", 'Detected "help" (medium severity)')
    await store.insert_alert("kitchen", "2024-01-01T12:00:00.000+00:00", "command", "Command: restart")

    rows, total = await store.list_alerts(severity="high")
    assert total == 1 and rows[0]["id"] == fire

    rows, total = await store.list_alerts(type_="command")
    assert total == 1 and rows[0]["message"] == "Command: restart"

    updated = await store.update_alert_status(fire, "acknowledged")
    assert updated is not None and updated["status"] == "acknowledged"
    assert await store.update_alert_status(9999, "resolved") is None

    rows, total = await store.list_alerts(status="new")
    assert total == 2

    recent = await store.recent_alerts(2)
    assert [r["message"] for r in recent] == ["Command: restart", 'Detected "help" (medium severity)']


@pytest.mark.asyncio
async def test_alerts_require_known_device(store):
    with pytest.raises(sqlite3.IntegrityError):
        await store.insert_alert("ghost", "2024-01-01T10:00:00.000+00:00", "command", "Command: ping")


@pytest.mark.asyncio
async def test_touch_creates_missing_device_and_keeps_known_fields(store):
    await store.touch_device("ghost")
    row = await store.get_device("ghost")
    assert row["name"] == "ghost"
    assert row["location"] == "Unknown"
    assert row["capabilities"] == {}
    await store.insert_alert("ghost", "2024-01-01T10:00:00.000+00:00", "command", "Command: ping")

    await store.upsert_device("kitchen", name="Kitchen", location="Ground floor", capabilities={"audio": True})
    before = (await store.get_device("kitchen"))["last_seen"]
    await store.touch_device("kitchen")
    row = await store.get_device("kitchen")
    assert row["name"] == "Kitchen"
    assert row["capabilities"] == {"audio": True}
    assert row["last_seen"] >= before
    assert await store.count("devices") == 2


@pytest.mark.asyncio
async def test_locked_write_is_retried_once(store):
    calls = {"n": 0}

    def flaky(conn):
        calls["n"] += 1
        if calls["n"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert await store._call(flaky, write=True) == "ok"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(store):
    def broken(conn):
        raise sqlite3.OperationalError("no such table: nope")

    with pytest.raises(sqlite3.OperationalError):
        await store._call(broken, write=True)


@pytest.mark.asyncio
async def test_file_database_is_created(tmp_path):
    path = tmp_path / "nested" / "homepost.db"
    s = Store(str(path))
    await s.open()
    try:
        await s.upsert_device("kitchen", name=None, location=None, capabilities={})
        assert path.exists()
    finally:
        await s.close()
