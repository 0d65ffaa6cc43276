from __future__ import annotations

import asyncio

import pytest
from websockets.protocol import State

from conftest import FakeConnection
from homepost.broadcast import Broadcaster
from homepost.protocol import DeviceDisconnected, Transcription
from homepost.registry import ConnectionRegistry


def _observer(registry: ConnectionRegistry) -> FakeConnection:
    conn = FakeConnection()
    registry.add_observer(registry.attach(conn))
    return conn


def _transcript(text: str) -> Transcription:
    return Transcription(device_id="kitchen", timestamp="2024-01-01T00:00:00.000+00:00", text=text)


@pytest.mark.asyncio
async def test_reaches_ready_observers_only():
    registry = ConnectionRegistry()
    ready, closing = _observer(registry), _observer(registry)
    closing.state = State.CLOSING
    producer = FakeConnection()
    registry.attach(producer)

    await Broadcaster(registry, throttle_s=0).broadcast(_transcript("hi"))

    assert len(ready.sent) == 1
    assert closing.sent == []
    assert producer.sent == []


@pytest.mark.asyncio
async def test_failed_observer_is_dropped():
    registry = ConnectionRegistry()
    good, bad = _observer(registry), _observer(registry)
    bad.fail_sends = True

    await Broadcaster(registry, throttle_s=0).broadcast(_transcript("hi"))

    assert len(good.sent) == 1
    assert registry.observer_count == 1


@pytest.mark.asyncio
async def test_throttle_coalesces_to_most_recent():
    registry = ConnectionRegistry()
    conn = _observer(registry)
    broadcaster = Broadcaster(registry, throttle_s=0.05)

    await broadcaster.broadcast(_transcript("one"))
    await broadcaster.broadcast(_transcript("two"))
    await broadcaster.broadcast(_transcript("three"))
    assert [m["text"] for m in conn.of_type("transcription")] == ["one"]

    await asyncio.sleep(0.15)
    assert [m["text"] for m in conn.of_type("transcription")] == ["one", "three"]
    await broadcaster.close()


@pytest.mark.asyncio
async def test_throttle_is_per_event_type():
    registry = ConnectionRegistry()
    conn = _observer(registry)
    broadcaster = Broadcaster(registry, throttle_s=10)

    await broadcaster.broadcast(_transcript("one"))
    await broadcaster.broadcast(DeviceDisconnected(device_id="kitchen", timestamp="t"))

    assert [m["type"] for m in conn.messages()] == ["transcription", "device_disconnected"]
    await broadcaster.close()
