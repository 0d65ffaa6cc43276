from __future__ import annotations

from conftest import FakeConnection
from homepost.registry import ConnectionRegistry, Role


def test_register_returns_displaced_session():
    registry = ConnectionRegistry()
    first = registry.attach(FakeConnection())
    first.device_id = "kitchen"
    assert registry.register_producer(first) is None
    assert registry.register_producer(first) is None

    second = registry.attach(FakeConnection(("127.0.0.1", 50001)))
    second.device_id = "kitchen"
    assert registry.register_producer(second) is first
    assert registry.get("kitchen") is second
    assert registry.producer_count == 1


def test_stale_session_cannot_remove_newer_entry():
    registry = ConnectionRegistry()
    old = registry.attach(FakeConnection())
    old.device_id = "kitchen"
    registry.register_producer(old)
    new = registry.attach(FakeConnection(("127.0.0.1", 50001)))
    new.device_id = "kitchen"
    registry.register_producer(new)

    assert registry.remove_producer(old) is False
    assert "kitchen" in registry
    assert registry.remove_producer(new) is True
    assert "kitchen" not in registry


def test_roster_describes_producers():
    registry = ConnectionRegistry()
    session = registry.attach(FakeConnection(("10.0.0.5", 40000)))
    session.device_id = "kitchen"
    registry.register_producer(session)
    observer = registry.attach(FakeConnection())
    registry.add_observer(observer)

    assert session.role is Role.PRODUCER
    (entry,) = registry.roster()
    assert entry["deviceId"] == "kitchen"
    assert entry["name"] == "kitchen"
    assert entry["location"] == "Unknown"
    assert entry["ipAddress"] == "10.0.0.5"
    assert registry.observer_count == 1

    registry.detach(observer)
    assert registry.observer_count == 0
    assert len(registry.sessions()) == 1
