from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterator

from websockets.protocol import State

from homepost.protocol import Capabilities, new_placeholder_id
from homepost.store import utc_now_iso


class Role(enum.Enum):
    UNCLASSIFIED = "unclassified"
    PRODUCER = "producer"
    OBSERVER = "observer"


@dataclass(slots=True, eq=False)
class ConnectionSession:
    """Per-connection state owned by the hub's router."""

    conn: Any
    session_id: str = field(default_factory=new_placeholder_id)
    role: Role = Role.UNCLASSIFIED
    device_id: str | None = None
    name: str | None = None
    location: str | None = None
    capabilities: Capabilities = field(default_factory=Capabilities)
    connected_at: str = field(default_factory=utc_now_iso)
    alive: bool = True

    @property
    def remote_address(self) -> Any:
        return getattr(self.conn, "remote_address", None)

    @property
    def is_ready(self) -> bool:
        return getattr(self.conn, "state", None) is State.OPEN

    def terminate(self) -> None:
        """Drop the transport without a closing handshake."""
        transport = getattr(self.conn, "transport", None)
        if transport is not None:
            transport.abort()

    def describe(self) -> dict[str, Any]:
        remote = self.remote_address
        return {
            "id": self.device_id,
            "deviceId": self.device_id,
            "name": self.name or self.device_id,
            "location": self.location or "Unknown",
            "capabilities": self.capabilities.to_wire(),
            "connectedAt": self.connected_at,
            "ipAddress": remote[0] if isinstance(remote, tuple) and remote else None,
        }


class ConnectionRegistry:
    """Live producers keyed by device id, the observer set, and every attached session."""

    def __init__(self) -> None:
        self._sessions: dict[int, ConnectionSession] = {}
        self._producers: dict[str, ConnectionSession] = {}
        self._observers: set[ConnectionSession] = set()

    def attach(self, conn: Any) -> ConnectionSession:
        session = ConnectionSession(conn=conn)
        self._sessions[id(conn)] = session
        return session

    def detach(self, session: ConnectionSession) -> None:
        self._sessions.pop(id(session.conn), None)
        self._observers.discard(session)

    def sessions(self) -> list[ConnectionSession]:
        return list(self._sessions.values())

    def register_producer(self, session: ConnectionSession) -> ConnectionSession | None:
        """Insert session under its device id; return the entry it displaced, if any."""
        assert session.device_id is not None
        previous = self._producers.get(session.device_id)
        self._producers[session.device_id] = session
        session.role = Role.PRODUCER
        if previous is session:
            return None
        return previous

    def remove_producer(self, session: ConnectionSession, device_id: str | None = None) -> bool:
        """Remove the entry for device_id only if it still belongs to session."""
        key = device_id if device_id is not None else session.device_id
        if key is None:
            return False
        if self._producers.get(key) is not session:
            return False
        del self._producers[key]
        return True

    def add_observer(self, session: ConnectionSession) -> None:
        session.role = Role.OBSERVER
        self._observers.add(session)

    def discard_observer(self, session: ConnectionSession) -> None:
        self._observers.discard(session)

    def get(self, device_id: str) -> ConnectionSession | None:
        return self._producers.get(device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._producers

    def producers(self) -> Iterator[ConnectionSession]:
        return iter(list(self._producers.values()))

    def observers(self) -> list[ConnectionSession]:
        return list(self._observers)

    @property
    def producer_count(self) -> int:
        return len(self._producers)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def roster(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self._producers.values()]
