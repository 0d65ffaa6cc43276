"""SQLite persistence for devices, transcriptions and alerts."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

T = TypeVar("T")

ALERT_STATUSES = ("new", "acknowledged", "resolved")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    name TEXT,
    location TEXT,
    capabilities TEXT,
    last_seen TIMESTAMP
);

CREATE TABLE IF NOT EXISTS transcriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT,
    timestamp TIMESTAMP,
    text TEXT,
    confidence REAL,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT,
    timestamp TIMESTAMP,
    type TEXT,
    message TEXT,
    status TEXT,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE INDEX IF NOT EXISTS idx_transcriptions_device_id ON transcriptions(device_id);
CREATE INDEX IF NOT EXISTS idx_transcriptions_timestamp ON transcriptions(timestamp);
CREATE INDEX IF NOT EXISTS idx_alerts_device_id ON alerts(device_id);
CREATE INDEX IF NOT EXISTS idx_alerts_timestamp ON alerts(timestamp);
CREATE INDEX IF NOT EXISTS idx_alerts_status ON alerts(status);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def iso_from_ms(ms: int | float) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat(timespec="milliseconds")


def normalize_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


def _device_row(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    raw = out.get("capabilities")
    if isinstance(raw, str) and raw:
        try:
            out["capabilities"] = json.loads(raw)
        except ValueError:
            out["capabilities"] = {}
    else:
        out["capabilities"] = {}
    return out


@dataclass(slots=True)
class _Query:
    conditions: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)

    def add(self, condition: str, value: Any) -> None:
        self.conditions.append(condition)
        self.params.append(value)

    def where(self) -> str:
        return (" WHERE " + " AND ".join(self.conditions)) if self.conditions else ""


class Store:
    """One SQLite connection shared by the hub.

    Calls run in a worker thread behind an asyncio lock so the event loop is
    never blocked and the connection is never used concurrently.
    """

    def __init__(self, db_path: str, *, retry_delay_s: float = 1.0) -> None:
        self._db_path = db_path
        self._retry_delay_s = retry_delay_s
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger("homepost.store")

    @property
    def db_path(self) -> str:
        return self._db_path

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await asyncio.to_thread(self._open_sync)
        self._logger.info("Database ready: %s", self._db_path)

    def _open_sync(self) -> sqlite3.Connection:
        conn = connect(self._db_path)
        conn.executescript(_SCHEMA)
        conn.commit()
        return conn

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            async with self._lock:
                await asyncio.to_thread(conn.close)

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("store is not open")
        return self._conn

    async def _call(self, fn: Callable[[sqlite3.Connection], T], *, write: bool = False) -> T:
        conn = self._require()
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, conn)
            except sqlite3.OperationalError as e:
                if not write or not _is_lock_error(e):
                    raise
                self._logger.warning("Database busy (%s); retrying once in %.1fs", e, self._retry_delay_s)
            await asyncio.sleep(self._retry_delay_s)
            return await asyncio.to_thread(fn, conn)

    # Writes

    async def upsert_device(
        self,
        device_id: str,
        *,
        name: str | None,
        location: str | None,
        capabilities: dict[str, Any],
    ) -> dict[str, Any]:
        caps = json.dumps(capabilities, separators=(",", ":"))
        now = utc_now_iso()

        def op(conn: sqlite3.Connection) -> dict[str, Any]:
            with conn:
                conn.execute(
                    """
                    INSERT INTO devices (id, name, location, capabilities, last_seen)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = COALESCE(?, devices.name),
                        location = COALESCE(?, devices.location),
                        capabilities = excluded.capabilities,
                        last_seen = excluded.last_seen
                    """,
                    (device_id, name or device_id, location or "Unknown", caps, now, name, location),
                )
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return _device_row(row)

        return await self._call(op, write=True)

    async def touch_device(self, device_id: str) -> None:
        """Bump last_seen, creating a bare row when the device is not stored yet."""
        now = utc_now_iso()

        def op(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(
                    """
                    INSERT INTO devices (id, name, location, capabilities, last_seen)
                    VALUES (?, ?, 'Unknown', '{}', ?)
                    ON CONFLICT(id) DO UPDATE SET last_seen = excluded.last_seen
                    """,
                    (device_id, device_id, now),
                )

        await self._call(op, write=True)

    async def insert_transcription(self, device_id: str, timestamp: str, text: str, confidence: float = 1.0) -> int:
        def op(conn: sqlite3.Connection) -> int:
            with conn:
                cur = conn.execute(
                    "INSERT INTO transcriptions (device_id, timestamp, text, confidence) VALUES (?, ?, ?, ?)",
                    (device_id, timestamp, text, float(confidence)),
                )
            return int(cur.lastrowid)

        return await self._call(op, write=True)

    async def insert_alert(self, device_id: str, timestamp: str, type_: str, message: str, status: str = "new") -> int:
        def op(conn: sqlite3.Connection) -> int:
            with conn:
                cur = conn.execute(
                    "INSERT INTO alerts (device_id, timestamp, type, message, status) VALUES (?, ?, ?, ?, ?)",
                    (device_id, timestamp, type_, message, status),
                )
            return int(cur.lastrowid)

        return await self._call(op, write=True)

    async def update_alert_status(self, alert_id: int, status: str) -> dict[str, Any] | None:
        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            with conn:
                cur = conn.execute("UPDATE alerts SET status = ? WHERE id = ?", (status, alert_id))
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            return dict(row) if row is not None else None

        return await self._call(op, write=True)

    # Reads

    async def get_device(self, device_id: str) -> dict[str, Any] | None:
        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return _device_row(row) if row is not None else None

        return await self._call(op)

    async def get_alert(self, alert_id: int) -> dict[str, Any] | None:
        def op(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            return dict(row) if row is not None else None

        return await self._call(op)

    async def recent_alerts(self, limit: int) -> list[dict[str, Any]]:
        def op(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            rows = conn.execute("SELECT * FROM alerts ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

        return await self._call(op)

    async def count(self, table: str) -> int:
        if table not in ("devices", "transcriptions", "alerts"):
            raise ValueError(f"unknown table: {table}")

        def op(conn: sqlite3.Connection) -> int:
            return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

        return await self._call(op)

    async def list_devices(
        self, *, seen_after: str | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[dict[str, Any]], int]:
        q = _Query()
        if seen_after:
            q.add("last_seen > ?", seen_after)
        return await self._page("devices", q, "last_seen DESC", limit, offset, row_fn=_device_row)

    async def list_transcriptions(
        self,
        *,
        device_id: str | None = None,
        start: str | None = None,
        end: str | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        q = _Query()
        if device_id:
            q.add("device_id = ?", device_id)
        if start:
            q.add("timestamp >= ?", start)
        if end:
            q.add("timestamp <= ?", end)
        if search:
            q.add("text LIKE ?", f"%{search}%")
        return await self._page("transcriptions", q, "timestamp DESC, id DESC", limit, offset)

    async def list_alerts(
        self,
        *,
        device_id: str | None = None,
        status: str | None = None,
        type_: str | None = None,
        severity: str | None = None,
        start: str | None = None,
        end: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        q = _Query()
        if device_id:
            q.add("device_id = ?", device_id)
        if status:
            q.add("status = ?", status)
        if type_:
            q.add("type = ?", type_)
        if severity:
            # Severity only lives in the alert message text.
            q.add("message LIKE ?", f"%({severity} severity)%")
        if start:
            q.add("timestamp >= ?", start)
        if end:
            q.add("timestamp <= ?", end)
        return await self._page("alerts", q, "timestamp DESC, id DESC", limit, offset)

    async def _page(
        self,
        table: str,
        q: _Query,
        order: str,
        limit: int,
        offset: int,
        *,
        row_fn: Callable[[sqlite3.Row], dict[str, Any]] = dict,
    ) -> tuple[list[dict[str, Any]], int]:
        where = q.where()
        params = list(q.params)

        def op(conn: sqlite3.Connection) -> tuple[list[dict[str, Any]], int]:
            rows = conn.execute(
                f"SELECT * FROM {table}{where} ORDER BY {order} LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()[0]
            return [row_fn(r) for r in rows], int(total)

        return await self._call(op)
