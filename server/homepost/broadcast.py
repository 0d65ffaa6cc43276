from __future__ import annotations

import asyncio
import logging

from homepost.protocol import Message, encode
from homepost.registry import ConnectionRegistry


class Broadcaster:
    """Fan-out of events to every ready observer.

    Events of one type are throttled: the first one in a window goes out at
    once, later ones inside the window are coalesced and only the most recent
    is sent when the window closes. A throttle of 0 disables coalescing.
    """

    def __init__(self, registry: ConnectionRegistry, *, throttle_s: float = 0.5) -> None:
        self._registry = registry
        self._throttle_s = max(0.0, float(throttle_s))
        self._last_sent: dict[str, float] = {}
        self._pending: dict[str, Message] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}
        self._logger = logging.getLogger("homepost.broadcast")

    @property
    def throttle_s(self) -> float:
        return self._throttle_s

    async def broadcast(self, message: Message) -> None:
        if self._throttle_s <= 0:
            await self._send_now(message)
            return
        key = message.TYPE
        now = asyncio.get_running_loop().time()
        last = self._last_sent.get(key)
        if last is None or (now - last) >= self._throttle_s:
            self._last_sent[key] = now
            await self._send_now(message)
            return

        self._logger.debug("Throttled broadcast of type %s", key)
        self._pending[key] = message
        if key not in self._flush_tasks:
            delay = max(0.0, (last + self._throttle_s) - now)
            self._flush_tasks[key] = asyncio.create_task(self._flush_later(key, delay), name=f"broadcast_flush_{key}")

    async def _flush_later(self, key: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._flush_tasks.pop(key, None)
        message = self._pending.pop(key, None)
        if message is None:
            return
        self._last_sent[key] = asyncio.get_running_loop().time()
        await self._send_now(message)

    async def _send_now(self, message: Message) -> int:
        observers = [s for s in self._registry.observers() if s.is_ready]
        if not observers:
            return 0
        payload = encode(message)
        sent = 0
        for session in observers:
            try:
                await session.conn.send(payload)
                sent += 1
            except Exception:
                self._logger.warning("Broadcast to %s failed; dropping observer", session.remote_address, exc_info=True)
                self._registry.discard_observer(session)
        self._logger.debug("Broadcast %s to %d observers", message.TYPE, sent)
        return sent

    async def close(self) -> None:
        tasks = list(self._flush_tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._flush_tasks.clear()
        self._pending.clear()
