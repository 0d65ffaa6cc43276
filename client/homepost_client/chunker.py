from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

SendFn = Callable[[bytes], Awaitable[None]]
ReadyFn = Callable[[], bool]


class AudioChunker:
    """Turns many small capture callbacks into chunk-sized sends.

    Full chunks go out as soon as they are buffered; a periodic timer sends
    whatever is left so quiet input still reaches the hub. Nothing is sent
    while the link is not ready; audio keeps accumulating up to
    max_buffered_bytes, after which the oldest bytes are dropped.
    """

    def __init__(
        self,
        send: SendFn,
        is_ready: ReadyFn,
        *,
        chunk_size: int = 4096,
        interval_s: float = 0.5,
        max_buffered_bytes: int = 8 * 1024 * 1024,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._send = send
        self._is_ready = is_ready
        self._chunk_size = int(chunk_size)
        self._interval_s = max(0.01, float(interval_s))
        self._max_buffered = max(int(max_buffered_bytes), self._chunk_size)
        self._buf = bytearray()
        self._timer: asyncio.Task[None] | None = None
        self._logger = logging.getLogger("homepost_client.chunker")
        self.chunks_sent = 0
        self.bytes_sent = 0
        self.bytes_dropped = 0

    @property
    def buffered(self) -> int:
        return len(self._buf)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def configure(self, *, chunk_size: int | None = None, interval_s: float | None = None) -> None:
        if chunk_size is not None and chunk_size > 0:
            self._chunk_size = int(chunk_size)
            self._max_buffered = max(self._max_buffered, self._chunk_size)
        if interval_s is not None and interval_s > 0:
            self._interval_s = max(0.01, float(interval_s))

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._timer_loop(), name="audio_flush_timer")

    async def stop(self) -> None:
        """Cancel the timer and discard anything still buffered."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        if self._buf:
            self._logger.debug("Discarding %d buffered bytes on stop", len(self._buf))
        self._buf.clear()

    async def feed(self, data: bytes) -> None:
        if not data:
            return
        self._buf.extend(data)
        overflow = len(self._buf) - self._max_buffered
        if overflow > 0:
            del self._buf[:overflow]
            self.bytes_dropped += overflow
            self._logger.warning("Audio buffer full; dropped %d oldest bytes", overflow)
        while len(self._buf) >= self._chunk_size and self._is_ready():
            chunk = bytes(self._buf[: self._chunk_size])
            del self._buf[: self._chunk_size]
            if not await self._send_chunk(chunk):
                break

    async def flush(self) -> None:
        if not self._buf or not self._is_ready():
            return
        chunk = bytes(self._buf)
        self._buf.clear()
        await self._send_chunk(chunk)

    async def _send_chunk(self, chunk: bytes) -> bool:
        try:
            await self._send(chunk)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Error sending audio data; clearing buffer")
            self._buf.clear()
            return False
        self.chunks_sent += 1
        self.bytes_sent += len(chunk)
        self._logger.debug("Sent %d bytes of audio data", len(chunk))
        return True

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            await self.flush()
