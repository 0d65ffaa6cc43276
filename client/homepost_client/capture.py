from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator

from homepost_client.config import MicConfig


class CaptureError(RuntimeError):
    pass


def _sounddevice() -> Any:
    # PortAudio is loaded on import; keep it out of module import so the rest
    # of the client works on machines without an audio stack.
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise CaptureError(f"sounddevice is unavailable: {e}") from e
    return sd


def list_input_devices() -> list[tuple[int, str, int, float | None, bool]]:
    sd = _sounddevice()
    devices = sd.query_devices()
    default_in = sd.default.device[0] if sd.default.device else None
    out: list[tuple[int, str, int, float | None, bool]] = []
    for i, d in enumerate(devices):
        chans = int(d.get("max_input_channels") or 0)
        if chans <= 0:
            continue
        rate = d.get("default_samplerate")
        out.append((i, str(d.get("name") or ""), chans, float(rate) if rate else None, default_in == i))
    return out


def print_input_devices() -> None:
    print("Input devices:")
    for i, name, chans, rate, is_default in list_input_devices():
        star = " *" if is_default else ""
        print(f"[{i:2d}] ch={chans} defaultRate={rate} {name}{star}")


def resolve_device(device: str | None) -> int | None:
    """Map a micConfig device (index, name substring or "default") to a PortAudio index."""
    if device is None:
        return None
    needle = str(device).strip()
    if not needle or needle.lower() == "default":
        return None
    sd = _sounddevice()
    devices = sd.query_devices()
    try:
        idx = int(needle)
    except ValueError:
        idx = None
    if idx is not None:
        if idx < 0 or idx >= len(devices) or int(devices[idx].get("max_input_channels") or 0) <= 0:
            raise CaptureError(f"Input device {idx} is not available")
        return idx
    matches = [
        i
        for i, d in enumerate(devices)
        if int(d.get("max_input_channels") or 0) > 0 and needle.lower() in str(d.get("name") or "").lower()
    ]
    if not matches:
        raise CaptureError(f'No input device matches "{device}"')
    if len(matches) > 1:
        logging.getLogger("homepost_client.capture").warning(
            'Several input devices match "%s"; using [%d]', device, matches[0]
        )
    return matches[0]


class MicCapture:
    """Raw int16 microphone capture delivered to the event loop as byte blocks."""

    def __init__(self, mic: MicConfig, *, block_ms: int = 100, queue_max_blocks: int = 100) -> None:
        self._mic = mic
        self._block_ms = max(10, int(block_ms))
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max(1, int(queue_max_blocks)))
        self._stream: Any | None = None
        self._stop_flag = threading.Event()
        self._logger = logging.getLogger("homepost_client.capture")

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        sd = _sounddevice()
        loop = asyncio.get_running_loop()
        device = resolve_device(self._mic.device)
        rate = self._mic.sample_rate_hz
        channels = self._mic.channel_count
        blocksize = int(rate * (self._block_ms / 1000.0))
        self._stop_flag.clear()

        def _enqueue(data: bytes) -> None:
            if self._stop_flag.is_set():
                return
            if self._queue.full():
                try:
                    _ = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                self._queue.put_nowait(data)
            except asyncio.QueueFull:
                pass

        def callback(indata, frames, time_info, status) -> None:  # type: ignore[no-untyped-def]
            if self._stop_flag.is_set():
                return
            if status:
                loop.call_soon_threadsafe(self._logger.warning, "Audio status: %s", status)
            loop.call_soon_threadsafe(_enqueue, bytes(indata))

        try:
            stream = sd.RawInputStream(
                device=device,
                samplerate=rate,
                channels=channels,
                dtype="int16",
                blocksize=blocksize,
                callback=callback,
            )
            stream.start()
        except Exception as e:
            raise CaptureError(f"Failed to start audio capture: {e}") from e
        self._stream = stream
        self._logger.info(
            "Audio capture started device=%s rate=%dHz ch=%d blocksize=%d",
            device if device is not None else "(default)",
            rate,
            channels,
            blocksize,
        )

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        self._stop_flag.set()
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception:
            self._logger.exception("Error stopping microphone")
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        self._logger.info("Audio capture stopped")

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            block = await self._queue.get()
            if block is None:
                return
            yield block
