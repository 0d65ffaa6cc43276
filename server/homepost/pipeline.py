from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from homepost.audio_features import SAMPLE_RATE_HZ, dbfs, duration_s, pcm16le_bytes_to_float32, write_wav
from homepost.broadcast import Broadcaster
from homepost.protocol import Transcription
from homepost.store import Store, iso_from_ms
from homepost.transcription import Transcriber
from homepost.workflow import AlertWorkflow

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_device_dir(device_id: str) -> str:
    cleaned = _UNSAFE_PATH_CHARS.sub("_", device_id).strip(".")
    return cleaned or "_"


class IngestionPipeline:
    """Per-chunk processing: persist, transcribe, then run the alert workflow.

    ``submit`` schedules the work and returns immediately so the socket read
    loop never waits on transcription. Chunks from one device may overlap.
    """

    def __init__(
        self,
        *,
        audio_dir: Path,
        store: Store,
        transcriber: Transcriber,
        workflow: AlertWorkflow,
        broadcaster: Broadcaster,
        sample_rate_hz: int = SAMPLE_RATE_HZ,
    ) -> None:
        self._audio_dir = Path(audio_dir)
        self._store = store
        self._transcriber = transcriber
        self._workflow = workflow
        self._broadcaster = broadcaster
        self._sample_rate_hz = sample_rate_hz
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logging.getLogger("homepost.pipeline")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, device_id: str, pcm: bytes, captured_ms: int, arrival_ms: int) -> asyncio.Task[None]:
        task = asyncio.create_task(self.process(device_id, pcm, captured_ms, arrival_ms), name=f"ingest_{device_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process(self, device_id: str, pcm: bytes, captured_ms: int, arrival_ms: int) -> None:
        try:
            timestamp = iso_from_ms(captured_ms)
        except (OverflowError, OSError, ValueError):
            self._logger.warning("Bad capture time %r from %s; using arrival time", captured_ms, device_id)
            timestamp = iso_from_ms(arrival_ms)

        try:
            await self._store.touch_device(device_id)
        except Exception:
            self._logger.warning("Failed to update last_seen for %s", device_id, exc_info=True)

        await self._persist(device_id, pcm, arrival_ms)

        if self._logger.isEnabledFor(logging.DEBUG):
            level = dbfs(pcm16le_bytes_to_float32(pcm))
            self._logger.debug(
                "Chunk from %s: %d bytes %.2fs level=%.1f dBFS",
                device_id,
                len(pcm),
                duration_s(pcm, self._sample_rate_hz),
                level,
            )

        try:
            text = await self._transcriber.transcribe(pcm, sample_rate_hz=self._sample_rate_hz)
        except Exception:
            self._logger.exception("Transcription failed for %s", device_id)
            return
        text = (text or "").strip()
        if not text:
            return

        self._logger.info("Transcription from %s: %s", device_id, text)
        await self._broadcaster.broadcast(Transcription(device_id=device_id, timestamp=timestamp, text=text))
        await self._workflow.invoke(device_id, text, timestamp)

    async def _persist(self, device_id: str, pcm: bytes, arrival_ms: int) -> Path | None:
        path = self._audio_dir / safe_device_dir(device_id) / f"chunk-{arrival_ms}.wav"
        try:
            await asyncio.to_thread(write_wav, path, pcm, self._sample_rate_hz)
        except Exception:
            self._logger.warning("Failed to save audio chunk for %s to %s", device_id, path, exc_info=True)
            return None
        return path
