from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

BATCH_SIZE = 20


@dataclass(slots=True)
class SweepResult:
    scanned: int = 0
    deleted: int = 0
    removed_dirs: int = 0
    errors: int = 0


class RetentionSweeper:
    """Delete audio chunks older than the retention window."""

    def __init__(
        self,
        audio_dir: Path,
        *,
        retain_hours: int,
        interval_s: float,
        initial_delay_s: float = 30.0,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._audio_dir = Path(audio_dir)
        self._retain_s = float(retain_hours) * 3600.0
        self._interval_s = max(1.0, float(interval_s))
        self._initial_delay_s = max(0.0, float(initial_delay_s))
        self._batch_size = max(1, int(batch_size))
        self._logger = logging.getLogger("homepost.retention")

    async def run(self, stop: asyncio.Event) -> None:
        delay = self._initial_delay_s
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Audio cleanup failed")
            delay = self._interval_s

    async def sweep(self, now: float | None = None) -> SweepResult:
        result = SweepResult()
        if not self._audio_dir.is_dir():
            self._logger.debug("Audio directory does not exist: %s", self._audio_dir)
            return result
        cutoff = (time.time() if now is None else now) - self._retain_s
        self._logger.info("Starting audio cleanup, removing files older than %.0f hours", self._retain_s / 3600.0)

        try:
            device_dirs = sorted(p for p in self._audio_dir.iterdir() if p.is_dir())
        except OSError:
            self._logger.exception("Failed to list %s", self._audio_dir)
            result.errors += 1
            return result

        for device_dir in device_dirs:
            await self._sweep_device_dir(device_dir, cutoff, result)

        self._logger.info(
            "Audio cleanup completed: scanned=%d deleted=%d removedDirs=%d errors=%d",
            result.scanned,
            result.deleted,
            result.removed_dirs,
            result.errors,
        )
        return result

    async def _sweep_device_dir(self, device_dir: Path, cutoff: float, result: SweepResult) -> None:
        try:
            files = sorted(p for p in device_dir.iterdir() if p.is_file())
        except OSError:
            self._logger.exception("Error processing device directory %s", device_dir)
            result.errors += 1
            return

        for i in range(0, len(files), self._batch_size):
            batch = files[i : i + self._batch_size]
            outcomes = await asyncio.to_thread(self._delete_batch, batch, cutoff)
            for path, outcome in zip(batch, outcomes):
                result.scanned += 1
                if outcome is True:
                    result.deleted += 1
                    self._logger.debug("Deleted old audio file: %s", path)
                elif isinstance(outcome, OSError):
                    result.errors += 1
                    self._logger.error("Error processing file %s: %s", path, outcome)

        try:
            if not any(device_dir.iterdir()):
                device_dir.rmdir()
                result.removed_dirs += 1
                self._logger.info("Removed empty device directory: %s", device_dir)
        except OSError as e:
            result.errors += 1
            self._logger.error("Error removing directory %s: %s", device_dir, e)

    @staticmethod
    def _delete_batch(batch: list[Path], cutoff: float) -> list[bool | OSError]:
        outcomes: list[bool | OSError] = []
        for path in batch:
            try:
                if os.stat(path).st_mtime < cutoff:
                    os.unlink(path)
                    outcomes.append(True)
                else:
                    outcomes.append(False)
            except OSError as e:
                outcomes.append(e)
        return outcomes
