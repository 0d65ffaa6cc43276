from __future__ import annotations

import asyncio
import logging
import re

_UNSAFE = re.compile(r"[;&|<>$]")


def sanitize(text: str) -> str:
    return _UNSAFE.sub("", text or "").strip()


class Speaker:
    """Text-to-speech through the espeak binary."""

    def __init__(self, *, enabled: bool = True, command: str = "espeak") -> None:
        self.enabled = enabled
        self._command = command
        self._logger = logging.getLogger("homepost_client.speech")
        self._tasks: set[asyncio.Task[None]] = set()

    def speak(self, text: str) -> asyncio.Task[None] | None:
        """Start speaking in the background; never raises."""
        if not self.enabled:
            return None
        cleaned = sanitize(text)
        if not cleaned:
            return None
        self._logger.info("Speaking: %s", cleaned)
        task = asyncio.create_task(self._run(cleaned), name="speak")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, text: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command,
                text,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            self._logger.error("%s is not installed; install it with: sudo apt-get install espeak", self._command)
            return
        except OSError:
            self._logger.exception("Failed to spawn %s", self._command)
            return
        stdout, stderr = await proc.communicate()
        if stdout:
            self._logger.debug("%s stdout: %s", self._command, stdout.decode(errors="replace").strip())
        if stderr:
            self._logger.debug("%s stderr: %s", self._command, stderr.decode(errors="replace").strip())
        if proc.returncode != 0:
            self._logger.warning("%s exited with code %s", self._command, proc.returncode)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
