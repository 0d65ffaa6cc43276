from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("homepost_client.crash")


def error_record(exc: BaseException | None, *, message: str | None = None) -> dict[str, Any]:
    if exc is None:
        return {"name": "Error", "message": message or "Unknown reason", "stack": "No stack trace"}
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
    return {"name": type(exc).__name__, "message": str(exc), "stack": stack or "No stack trace"}


def write_crash_record(
    directory: Path,
    kind: str,
    exc: BaseException | None,
    *,
    message: str | None = None,
    config: dict[str, Any] | None = None,
) -> Path | None:
    """Write ``<kind>-<epoch ms>.json``. Failures are logged and return None."""
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "error": error_record(exc, message=message),
    }
    if config is not None:
        record["config"] = config
    path = Path(directory) / f"{kind}-{int(time.time() * 1000)}.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record, indent=2, default=str) + "\n", encoding="utf-8")
    except OSError:
        logger.exception("Failed to write %s log", kind)
        return None
    logger.error("Wrote %s record to %s", kind, path)
    return path


class CrashReporter:
    """Records uncaught errors and routes them into the graceful shutdown path."""

    def __init__(
        self,
        directory: Path,
        *,
        on_fatal: Callable[[], None],
        config_snapshot: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._on_fatal = on_fatal
        self._config_snapshot = config_snapshot
        self._loop: asyncio.AbstractEventLoop | None = None
        self._prev_excepthook: Any = None
        self._prev_threading_hook: Any = None
        self.records: list[Path] = []

    def _snapshot(self) -> dict[str, Any] | None:
        if self._config_snapshot is None:
            return None
        try:
            return self._config_snapshot()
        except Exception:
            return None

    def record(self, kind: str, exc: BaseException | None, *, message: str | None = None) -> Path | None:
        path = write_crash_record(self._directory, kind, exc, message=message, config=self._snapshot())
        if path is not None:
            self.records.append(path)
        return path

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._prev_excepthook = sys.excepthook
        self._prev_threading_hook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threading_hook
        loop.set_exception_handler(self._loop_exception_handler)

    def uninstall(self) -> None:
        if self._prev_excepthook is not None:
            sys.excepthook = self._prev_excepthook
        if self._prev_threading_hook is not None:
            threading.excepthook = self._prev_threading_hook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(None)
        self._loop = None

    def handle_uncaught(self, exc: BaseException) -> None:
        logger.error("Uncaught exception: %s", exc, exc_info=(type(exc), exc, exc.__traceback__))
        self.record("crash", exc)
        self._request_shutdown()

    def _excepthook(self, exc_type: type[BaseException], exc: BaseException, tb: Any) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            if self._prev_excepthook is not None:
                self._prev_excepthook(exc_type, exc, tb)
            return
        self.handle_uncaught(exc)

    def _threading_hook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None or isinstance(args.exc_value, SystemExit):
            return
        self.handle_uncaught(args.exc_value)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        message = str(context.get("message") or "")
        logger.error("Unhandled asynchronous error: %s", message or exc, exc_info=exc)
        self.record("rejection", exc, message=message)
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._on_fatal()
        else:
            loop.call_soon_threadsafe(self._on_fatal)
