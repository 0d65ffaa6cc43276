from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from homepost.protocol import Command

from homepost_client.config import ConfigStore, ConfigUpdate

RESTART_GRACE_S = 1.0


class CommandHandler:
    """Executes control commands forwarded by the hub.

    restart stops capture and asks the process to exit once in-flight sends
    had a moment to flush; a supervisor is expected to start it again.
    """

    def __init__(
        self,
        config: ConfigStore,
        *,
        stop_capture: Callable[[], Awaitable[None]],
        request_exit: Callable[[], None],
        on_config_changed: Callable[[ConfigUpdate], Awaitable[None]],
        restart_grace_s: float = RESTART_GRACE_S,
    ) -> None:
        self._config = config
        self._stop_capture = stop_capture
        self._request_exit = request_exit
        self._on_config_changed = on_config_changed
        self._restart_grace_s = max(0.0, float(restart_grace_s))
        self._logger = logging.getLogger("homepost_client.commands")
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "restart": self._restart,
            "update_config": self._update_config,
            "ping": self._ping,
            "status": self._status,
        }

    async def handle(self, command: Command) -> None:
        name = (command.command or "").strip()
        self._logger.info("Received command: %s %s", name, command.params or {})
        handler = self._handlers.get(name)
        if handler is None:
            self._logger.warning("Unknown command: %s", name)
            return
        try:
            await handler(command.params or {})
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Error handling command %s", name)

    async def _restart(self, params: Mapping[str, Any]) -> None:
        self._logger.info("Restarting client...")
        await self._stop_capture()
        await asyncio.sleep(self._restart_grace_s)
        self._request_exit()

    async def _update_config(self, params: Mapping[str, Any]) -> None:
        if not isinstance(params, Mapping) or not params:
            self._logger.warning("Invalid parameters for update_config command")
            return
        update = self._config.update(params)
        if not update.changed:
            self._logger.info("No valid configuration changes received")
            return
        await self._on_config_changed(update)

    async def _ping(self, params: Mapping[str, Any]) -> None:
        self._logger.info("Ping received")

    async def _status(self, params: Mapping[str, Any]) -> None:
        cfg = self._config.config
        self._logger.info(
            "Status requested: device=%s server=%s speaker=%s chunk=%dB interval=%dms",
            cfg.device_id,
            cfg.server_url,
            cfg.speaker_enabled,
            cfg.audio_chunk_size,
            cfg.audio_send_interval,
        )
