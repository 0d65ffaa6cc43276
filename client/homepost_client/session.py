from __future__ import annotations

import asyncio
import enum
import logging
import platform
import sys
import time
from typing import Any, AsyncIterator, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from homepost.errors import ProtocolError
from homepost.protocol import (
    DEVICE_INBOUND,
    MAX_MESSAGE_BYTES,
    AudioData,
    Capabilities,
    Command,
    DeviceInfo,
    Fault,
    ServerResponse,
    Speak,
    decode,
    encode,
    encoded_size,
)

from homepost_client import __version__
from homepost_client.backoff import Backoff
from homepost_client.capture import CaptureError, MicCapture
from homepost_client.chunker import AudioChunker
from homepost_client.commands import CommandHandler
from homepost_client.config import ConfigStore, ConfigUpdate, DeviceConfig, MicConfig
from homepost_client.logging_utils import set_level
from homepost_client.speech import Speaker

CAPTURE_RETRY_S = 10.0
MIC_RESTART_DELAY_S = 1.0


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class AudioSource(Protocol):
    @property
    def running(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def frames(self) -> AsyncIterator[bytes]: ...


def _backoff_for(cfg: DeviceConfig) -> Backoff:
    return Backoff(
        cfg.reconnect_interval / 1000.0,
        cfg.reconnect_backoff_factor,
        cfg.max_reconnect_interval / 1000.0,
    )


class ProducerSession:
    """Device side of the hub connection.

    Loops disconnected -> connecting -> connected -> closing until the stop
    event is set. Every way out of a connection (handshake failure, close,
    heartbeat timeout, any exception) goes through the same backoff.
    """

    def __init__(
        self,
        config: ConfigStore,
        *,
        speaker: Speaker | None = None,
        capture_factory: Callable[[MicConfig], AudioSource] = MicCapture,
        capture_retry_s: float = CAPTURE_RETRY_S,
        restart_grace_s: float = 1.0,
    ) -> None:
        self._config = config
        cfg = config.config
        self._speaker = speaker if speaker is not None else Speaker(enabled=cfg.speaker_enabled)
        self._capture_factory = capture_factory
        self._capture_retry_s = capture_retry_s
        self._logger = logging.getLogger("homepost_client.session")

        self.state = SessionState.DISCONNECTED
        self.connect_attempts = 0
        self.backoff = _backoff_for(cfg)
        self._ws: Any | None = None
        self._stop: asyncio.Event | None = None
        self._last_pong = time.monotonic()
        self._capture: AudioSource | None = None
        self._capture_task: asyncio.Task[None] | None = None
        self.chunker = AudioChunker(
            self._send_audio,
            self.is_ready,
            chunk_size=cfg.audio_chunk_size,
            interval_s=cfg.audio_send_interval / 1000.0,
            max_buffered_bytes=cfg.max_buffered_bytes,
        )
        self.commands = CommandHandler(
            config,
            stop_capture=self.stop_capture,
            request_exit=self.request_stop,
            on_config_changed=self._apply_config,
            restart_grace_s=restart_grace_s,
        )

    @property
    def config(self) -> DeviceConfig:
        return self._config.config

    @property
    def capture_running(self) -> bool:
        return self._capture is not None and self._capture.running

    def is_ready(self) -> bool:
        ws = self._ws
        return self.state is SessionState.CONNECTED and ws is not None and ws.state is State.OPEN

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    def registration(self) -> DeviceInfo:
        cfg = self.config
        return DeviceInfo(
            device_id=cfg.device_id,
            name=cfg.device_name,
            location=cfg.location,
            capabilities=Capabilities(audio=True, video=False, speaker=bool(cfg.speaker_enabled)),
            client_version=__version__,
            system_info={
                "platform": sys.platform,
                "arch": platform.machine(),
                "pythonVersion": platform.python_version(),
            },
        )

    # Connection loop

    async def run(self, stop: asyncio.Event) -> None:
        self._stop = stop
        while not stop.is_set():
            self.state = SessionState.CONNECTING
            self.connect_attempts += 1
            self._logger.info(
                "Connecting to server at %s... (attempt %d)", self.config.server_url, self.connect_attempts
            )
            try:
                await self._connect_once(stop)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning("Connection to server failed: %s (%s)", e, type(e).__name__)
            finally:
                await self._teardown()

            if stop.is_set():
                break
            delay = self.backoff.next_delay()
            self._logger.info("Reconnecting in %.1f seconds...", delay)
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.state = SessionState.DISCONNECTED
        await self._speaker.close()
        self._logger.info("Session stopped")

    async def _connect_once(self, stop: asyncio.Event) -> None:
        cfg = self.config
        async with websockets.connect(
            cfg.server_url,
            open_timeout=cfg.handshake_timeout / 1000.0,
            ping_interval=None,
            max_size=2 * 1024 * 1024,
        ) as ws:
            self._ws = ws
            self.state = SessionState.CONNECTED
            self.backoff.reset()
            self._last_pong = time.monotonic()
            self._logger.info("Connected to server %s", cfg.server_url)

            await ws.send(encode(self.registration()))
            await self.start_capture()

            receiver = asyncio.create_task(self._receive_loop(ws), name="receive_loop")
            heartbeat = asyncio.create_task(self._heartbeat_loop(ws), name="heartbeat_loop")
            stop_task = asyncio.create_task(stop.wait(), name="session_stop")
            tasks = (receiver, heartbeat, stop_task)
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    if t is stop_task or t.cancelled():
                        continue
                    exc = t.exception()
                    if exc is not None and not isinstance(exc, ConnectionClosed):
                        self._logger.warning("%s ended with error: %s", t.get_name(), exc)
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            if stop.is_set():
                self.state = SessionState.CLOSING
                await self.stop_capture()
                await ws.close()
            else:
                self._logger.info(
                    "Connection to server closed: code=%s reason=%s", ws.close_code, ws.close_reason or "Unknown reason"
                )

    async def _teardown(self) -> None:
        if self.state is SessionState.CONNECTED:
            self.state = SessionState.CLOSING
        await self.stop_capture()
        self._ws = None
        self.state = SessionState.DISCONNECTED

    # Inbound

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            await self.handle_frame(raw)

    async def handle_frame(self, raw: str | bytes) -> None:
        size = encoded_size(raw)
        if size > MAX_MESSAGE_BYTES:
            self._logger.warning("Received very large message (%d bytes), ignoring", size)
            return
        try:
            message = decode(raw, accept=DEVICE_INBOUND)
        except ProtocolError as e:
            self._logger.warning("Ignoring message from server: %s (%s)", e.message, e.code)
            return
        except Exception:
            self._logger.warning("Ignoring undecodable message from server", exc_info=True)
            return

        if isinstance(message, ServerResponse):
            self._logger.info("Server response: %s", message.message)
        elif isinstance(message, Speak):
            if self.config.speaker_enabled and message.text:
                self._speaker.speak(message.text)
        elif isinstance(message, Command):
            await self.commands.handle(message)
        elif isinstance(message, Fault):
            self._logger.error("Server error: %s (code: %s)", message.message, message.code)

    # Heartbeat

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            interval = self.config.heartbeat_interval / 1000.0
            await asyncio.sleep(interval)
            if ws.state is not State.OPEN:
                return
            self._logger.debug("Sending ping to server")
            try:
                waiter = await ws.ping()
            except ConnectionClosed:
                return
            except Exception:
                self._logger.exception("Error sending ping")
                ws.transport.abort()
                return
            waiter.add_done_callback(self._on_pong)
            if time.monotonic() - self._last_pong > interval * 2:
                self._logger.warning("No pong received in a long time, reconnecting...")
                ws.transport.abort()
                return

    def _on_pong(self, fut: asyncio.Future[Any]) -> None:
        if not fut.cancelled() and fut.exception() is None:
            self._logger.debug("Received pong from server")
            self._last_pong = time.monotonic()

    # Audio

    async def _send_audio(self, pcm: bytes) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionError("not connected")
        await ws.send(encode(AudioData.from_pcm(self.config.device_id, pcm)))

    async def start_capture(self) -> None:
        if self._capture_task is not None and not self._capture_task.done():
            return
        self._capture = self._capture_factory(self.config.mic_config)
        self._capture_task = asyncio.create_task(self._pump_audio(self._capture), name="audio_capture")

    async def stop_capture(self) -> None:
        task, self._capture_task = self._capture_task, None
        capture, self._capture = self._capture, None
        if capture is not None and capture.running:
            capture.stop()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.chunker.stop()

    async def _pump_audio(self, capture: AudioSource) -> None:
        while True:
            try:
                capture.start()
            except CaptureError as e:
                self._logger.error("%s; retrying in %.0fs", e, self._capture_retry_s)
                await asyncio.sleep(self._capture_retry_s)
                continue
            break
        self.chunker.start()
        async for block in capture.frames():
            await self.chunker.feed(block)

    async def _apply_config(self, update: ConfigUpdate) -> None:
        cfg = self.config
        self._speaker.enabled = cfg.speaker_enabled
        self.chunker.configure(chunk_size=cfg.audio_chunk_size, interval_s=cfg.audio_send_interval / 1000.0)
        self.backoff.base_s = cfg.reconnect_interval / 1000.0
        self.backoff.maximum_s = max(self.backoff.maximum_s, self.backoff.base_s)
        if "logLevel" in update.changed:
            set_level(cfg.log_level)
        if update.mic_changed and self._capture_task is not None:
            self._logger.info("Restarting audio capture with new settings")
            await self.stop_capture()
            await asyncio.sleep(MIC_RESTART_DELAY_S)
            if self.is_ready():
                await self.start_capture()
