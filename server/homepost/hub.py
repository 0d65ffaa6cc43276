from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import uvicorn
import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.exceptions import ConnectionClosed

from homepost.analysis import AnalysisService
from homepost.api import create_app
from homepost.broadcast import Broadcaster
from homepost.classifiers import FallbackClassifier, build_classifier
from homepost.errors import ProtocolError
from homepost.pipeline import IngestionPipeline
from homepost.protocol import (
    AUTH_REQUIRED,
    DEVICE_NOT_REGISTERED,
    HUB_INBOUND,
    INVALID_DEVICE_ID,
    INVALID_FORMAT,
    MESSAGE_TOO_LARGE,
    NOT_AUTHORIZED,
    PLACEHOLDER_PREFIX,
    PROCESSING_ERROR,
    AudioData,
    Command,
    CommandSent,
    DeviceConnected,
    DeviceDisconnected,
    DeviceInfo,
    DeviceList,
    Fault,
    Message,
    RecentAlerts,
    ServerResponse,
    WebClient,
    decode,
    encode,
    now_ms,
)
from homepost.registry import ConnectionRegistry, ConnectionSession, Role
from homepost.retention import RetentionSweeper
from homepost.settings import HubSettings
from homepost.store import Store, utc_now_iso
from homepost.transcription import ElevenLabsConfig, ElevenLabsTranscriber, Transcriber
from homepost.workflow import AlertWorkflow

MIN_AUDIO_BYTES = 10
TRANSPORT_MAX_SIZE = 2 * 1024 * 1024


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the hub process."""

    @contextlib.contextmanager
    def capture_signals(self) -> Any:
        yield

    def install_signal_handlers(self) -> None:
        return


class Hub:
    """Connection acceptor and message router.

    Owns the registry, the broadcaster, the alert workflow and the ingestion
    pipeline. Nothing here is module level, so several hubs can run side by
    side in one process.
    """

    def __init__(
        self,
        settings: HubSettings,
        *,
        store: Store | None = None,
        transcriber: Transcriber | None = None,
        analysis: AnalysisService | None = None,
        classifier: FallbackClassifier | None = None,
    ) -> None:
        self._settings = settings
        self._logger = logging.getLogger("homepost.hub")
        self._stop = asyncio.Event()
        self._server: Server | None = None
        self._http: _EmbeddedServer | None = None
        self._tasks: list[asyncio.Task[None]] = []

        self.store = store if store is not None else Store(settings.db_path)
        if analysis is None and settings.openai_api_key:
            analysis = AnalysisService(settings.openai_api_key, model=settings.openai_model)
        self.analysis = analysis
        self.registry = ConnectionRegistry()
        self.broadcaster = Broadcaster(self.registry, throttle_s=settings.broadcast_throttle_s)
        self.classifier = classifier if classifier is not None else build_classifier(settings.alert_phrases, analysis)
        self.transcriber: Transcriber = (
            transcriber
            if transcriber is not None
            else ElevenLabsTranscriber(
                ElevenLabsConfig(
                    api_key=settings.elevenlabs_api_key,
                    host=settings.elevenlabs_host,
                    model_id=settings.elevenlabs_model_id,
                    language_code=settings.elevenlabs_language_code,
                )
            )
        )

        self.workflow = AlertWorkflow(
            classifier=self.classifier,
            store=self.store,
            broadcaster=self.broadcaster,
            send_to_device=self.send_to_device,
            has_speaker=self.has_speaker,
        )
        self.pipeline = IngestionPipeline(
            audio_dir=settings.audio_dir,
            store=self.store,
            transcriber=self.transcriber,
            workflow=self.workflow,
            broadcaster=self.broadcaster,
        )
        self.retention = RetentionSweeper(
            settings.audio_dir,
            retain_hours=settings.retain_audio_hours,
            interval_s=settings.cleanup_interval_minutes * 60.0,
        )

    @property
    def settings(self) -> HubSettings:
        return self._settings

    @property
    def port(self) -> int:
        """Bound socket port (useful when configured with port 0)."""
        if self._server is None:
            return self._settings.port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self._settings.port

    def request_stop(self) -> None:
        self._stop.set()
        if self._http is not None:
            self._http.should_exit = True

    # Lifecycle

    async def start(self) -> None:
        await self.store.open()
        self._server = await websockets.serve(
            self._handle,
            self._settings.host,
            self._settings.port,
            max_size=TRANSPORT_MAX_SIZE,
            ping_interval=None,
        )
        self._logger.info("Hub listening on ws://%s:%s", self._settings.host, self.port)
        self._logger.info(
            "Classifier=%s phrases=%s", self.classifier.name, ",".join(self.classifier.fallback.phrases) or "-"
        )
        self._tasks = [
            asyncio.create_task(self._liveness_loop(), name="liveness_loop"),
            asyncio.create_task(self.retention.run(self._stop), name="retention_loop"),
        ]

    async def close(self) -> None:
        self._stop.set()
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            await asyncio.wait_for(self.pipeline.drain(), timeout=5.0)
        except asyncio.TimeoutError:
            self._logger.warning("Shutting down with %d chunks still in flight", self.pipeline.pending)
        await self.broadcaster.close()
        await self.store.close()
        self._logger.info("Hub stopped")

    async def run(self, *, serve_http: bool = True) -> None:
        await self.start()
        http_task: asyncio.Task[None] | None = None
        stop_task = asyncio.create_task(self._stop.wait(), name="hub_stop")
        try:
            waiters: set[asyncio.Task[Any]] = {stop_task}
            if serve_http:
                config = uvicorn.Config(
                    create_app(self),
                    host=self._settings.host,
                    port=self._settings.http_port,
                    log_level=self._settings.log_level.replace("warn", "warning"),
                    lifespan="off",
                )
                self._http = _EmbeddedServer(config)
                http_task = asyncio.create_task(self._http.serve(), name="http_server")
                waiters.add(http_task)
                self._logger.info("HTTP API on http://%s:%s", self._settings.host, self._settings.http_port)
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if http_task is not None and http_task in done and not self._stop.is_set():
                exc = http_task.exception()
                if exc is not None:
                    self._logger.error("HTTP server failed: %s", exc)
                else:
                    self._logger.error("HTTP server exited unexpectedly")
        finally:
            self.request_stop()
            stop_task.cancel()
            if http_task is not None:
                await asyncio.gather(http_task, return_exceptions=True)
            await asyncio.gather(stop_task, return_exceptions=True)
            self._http = None
            await self.close()

    # Outbound helpers

    async def send_to(self, session: ConnectionSession, message: Message) -> bool:
        if not session.is_ready:
            return False
        try:
            await session.conn.send(encode(message))
            return True
        except ConnectionClosed:
            return False
        except Exception:
            self._logger.warning("Send to %s failed", session.remote_address, exc_info=True)
            return False

    async def send_to_device(self, device_id: str, message: Message) -> bool:
        session = self.registry.get(device_id)
        if session is None:
            return False
        return await self.send_to(session, message)

    def has_speaker(self, device_id: str) -> bool:
        session = self.registry.get(device_id)
        return session is not None and session.capabilities.speaker

    async def _fault(self, session: ConnectionSession, code: str, message: str) -> None:
        await self.send_to(session, Fault(message=message, code=code))

    # Connection handling

    async def _handle(self, conn: ServerConnection) -> None:
        session = self.registry.attach(conn)
        self._logger.info("New connection %s from %s", session.session_id, session.remote_address)
        try:
            async for raw in conn:
                await self._on_frame(session, raw)
        except ConnectionClosed:
            pass
        finally:
            await self._on_close(session)

    async def _on_frame(self, session: ConnectionSession, raw: str | bytes) -> None:
        try:
            message = decode(raw, accept=HUB_INBOUND)
        except ProtocolError as e:
            if e.code == MESSAGE_TOO_LARGE:
                self._logger.warning("Dropping oversized message from %s: %s", self._who(session), e.message)
            else:
                self._logger.warning("Rejected message from %s: %s", self._who(session), e.message)
            await self._fault(session, e.code, e.message)
            return
        except Exception:
            self._logger.warning("Undecodable message from %s", self._who(session), exc_info=True)
            await self._fault(session, INVALID_FORMAT, "Invalid message format")
            return

        try:
            await self._dispatch(session, message)
        except ProtocolError as e:
            self._logger.warning("Rejected %s from %s: %s", message.TYPE, self._who(session), e.message)
            await self._fault(session, e.code, e.message)
        except Exception as e:
            self._logger.exception("Error processing %s from %s", message.TYPE, self._who(session))
            await self._fault(session, PROCESSING_ERROR, f"Error processing message: {e}")

    async def _dispatch(self, session: ConnectionSession, message: Message) -> None:
        if isinstance(message, DeviceInfo):
            await self._on_registration(session, message)
        elif isinstance(message, AudioData):
            await self._on_audio(session, message)
        elif isinstance(message, WebClient):
            await self._on_observer(session, message)
        elif isinstance(message, Command):
            await self._on_command(session, message)
        else:
            raise ProtocolError(INVALID_FORMAT, f"Unexpected message type: {message.TYPE}")

    async def _on_registration(self, session: ConnectionSession, msg: DeviceInfo) -> None:
        if session.role is Role.OBSERVER:
            await self._fault(session, NOT_AUTHORIZED, "Observers cannot register as devices")
            return
        if msg.device_id.startswith(PLACEHOLDER_PREFIX):
            await self._fault(session, INVALID_DEVICE_ID, f'Device ID cannot start with "{PLACEHOLDER_PREFIX}"')
            return

        previous_id = session.device_id if session.role is Role.PRODUCER else None
        if previous_id is not None and previous_id != msg.device_id:
            if self.registry.remove_producer(session, previous_id):
                self._logger.info("Device %s re-registered as %s", previous_id, msg.device_id)
                await self.broadcaster.broadcast(DeviceDisconnected(device_id=previous_id, timestamp=utc_now_iso()))

        session.device_id = msg.device_id
        if msg.name is not None:
            session.name = msg.name
        if msg.location is not None:
            session.location = msg.location
        session.capabilities = msg.capabilities
        displaced = self.registry.register_producer(session)
        if displaced is not None:
            displaced.role = Role.UNCLASSIFIED
            self._logger.info("Device %s reconnected; replacing connection %s", msg.device_id, displaced.session_id)
        self._logger.info("Device registered: %s (%s)", msg.device_id, session.remote_address)

        try:
            row = await self.store.upsert_device(
                msg.device_id,
                name=msg.name,
                location=msg.location,
                capabilities=msg.capabilities.to_wire(),
            )
            session.name = session.name or row.get("name")
            session.location = session.location or row.get("location")
        except Exception:
            self._logger.exception("Error updating device %s in database", msg.device_id)

        await self.send_to(session, ServerResponse(message="Device registered successfully"))
        await self.broadcaster.broadcast(
            DeviceConnected(
                device_id=msg.device_id,
                name=session.name or msg.device_id,
                location=session.location or "Unknown",
                capabilities=msg.capabilities,
            )
        )

    async def _on_audio(self, session: ConnectionSession, msg: AudioData) -> None:
        device_id = session.device_id
        if session.role is not Role.PRODUCER or device_id is None or self.registry.get(device_id) is not session:
            self._logger.warning("Received audio from unregistered connection %s", self._who(session))
            await self._fault(session, DEVICE_NOT_REGISTERED, "Device not registered")
            return
        if msg.device_id and msg.device_id != device_id:
            self._logger.debug("Audio from %s labelled %s; using registered id", device_id, msg.device_id)
        pcm = msg.payload()
        if len(pcm) < MIN_AUDIO_BYTES:
            self._logger.warning("Ignoring %d byte audio chunk from %s", len(pcm), device_id)
            return
        self.pipeline.submit(device_id, pcm, msg.timestamp, now_ms())

    async def _on_observer(self, session: ConnectionSession, msg: WebClient) -> None:
        if self._settings.web_auth_required and not msg.token:
            await self._fault(session, AUTH_REQUIRED, "Authentication required")
            await session.conn.close()
            return
        if session.role is Role.PRODUCER:
            await self._fault(session, NOT_AUTHORIZED, "Devices cannot become observers")
            return

        self.registry.add_observer(session)
        self._logger.info("Observer connected: %s", session.remote_address)
        await self.send_to(session, DeviceList(devices=self.registry.roster()))
        try:
            alerts = await self.store.recent_alerts(self._settings.recent_alerts_limit)
        except Exception:
            self._logger.exception("Error fetching recent alerts")
            return
        await self.send_to(session, RecentAlerts(alerts=alerts))

    async def _on_command(self, session: ConnectionSession, msg: Command) -> None:
        if session.role is not Role.OBSERVER:
            self._logger.warning("Received command from non-observer %s", self._who(session))
            await self._fault(session, NOT_AUTHORIZED, "Not authorized to send commands")
            return
        target_id = msg.device_id
        if not target_id:
            raise ProtocolError(INVALID_FORMAT, "Missing required fields: deviceId or command")

        target = self.registry.get(target_id)
        if target is None or not target.is_ready:
            await self.send_to(session, CommandSent(device_id=target_id, status="error", message="Device not connected"))
            return

        if not await self.send_to(target, Command(command=msg.command, params=msg.params)):
            await self.send_to(
                session, CommandSent(device_id=target_id, status="error", message="Error sending command to device")
            )
            return

        self._logger.info("Command %s sent to %s", msg.command, target_id)
        await self.send_to(session, CommandSent(device_id=target_id, status="success"))
        try:
            await self.store.insert_alert(target_id, utc_now_iso(), "command", f"Command: {msg.command}", "new")
        except Exception:
            self._logger.exception("Error recording command %s for %s", msg.command, target_id)

    async def _on_close(self, session: ConnectionSession) -> None:
        self.registry.detach(session)
        device_id = session.device_id
        if session.role is Role.PRODUCER and device_id is not None and self.registry.remove_producer(session):
            self._logger.info("Device disconnected: %s", device_id)
            try:
                await self.store.touch_device(device_id)
            except Exception:
                self._logger.exception("Error updating device %s on disconnect", device_id)
            await self.broadcaster.broadcast(DeviceDisconnected(device_id=device_id, timestamp=utc_now_iso()))
        elif session.role is Role.OBSERVER:
            self._logger.info("Observer disconnected: %s", session.remote_address)
        else:
            self._logger.info("Connection closed: %s", self._who(session))

    # Liveness

    async def _liveness_loop(self) -> None:
        interval = float(self._settings.heartbeat_interval_s)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.probe_connections()

    async def probe_connections(self) -> None:
        """Terminate sessions that missed the previous probe, then probe the rest."""
        for session in self.registry.sessions():
            if not session.alive:
                self._logger.info("Terminating inactive connection %s", self._who(session))
                session.terminate()
                continue
            session.alive = False
            try:
                waiter = await session.conn.ping()
            except ConnectionClosed:
                continue
            except Exception:
                self._logger.warning("Error sending ping to %s", self._who(session), exc_info=True)
                session.terminate()
                continue
            waiter.add_done_callback(lambda fut, s=session: self._on_pong(s, fut))

    @staticmethod
    def _on_pong(session: ConnectionSession, fut: asyncio.Future[Any]) -> None:
        if not fut.cancelled() and fut.exception() is None:
            session.alive = True

    @staticmethod
    def _who(session: ConnectionSession) -> str:
        if session.device_id:
            return session.device_id
        return f"{session.session_id}@{session.remote_address}"
