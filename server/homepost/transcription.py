from __future__ import annotations

import asyncio
import base64
import logging
import os
import ssl
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlencode

import certifi
import websockets

from homepost.protocol import dumps, loads

_COMMITTED = ("committed_transcript", "committed_transcript_with_timestamps")
_ERRORS = ("error", "auth_error", "quota_exceeded", "rate_limited", "input_error", "transcriber_error")


class Transcriber(Protocol):
    async def transcribe(self, pcm: bytes, *, sample_rate_hz: int = 16000) -> str: ...


@dataclass(frozen=True, slots=True)
class ElevenLabsConfig:
    api_key: str
    host: str = "api.elevenlabs.io"
    model_id: str | None = None
    language_code: str | None = None
    audio_format: str = "pcm_16000"
    commit_strategy: str = "manual"
    include_timestamps: bool = False
    secure: bool = True
    open_timeout_s: float = 10.0
    result_timeout_s: float = 15.0


def build_ssl_context(logger: logging.Logger) -> ssl.SSLContext:
    if os.environ.get("ELEVENLABS_INSECURE_SSL") == "1":
        logger.warning("ELEVENLABS_INSECURE_SSL=1; TLS verification disabled (unsafe)")
        return ssl._create_unverified_context()
    cafile = (os.environ.get("SSL_CERT_FILE") or os.environ.get("REQUESTS_CA_BUNDLE") or "").strip()
    if cafile:
        logger.info("Using TLS CA bundle from env: %s", cafile)
        return ssl.create_default_context(cafile=cafile)
    return ssl.create_default_context(cafile=certifi.where())


class ElevenLabsTranscriber:
    """Realtime speech-to-text used as a request/response call.

    Each chunk opens a short session, sends the audio with ``commit`` set and
    waits for the committed transcript. Failures and timeouts yield "".
    """

    def __init__(self, cfg: ElevenLabsConfig) -> None:
        self._cfg = cfg
        self._logger = logging.getLogger("homepost.transcription")
        self._ssl_ctx: ssl.SSLContext | None = None

    async def transcribe(self, pcm: bytes, *, sample_rate_hz: int = 16000) -> str:
        if not pcm:
            return ""
        try:
            return await asyncio.wait_for(
                self._transcribe_once(pcm, sample_rate_hz=sample_rate_hz),
                timeout=self._cfg.open_timeout_s + self._cfg.result_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._logger.warning("ElevenLabs STT timed out for %d bytes", len(pcm))
        except Exception:
            self._logger.exception("ElevenLabs STT session error")
        return ""

    async def _transcribe_once(self, pcm: bytes, *, sample_rate_hz: int) -> str:
        ssl_ctx = None
        if self._cfg.secure:
            if self._ssl_ctx is None:
                self._ssl_ctx = build_ssl_context(self._logger)
            ssl_ctx = self._ssl_ctx
        request = {
            "message_type": "input_audio_chunk",
            "audio_base_64": base64.b64encode(pcm).decode("ascii"),
            "commit": True,
            "sample_rate": sample_rate_hz,
        }
        async with websockets.connect(
            self.url,
            additional_headers={"xi-api-key": self._cfg.api_key},
            ssl=ssl_ctx,
            open_timeout=self._cfg.open_timeout_s,
            max_size=2 * 1024 * 1024,
            ping_interval=20,
            ping_timeout=20,
        ) as ws:
            await ws.send(dumps(request))
            async for frame in ws:
                text = self._read_reply(frame)
                if text is not None:
                    return text
        return ""

    def _read_reply(self, frame: str | bytes) -> str | None:
        """Return the transcript, "" on a service error, or None to keep waiting."""
        if isinstance(frame, bytes):
            return None
        try:
            obj = loads(frame)
        except ValueError:
            return None
        kind = obj.get("message_type") if isinstance(obj, dict) else None
        if kind in _COMMITTED:
            return str(obj.get("text") or "").strip()
        if kind in _ERRORS:
            self._logger.warning("ElevenLabs STT %s: %s", kind, obj.get("error") or obj.get("message") or obj)
            return ""
        self._logger.debug("ElevenLabs STT message %s", kind)
        return None

    @property
    def url(self) -> str:
        cfg = self._cfg
        params = {
            "model_id": cfg.model_id,
            "language_code": cfg.language_code,
            "audio_format": cfg.audio_format,
            "commit_strategy": cfg.commit_strategy,
            "include_timestamps": "true" if cfg.include_timestamps else None,
        }
        query = urlencode({k: v for k, v in params.items() if v})
        scheme = "wss" if cfg.secure else "ws"
        return f"{scheme}://{cfg.host}/v1/speech-to-text/realtime" + (f"?{query}" if query else "")
