from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from websockets.protocol import State

from homepost.hub import Hub
from homepost.protocol import decode
from homepost.settings import HubSettings
from homepost.store import Store


class FakeTransport:
    def __init__(self) -> None:
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True


class FakeConnection:
    """Stands in for a websockets ServerConnection; records what the hub sends."""

    def __init__(self, address: tuple[str, int] = ("127.0.0.1", 50000)) -> None:
        self.remote_address = address
        self.state = State.OPEN
        self.transport = FakeTransport()
        self.sent: list[str] = []
        self.closed = False
        self.fail_sends = False
        self.pongs = True

    async def send(self, payload: str) -> None:
        if self.fail_sends:
            raise ConnectionError("send failed")
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True
        self.state = State.CLOSED

    async def ping(self) -> asyncio.Future[float]:
        fut: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.pongs:
            fut.set_result(0.001)
        return fut

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(p) for p in self.sent]

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages() if m.get("type") == msg_type]

    def decoded(self) -> list[Any]:
        return [decode(p) for p in self.sent]


class FakeTranscriber:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls: list[int] = []

    async def transcribe(self, pcm: bytes, *, sample_rate_hz: int = 16000) -> str:
        self.calls.append(len(pcm))
        return self.text


class FakeCompletions:
    """Mimics ``client.chat.completions`` of the OpenAI SDK."""

    def __init__(self, replies: list[str] | None = None, error: Exception | None = None) -> None:
        self.replies = list(replies or [])
        self.error = error
        self.requests: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0) if self.replies else "{}"
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_openai_client(replies: list[str] | None = None, error: Exception | None = None) -> Any:
    completions = FakeCompletions(replies, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def make_settings(tmp_path, **overrides: Any) -> HubSettings:
    values: dict[str, Any] = {
        "elevenlabs_api_key": "test-key",
        "host": "127.0.0.1",
        "port": 0,
        "http_port": 0,
        "db_path": ":memory:",
        "data_dir": tmp_path,
        "broadcast_throttle_s": 0.0,
        "heartbeat_interval_s": 3600.0,
    }
    values.update(overrides)
    return HubSettings(**values)


@pytest.fixture
def settings(tmp_path) -> HubSettings:
    return make_settings(tmp_path)


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest_asyncio.fixture
async def store():
    s = Store(":memory:", retry_delay_s=0.01)
    await s.open()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def hub(settings, transcriber):
    h = Hub(settings, transcriber=transcriber)
    await h.store.open()
    yield h
    await h.pipeline.drain()
    await h.broadcaster.close()
    await h.store.close()
