from __future__ import annotations

import pytest

from homepost.protocol import Command
from homepost_client.commands import CommandHandler
from homepost_client.config import ConfigStore, DeviceConfig


class Recorder:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.updates = []

    async def stop_capture(self) -> None:
        self.events.append("stop_capture")

    def request_exit(self) -> None:
        self.events.append("exit")

    async def on_config_changed(self, update) -> None:
        self.updates.append(update)


@pytest.fixture
def rec() -> Recorder:
    return Recorder()


@pytest.fixture
def handler(tmp_path, rec) -> CommandHandler:
    return CommandHandler(
        ConfigStore(tmp_path / "config.json", DeviceConfig()),
        stop_capture=rec.stop_capture,
        request_exit=rec.request_exit,
        on_config_changed=rec.on_config_changed,
        restart_grace_s=0,
    )


@pytest.mark.asyncio
async def test_restart_stops_capture_then_exits(handler, rec):
    await handler.handle(Command(command="restart"))
    assert rec.events == ["stop_capture", "exit"]


@pytest.mark.asyncio
async def test_update_config_notifies_on_change(handler, rec):
    await handler.handle(Command(command="update_config", params={"speakerEnabled": False}))
    assert len(rec.updates) == 1
    assert rec.updates[0].changed == ("speakerEnabled",)


@pytest.mark.asyncio
async def test_update_config_ignores_forbidden_fields(handler, rec):
    await handler.handle(Command(command="update_config", params={"deviceId": "other"}))
    await handler.handle(Command(command="update_config"))
    assert rec.updates == []


@pytest.mark.asyncio
async def test_unknown_and_informational_commands_are_harmless(handler, rec):
    for name in ("ping", "status", "self_destruct"):
        await handler.handle(Command(command=name))
    assert rec.events == []


@pytest.mark.asyncio
async def test_handler_errors_are_contained(tmp_path, rec):
    async def broken(update):
        raise RuntimeError("apply failed")

    handler = CommandHandler(
        ConfigStore(tmp_path / "config.json", DeviceConfig()),
        stop_capture=rec.stop_capture,
        request_exit=rec.request_exit,
        on_config_changed=broken,
    )
    await handler.handle(Command(command="update_config", params={"logLevel": "debug"}))
