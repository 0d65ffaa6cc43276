from __future__ import annotations

import json
import logging

import pytest

from homepost.cli import build_parser as hub_parser
from homepost_client import cli as device_cli
from homepost_client.cli import build_parser as device_parser
from homepost_client.logging_utils import level_from_name


def test_hub_parser_defaults():
    args = hub_parser().parse_args([])
    assert args.env_file == ".env"
    assert args.no_http is False


def test_device_parser_uses_env_default(monkeypatch):
    monkeypatch.setenv("HOMEPOST_CONFIG", "/etc/homepost/device.json")
    args = device_parser().parse_args([])
    assert args.config == "/etc/homepost/device.json"
    assert device_parser().parse_args(["--list-devices"]).list_devices is True


def test_log_level_names():
    assert level_from_name("warn") == logging.WARNING
    assert level_from_name("DEBUG") == logging.DEBUG
    assert level_from_name("nonsense") == logging.INFO


@pytest.mark.asyncio
async def test_device_logging_is_ready_before_config_load(tmp_path, monkeypatch):
    calls: list[tuple[str, str | None]] = []
    real_load = device_cli.ConfigStore.load

    class RecordingStore:
        @staticmethod
        def load(path):
            calls.append(("load", None))
            return real_load(path)

    class IdleSession:
        def __init__(self, config) -> None:
            self.config = config

        async def run(self, stop) -> None:
            calls.append(("run", None))

    monkeypatch.setattr(device_cli, "setup_logging", lambda level="INFO": calls.append(("setup", level)))
    monkeypatch.setattr(device_cli, "set_level", lambda level: calls.append(("level", level)))
    monkeypatch.setattr(device_cli, "ConfigStore", RecordingStore)
    monkeypatch.setattr(device_cli, "ProducerSession", IdleSession)
    (tmp_path / "device.json").write_text(json.dumps({"logLevel": "debug"}))

    args = device_cli.build_parser().parse_args(["--config", str(tmp_path / "device.json")])
    assert await device_cli._amain(args) == 0

    assert calls == [("setup", "INFO"), ("load", None), ("level", "debug"), ("run", None)]
