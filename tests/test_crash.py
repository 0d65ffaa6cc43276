from __future__ import annotations

import asyncio
import json

import pytest

from homepost_client.crash import CrashReporter, write_crash_record


def _boom() -> ValueError:
    try:
        raise ValueError("mic exploded")
    except ValueError as e:
        return e


def test_crash_record_contents(tmp_path):
    path = write_crash_record(tmp_path, "crash", _boom(), config={"deviceId": "kitchen"})

    assert path is not None
    assert path.name.startswith("crash-") and path.suffix == ".json"
    record = json.loads(path.read_text())
    assert record["error"]["name"] == "ValueError"
    assert record["error"]["message"] == "mic exploded"
    assert "mic exploded" in record["error"]["stack"]
    assert record["config"] == {"deviceId": "kitchen"}
    assert record["timestamp"]


def test_unwritable_directory_returns_none(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    assert write_crash_record(blocker / "sub", "crash", _boom()) is None


@pytest.mark.asyncio
async def test_unhandled_loop_error_recorded_and_shuts_down(tmp_path):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    reporter = CrashReporter(tmp_path, on_fatal=stop.set, config_snapshot=lambda: {"deviceId": "kitchen"})
    reporter.install(loop)
    try:
        loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": _boom()})
        assert stop.is_set()
        (path,) = reporter.records
        assert path.name.startswith("rejection-")
        assert json.loads(path.read_text())["config"] == {"deviceId": "kitchen"}
    finally:
        reporter.uninstall()


@pytest.mark.asyncio
async def test_uncaught_exception_recorded(tmp_path):
    stop = asyncio.Event()
    reporter = CrashReporter(tmp_path, on_fatal=stop.set)
    reporter.install(asyncio.get_running_loop())
    try:
        reporter.handle_uncaught(_boom())
        assert stop.is_set()
        assert reporter.records[0].name.startswith("crash-")
        assert "config" not in json.loads(reporter.records[0].read_text())
    finally:
        reporter.uninstall()
