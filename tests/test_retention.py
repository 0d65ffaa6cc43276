from __future__ import annotations

import asyncio
import os
import time

import pytest

from homepost.retention import RetentionSweeper


def _touch(path, age_s: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"RIFF")
    ts = time.time() - age_s
    os.utime(path, (ts, ts))


@pytest.mark.asyncio
async def test_sweep_deletes_old_files_and_empty_dirs(tmp_path):
    audio = tmp_path / "audio"
    for i in range(45):
        _touch(audio / "kitchen" / f"chunk-{i}.wav", age_s=3 * 3600)
    _touch(audio / "hall" / "chunk-old.wav", age_s=3 * 3600)
    _touch(audio / "hall" / "chunk-new.wav", age_s=60)

    sweeper = RetentionSweeper(audio, retain_hours=2, interval_s=3600, batch_size=20)
    result = await sweeper.sweep()

    assert result.scanned == 47
    assert result.deleted == 46
    assert result.removed_dirs == 1
    assert result.errors == 0
    assert not (audio / "kitchen").exists()
    assert [p.name for p in (audio / "hall").iterdir()] == ["chunk-new.wav"]


@pytest.mark.asyncio
async def test_missing_audio_dir_is_a_no_op(tmp_path):
    result = await RetentionSweeper(tmp_path / "nope", retain_hours=1, interval_s=60).sweep()
    assert result.scanned == 0


@pytest.mark.asyncio
async def test_run_waits_initial_delay_and_stops(tmp_path):
    audio = tmp_path / "audio"
    _touch(audio / "kitchen" / "chunk-1.wav", age_s=10 * 3600)
    sweeper = RetentionSweeper(audio, retain_hours=1, interval_s=60, initial_delay_s=0.05)
    stop = asyncio.Event()
    task = asyncio.create_task(sweeper.run(stop))

    await asyncio.sleep(0.01)
    assert (audio / "kitchen" / "chunk-1.wav").exists()

    await asyncio.sleep(0.2)
    assert not (audio / "kitchen").exists()

    stop.set()
    await asyncio.wait_for(task, timeout=1.0)
