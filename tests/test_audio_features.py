from __future__ import annotations

import math
import wave

import numpy as np

from homepost.audio_features import dbfs, duration_s, pcm16le_bytes_to_float32, rms, write_wav


def test_pcm_conversion_drops_trailing_byte():
    samples = pcm16le_bytes_to_float32(np.array([16384, -16384], dtype="<i2").tobytes() + b"\x7f")
    assert samples.dtype == np.float32
    assert samples.tolist() == [0.5, -0.5]


def test_levels():
    assert rms(np.zeros(0, dtype=np.float32)) == 0.0
    assert dbfs(np.zeros(10, dtype=np.float32)) == -math.inf
    assert math.isclose(dbfs(np.full(10, 0.5, dtype=np.float32)), -6.0206, abs_tol=1e-3)


def test_duration_and_wav(tmp_path):
    pcm = b"\x00\x00" * 8000
    assert duration_s(pcm) == 0.5
    path = write_wav(tmp_path / "a" / "b.wav", pcm + b"\x01")
    with wave.open(str(path), "rb") as wf:
        assert wf.getnframes() == 8000
        assert wf.getsampwidth() == 2
