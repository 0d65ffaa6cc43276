from __future__ import annotations

import math
import wave
from pathlib import Path

import numpy as np

SAMPLE_RATE_HZ = 16000
CHANNELS = 1
SAMPLE_WIDTH = 2


def pcm16le_bytes_to_float32(pcm: bytes) -> np.ndarray:
    """Convert PCM s16le bytes to float32 in [-1, 1]."""
    if not pcm:
        return np.zeros((0,), dtype=np.float32)
    # A trailing odd byte cannot form a sample.
    usable = len(pcm) - (len(pcm) % SAMPLE_WIDTH)
    s16 = np.frombuffer(pcm[:usable], dtype=np.int16)
    return (s16.astype(np.float32) / 32768.0).copy()


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples * samples)))


def dbfs(samples: np.ndarray) -> float:
    level = rms(samples)
    if level <= 0.0:
        return -math.inf
    return 20.0 * math.log10(level)


def duration_s(pcm: bytes, sample_rate_hz: int = SAMPLE_RATE_HZ) -> float:
    return (len(pcm) // SAMPLE_WIDTH) / float(sample_rate_hz)


def write_wav(path: Path, pcm: bytes, sample_rate_hz: int = SAMPLE_RATE_HZ) -> Path:
    """Write mono s16le PCM to a WAV file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate_hz)
        wf.writeframes(pcm[: len(pcm) - (len(pcm) % SAMPLE_WIDTH)])
    return path
