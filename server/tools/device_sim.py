from __future__ import annotations

import argparse
import asyncio
import time
import wave
from typing import Iterator

import numpy as np
import websockets

from homepost.audio_features import SAMPLE_RATE_HZ
from homepost.protocol import AudioData, Capabilities, DeviceInfo, encode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream a WAV file or a test tone to the hub as a fake device")
    parser.add_argument("--server", default="ws://127.0.0.1:3000", help="Hub socket URL")
    parser.add_argument("--device-id", default="sim-device")
    parser.add_argument("--name")
    parser.add_argument("--location")
    parser.add_argument("--speaker", action="store_true", help="Report a speaker in the capability set")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--wav", help="Mono 16-bit PCM WAV at --sample-rate")
    source.add_argument("--tone-hz", type=float, help="Send a generated sine tone instead")
    parser.add_argument("--amplitude", type=float, default=0.2, help="Tone level, 0..1")
    parser.add_argument("--duration-s", type=float, default=10.0, help="Tone length")
    parser.add_argument("--chunk-ms", type=int, default=500, help="Audio per audio_data message")
    parser.add_argument("--sample-rate", type=int, default=SAMPLE_RATE_HZ)
    parser.add_argument("--linger-s", type=float, default=1.0, help="Keep printing hub replies this long after the last chunk")
    return parser


def _frames_per_chunk(sample_rate: int, chunk_ms: int) -> int:
    return max(1, sample_rate * chunk_ms // 1000)


def _read_pcm16_chunks(wav_path: str, sample_rate: int, chunk_ms: int) -> Iterator[bytes]:
    with wave.open(wav_path, "rb") as wf:
        fmt = (wf.getnchannels(), wf.getsampwidth(), wf.getframerate())
        if fmt != (1, 2, sample_rate):
            raise SystemExit(f"{wav_path}: need mono 16-bit {sample_rate}Hz, got channels/width/rate {fmt}")
        step = _frames_per_chunk(sample_rate, chunk_ms)
        while chunk := wf.readframes(step):
            yield chunk


def _gen_tone_chunks(sample_rate: int, chunk_ms: int, tone_hz: float, amplitude: float, duration_s: float) -> Iterator[bytes]:
    n = int(sample_rate * duration_s)
    t = np.arange(n, dtype=np.float64) / sample_rate
    level = float(np.clip(amplitude, 0.0, 1.0)) * 32767.0
    pcm = (np.sin(2.0 * np.pi * tone_hz * t) * level).astype("<i2").tobytes()
    step = _frames_per_chunk(sample_rate, chunk_ms) * 2
    for offset in range(0, len(pcm), step):
        yield pcm[offset : offset + step]


async def _print_replies(ws: websockets.ClientConnection) -> None:
    async for msg in ws:
        print(f"<- {msg}")


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.wav:
        chunks = _read_pcm16_chunks(args.wav, args.sample_rate, args.chunk_ms)
    else:
        chunks = _gen_tone_chunks(args.sample_rate, args.chunk_ms, args.tone_hz, args.amplitude, args.duration_s)

    async with websockets.connect(args.server, max_size=2 * 1024 * 1024) as ws:
        await ws.send(
            encode(
                DeviceInfo(
                    device_id=args.device_id,
                    name=args.name,
                    location=args.location,
                    capabilities=Capabilities(audio=True, video=False, speaker=bool(args.speaker)),
                    client_version="sim",
                )
            )
        )
        replies = asyncio.create_task(_print_replies(ws), name="replies")
        # Pace sends at real time so the hub sees a live-looking stream.
        period = args.chunk_ms / 1000.0
        due = time.monotonic()
        try:
            for chunk in chunks:
                await ws.send(encode(AudioData.from_pcm(args.device_id, chunk)))
                due += period
                await asyncio.sleep(max(0.0, due - time.monotonic()))
            await asyncio.sleep(max(0.0, args.linger_s))
        finally:
            replies.cancel()
            await asyncio.gather(replies, return_exceptions=True)


if __name__ == "__main__":
    asyncio.run(main())
