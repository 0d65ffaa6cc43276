from __future__ import annotations

import argparse
import asyncio

import websockets

from homepost.protocol import WebClient, encode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Join the hub as an observer and print every event")
    parser.add_argument("--url", default="ws://127.0.0.1:3000")
    parser.add_argument("--token", help="Token for hubs started with WEB_AUTH_REQUIRED=true")
    parser.add_argument("--count", type=int, default=0, help="Exit after this many events (0 = run until closed)")
    return parser


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    async with websockets.connect(args.url, max_size=2 * 1024 * 1024) as ws:
        await ws.send(encode(WebClient(token=args.token)))
        seen = 0
        async for msg in ws:
            print(msg)
            seen += 1
            if args.count and seen >= args.count:
                return


if __name__ == "__main__":
    asyncio.run(main())
