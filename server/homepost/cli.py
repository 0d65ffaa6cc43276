from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from homepost.errors import ConfigError
from homepost.hub import Hub
from homepost.logging_utils import setup_logging
from homepost.settings import load_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HomePost audio hub")
    parser.add_argument("--env-file", default=".env", help="Optional dotenv file loaded before reading the environment")
    parser.add_argument("--no-http", action="store_true", help="Do not serve the HTTP API")
    return parser


async def _amain() -> int:
    args = build_parser().parse_args()
    load_dotenv(args.env_file)
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    logger = logging.getLogger("homepost")
    hub = Hub(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, hub.request_stop)
        except NotImplementedError:
            pass

    logger.info("Starting HomePost hub on port %s (http %s)", settings.port, settings.http_port)
    await hub.run(serve_http=not args.no_http)
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
