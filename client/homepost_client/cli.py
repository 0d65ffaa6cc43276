from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

from homepost_client.capture import CaptureError, print_input_devices
from homepost_client.config import ConfigStore
from homepost_client.crash import CrashReporter
from homepost_client.logging_utils import set_level, setup_logging
from homepost_client.session import ProducerSession


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HomePost audio device: stream the microphone to a hub.")
    parser.add_argument(
        "--config",
        default=os.environ.get("HOMEPOST_CONFIG", "config.json"),
        help="Device config JSON (created with defaults when missing)",
    )
    parser.add_argument("--list-devices", action="store_true", help="List input devices and exit")
    return parser


async def _amain(args: argparse.Namespace) -> int:
    setup_logging()
    config = ConfigStore.load(Path(args.config))
    set_level(config.config.log_level)
    logger = logging.getLogger("homepost_client")

    stop = asyncio.Event()
    session = ProducerSession(config)

    def _request_stop() -> None:
        if not stop.is_set():
            logger.info("Shutting down HomePost client...")
        stop.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            pass

    reporter = CrashReporter(
        config.path.resolve().parent,
        on_fatal=_request_stop,
        config_snapshot=lambda: config.config.to_json(),
    )
    reporter.install(loop)
    logger.info(
        "Starting HomePost client device=%s server=%s", config.config.device_id, config.config.server_url
    )
    try:
        await session.run(stop)
    except Exception as e:
        reporter.handle_uncaught(e)
    finally:
        reporter.uninstall()
    return 0


def main() -> None:
    args = build_parser().parse_args()
    if args.list_devices:
        try:
            print_input_devices()
        except CaptureError as e:
            print(e)
            raise SystemExit(1)
        return
    raise SystemExit(asyncio.run(_amain(args)))


if __name__ == "__main__":
    main()
