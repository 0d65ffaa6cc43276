from __future__ import annotations

import logging

_LEVEL_ALIASES = {"warn": "WARNING"}


def setup_logging(level: str = "INFO") -> None:
    name = str(level or "INFO").strip()
    name = _LEVEL_ALIASES.get(name.lower(), name.upper())
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # websockets logs every handshake failure at INFO/ERROR; keep it quieter than our own loggers.
    logging.getLogger("websockets").setLevel(max(logging.WARNING, logging.getLogger().level))
