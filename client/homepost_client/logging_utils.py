from __future__ import annotations

import logging

_LEVEL_ALIASES = {"warn": "WARNING"}


def level_from_name(level: str | None) -> int:
    name = str(level or "INFO").strip()
    name = _LEVEL_ALIASES.get(name.lower(), name.upper())
    value = getattr(logging, name, logging.INFO)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level_from_name(level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("websockets").setLevel(max(logging.WARNING, logging.getLogger().level))


def set_level(level: str) -> None:
    """Apply a new level at runtime (config updates)."""
    logging.getLogger().setLevel(level_from_name(level))
