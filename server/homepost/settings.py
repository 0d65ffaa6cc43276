from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from homepost.errors import ConfigError

LOG_LEVELS = ("debug", "info", "warn", "error")


def _parse_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return bool(default)
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {name} value: {raw}") from None


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Invalid {name} value: {raw}") from None


def _parse_phrases(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        raw = "help,emergency,fire"
    phrases: list[str] = []
    for item in raw.split(","):
        phrase = " ".join(item.strip().split())
        if phrase and phrase not in phrases:
            phrases.append(phrase)
    return tuple(phrases)


@dataclass(frozen=True, slots=True)
class HubSettings:
    elevenlabs_api_key: str
    host: str = "0.0.0.0"
    port: int = 3000
    http_port: int = 3001
    db_path: str = "data/homepost.db"
    log_level: str = "info"
    data_dir: Path = Path("data")
    retain_audio_hours: int = 24
    alert_phrases: tuple[str, ...] = ("help", "emergency", "fire")
    cleanup_interval_minutes: int = 60
    heartbeat_interval_s: float = 30.0
    broadcast_throttle_s: float = 0.5
    recent_alerts_limit: int = 10
    web_auth_required: bool = False
    elevenlabs_host: str = "api.elevenlabs.io"
    elevenlabs_model_id: str | None = None
    elevenlabs_language_code: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o"

    @property
    def audio_dir(self) -> Path:
        return self.data_dir / "audio"


def load_settings(environ: Mapping[str, str] | None = None) -> HubSettings:
    """Read hub settings from the environment; raise ConfigError for anything fatal."""
    env = os.environ if environ is None else environ

    api_key = (env.get("ELEVENLABS_API_KEY") or "").strip()
    if not api_key:
        raise ConfigError("ELEVENLABS_API_KEY environment variable is not set")

    port = _parse_int(env, "PORT", 3000)
    if port < 1 or port > 65535:
        raise ConfigError(f"Invalid PORT value: {port}")
    http_port = _parse_int(env, "HTTP_PORT", port + 1)
    if http_port < 1 or http_port > 65535 or http_port == port:
        raise ConfigError(f"Invalid HTTP_PORT value: {http_port}")

    retain_hours = _parse_int(env, "RETAIN_AUDIO_HOURS", 24)
    if retain_hours < 1:
        raise ConfigError(f"Invalid RETAIN_AUDIO_HOURS value: {retain_hours}")
    cleanup_minutes = _parse_int(env, "CLEANUP_INTERVAL_MINUTES", 60)
    if cleanup_minutes < 1:
        raise ConfigError(f"Invalid CLEANUP_INTERVAL_MINUTES value: {cleanup_minutes}")

    log_level = (env.get("LOG_LEVEL") or "info").strip().lower()
    if log_level not in LOG_LEVELS:
        log_level = "info"

    data_dir = Path((env.get("DATA_DIR") or "data").strip())
    db_path = (env.get("DB_PATH") or "").strip() or str(data_dir / "homepost.db")

    return HubSettings(
        elevenlabs_api_key=api_key,
        host=(env.get("HOST") or "0.0.0.0").strip(),
        port=port,
        http_port=http_port,
        db_path=db_path,
        log_level=log_level,
        data_dir=data_dir,
        retain_audio_hours=retain_hours,
        alert_phrases=_parse_phrases(env.get("ALERT_PHRASES")),
        cleanup_interval_minutes=cleanup_minutes,
        heartbeat_interval_s=max(1.0, _parse_float(env, "HEARTBEAT_INTERVAL_S", 30.0)),
        broadcast_throttle_s=max(0.0, _parse_float(env, "BROADCAST_THROTTLE_S", 0.5)),
        recent_alerts_limit=max(0, _parse_int(env, "RECENT_ALERTS_LIMIT", 10)),
        web_auth_required=_parse_bool(env.get("WEB_AUTH_REQUIRED")),
        elevenlabs_host=(env.get("ELEVENLABS_HOST") or "api.elevenlabs.io").strip(),
        elevenlabs_model_id=(env.get("ELEVENLABS_MODEL_ID") or None),
        elevenlabs_language_code=(env.get("ELEVENLABS_LANGUAGE_CODE") or None),
        openai_api_key=(env.get("OPENAI_API_KEY") or "").strip() or None,
        openai_model=(env.get("OPENAI_MODEL") or "gpt-4o").strip(),
    )
