"""Device configuration file: defaults, loading, env overrides and remote updates."""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

LOG_LEVELS = ("debug", "info", "warn", "error")

logger = logging.getLogger("homepost_client.config")


@dataclass(frozen=True, slots=True)
class MicConfig:
    rate: str = "16000"
    channels: str = "1"
    device: str = "default"
    file_type: str = "wav"

    @property
    def sample_rate_hz(self) -> int:
        try:
            return max(1, int(float(self.rate)))
        except ValueError:
            return 16000

    @property
    def channel_count(self) -> int:
        try:
            return max(1, int(self.channels))
        except ValueError:
            return 1

    def to_json(self) -> dict[str, str]:
        return {"rate": self.rate, "channels": self.channels, "device": self.device, "fileType": self.file_type}

    def merged(self, obj: Mapping[str, Any]) -> MicConfig:
        """Return a copy with the string-ish keys of obj applied."""
        values: dict[str, str] = {}
        for key, attr in (("rate", "rate"), ("channels", "channels"), ("device", "device"), ("fileType", "file_type")):
            raw = obj.get(key)
            if raw is None:
                continue
            if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
                raise ValueError(f"micConfig.{key} must be a string or number")
            values[attr] = str(raw)
        return replace(self, **values)


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    server_url: str = "ws://192.168.1.100:3000"
    device_id: str = "living-room"
    device_name: str = "Living Room"
    location: str = "Living Room"
    mic_config: MicConfig = field(default_factory=MicConfig)
    reconnect_interval: int = 5000
    max_reconnect_interval: int = 60000
    reconnect_backoff_factor: float = 1.5
    speaker_enabled: bool = True
    log_level: str = "info"
    audio_chunk_size: int = 4096
    audio_send_interval: int = 500
    heartbeat_interval: int = 30000
    max_buffered_bytes: int = 8 * 1024 * 1024
    handshake_timeout: int = 10000

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[_JSON_NAMES[f.name]] = value.to_json() if isinstance(value, MicConfig) else value
        return out


def _positive_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError("must be a positive number")
    return int(value)


def _positive_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError("must be a positive number")
    return float(value)


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value


def _non_empty_text(value: Any) -> str:
    value = _text(value).strip()
    if not value:
        raise ValueError("must not be empty")
    return value


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("must be true or false")
    return value


def _log_level(value: Any) -> str:
    value = _text(value).strip().lower()
    if value not in LOG_LEVELS:
        raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
    return value


_JSON_NAMES = {
    "server_url": "serverUrl",
    "device_id": "deviceId",
    "device_name": "deviceName",
    "location": "location",
    "mic_config": "micConfig",
    "reconnect_interval": "reconnectInterval",
    "max_reconnect_interval": "maxReconnectInterval",
    "reconnect_backoff_factor": "reconnectBackoffFactor",
    "speaker_enabled": "speakerEnabled",
    "log_level": "logLevel",
    "audio_chunk_size": "audioChunkSize",
    "audio_send_interval": "audioSendInterval",
    "heartbeat_interval": "heartbeatInterval",
    "max_buffered_bytes": "maxBufferedBytes",
    "handshake_timeout": "handshakeTimeout",
}
_ATTR_NAMES = {v: k for k, v in _JSON_NAMES.items()}

_VALIDATORS: dict[str, Callable[[Any], Any]] = {
    "serverUrl": _non_empty_text,
    "deviceId": _non_empty_text,
    "deviceName": _text,
    "location": _text,
    "reconnectInterval": _positive_int,
    "maxReconnectInterval": _positive_int,
    "reconnectBackoffFactor": _positive_float,
    "speakerEnabled": _boolean,
    "logLevel": _log_level,
    "audioChunkSize": _positive_int,
    "audioSendInterval": _positive_int,
    "heartbeatInterval": _positive_int,
    "maxBufferedBytes": _positive_int,
    "handshakeTimeout": _positive_int,
}

# Fields a hub may change at runtime. deviceId and serverUrl are deliberately absent.
REMOTE_UPDATABLE = (
    "deviceName",
    "location",
    "reconnectInterval",
    "heartbeatInterval",
    "speakerEnabled",
    "logLevel",
    "audioChunkSize",
    "audioSendInterval",
)


def from_json(obj: Mapping[str, Any], base: DeviceConfig | None = None) -> DeviceConfig:
    """Merge a JSON object over base (defaults when None); invalid values keep the base value."""
    cfg = base or DeviceConfig()
    values: dict[str, Any] = {}
    for key, validate in _VALIDATORS.items():
        if key not in obj or obj[key] is None:
            continue
        try:
            values[_ATTR_NAMES[key]] = validate(obj[key])
        except ValueError as e:
            logger.warning("Ignoring config %s=%r: %s", key, obj[key], e)
    mic = obj.get("micConfig")
    if isinstance(mic, Mapping):
        try:
            values["mic_config"] = cfg.mic_config.merged(mic)
        except ValueError as e:
            logger.warning("Ignoring micConfig: %s", e)
    return replace(cfg, **values)


def apply_env_overrides(cfg: DeviceConfig, environ: Mapping[str, str] | None = None) -> DeviceConfig:
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    server_url = (env.get("HOMEPOST_SERVER_URL") or "").strip()
    if server_url:
        values["server_url"] = server_url
    device_id = (env.get("HOMEPOST_DEVICE_ID") or "").strip()
    if device_id:
        values["device_id"] = device_id
    return replace(cfg, **values) if values else cfg


def write_config(path: Path, cfg: DeviceConfig) -> None:
    """Write atomically so a crash never leaves a half-written file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(cfg.to_json(), indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> DeviceConfig:
    path = Path(path)
    cfg = DeviceConfig()
    if not path.exists():
        try:
            write_config(path, cfg)
            logger.info("Created default %s", path)
        except OSError:
            logger.exception("Could not create %s", path)
        return apply_env_overrides(cfg, environ)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("config root must be an object")
    except (OSError, ValueError) as e:
        logger.error("Error parsing config file %s: %s; using defaults", path, e)
        backup = path.with_name(f"{path.name}.backup.{int(time.time() * 1000)}")
        try:
            shutil.copyfile(path, backup)
            logger.info("Backed up corrupted config to %s", backup)
            write_config(path, cfg)
        except OSError:
            logger.exception("Could not replace corrupted config %s", path)
        return apply_env_overrides(cfg, environ)

    cfg = from_json(raw)
    logger.info("Loaded configuration from %s", path)
    return apply_env_overrides(cfg, environ)


@dataclass(frozen=True, slots=True)
class ConfigUpdate:
    changed: tuple[str, ...] = ()
    rejected: tuple[str, ...] = ()
    mic_changed: bool = False


class ConfigStore:
    """The live device configuration plus where it is persisted."""

    def __init__(self, path: Path, config: DeviceConfig) -> None:
        self._path = Path(path)
        self._config = config

    @classmethod
    def load(cls, path: Path, environ: Mapping[str, str] | None = None) -> ConfigStore:
        return cls(path, load_config(path, environ))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> DeviceConfig:
        return self._config

    def save(self) -> None:
        write_config(self._path, self._config)

    def update(self, params: Mapping[str, Any]) -> ConfigUpdate:
        """Apply a remote update restricted to REMOTE_UPDATABLE plus micConfig, then persist."""
        values: dict[str, Any] = {}
        changed: list[str] = []
        rejected: list[str] = []
        for key, raw in params.items():
            if key == "micConfig":
                continue
            if key not in REMOTE_UPDATABLE:
                rejected.append(key)
                continue
            try:
                values[_ATTR_NAMES[key]] = _VALIDATORS[key](raw)
                changed.append(key)
            except ValueError as e:
                logger.warning("Rejected config update %s=%r: %s", key, raw, e)
                rejected.append(key)

        mic_changed = False
        mic = params.get("micConfig")
        if mic is not None:
            if isinstance(mic, Mapping):
                try:
                    merged = self._config.mic_config.merged(mic)
                    values["mic_config"] = merged
                    changed.append("micConfig")
                    mic_changed = merged != self._config.mic_config
                except ValueError as e:
                    logger.warning("Rejected micConfig update: %s", e)
                    rejected.append("micConfig")
            else:
                rejected.append("micConfig")

        if rejected:
            logger.warning("Ignored config fields: %s", ", ".join(rejected))
        if not changed:
            return ConfigUpdate(rejected=tuple(rejected))

        self._config = replace(self._config, **values)
        self.save()
        logger.info("Updated configuration: %s", ", ".join(changed))
        return ConfigUpdate(changed=tuple(changed), rejected=tuple(rejected), mic_changed=mic_changed)
