from __future__ import annotations

import base64
import binascii
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Collection, Union

from homepost.errors import ProtocolError

MAX_MESSAGE_BYTES = 1_000_000
# Last millisecond of 9999-12-31 UTC; later capture times cannot be stored.
MAX_TIMESTAMP_MS = 253_402_300_799_999
PLACEHOLDER_PREFIX = "unknown-"

# Fault codes sent in "error" messages.
INVALID_FORMAT = "INVALID_FORMAT"
MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
UNKNOWN_TYPE = "UNKNOWN_TYPE"
INVALID_DEVICE_ID = "INVALID_DEVICE_ID"
DEVICE_NOT_REGISTERED = "DEVICE_NOT_REGISTERED"
NOT_AUTHORIZED = "NOT_AUTHORIZED"
AUTH_REQUIRED = "AUTH_REQUIRED"
PROCESSING_ERROR = "PROCESSING_ERROR"


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads(text: str) -> Any:
    return json.loads(text)


def now_ms() -> int:
    return int(time.time() * 1000)


def capture_ms(value: Any) -> int:
    """Capture time from the wire, or now when it is missing or out of range."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return now_ms()
    if not math.isfinite(value) or not 0 <= value <= MAX_TIMESTAMP_MS:
        return now_ms()
    return int(value)


def new_placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{now_ms()}-{uuid.uuid4().hex[:8]}"


def encoded_size(raw: str | bytes | bytearray) -> int:
    if isinstance(raw, str):
        return len(raw.encode("utf-8"))
    return len(raw)


def _require_str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(INVALID_FORMAT, f"Missing required field: {key}")
    return value


def _optional_str(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(INVALID_FORMAT, f"Field {key} must be a string")
    return value


def _optional_dict(obj: dict[str, Any], key: str) -> dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(INVALID_FORMAT, f"Field {key} must be an object")
    return value


@dataclass(frozen=True, slots=True)
class Capabilities:
    audio: bool = True
    video: bool = False
    speaker: bool = False

    def to_wire(self) -> dict[str, bool]:
        return {"audio": self.audio, "video": self.video, "speaker": self.speaker}

    @classmethod
    def from_wire(cls, obj: dict[str, Any] | None) -> Capabilities:
        obj = obj or {}
        return cls(
            audio=bool(obj.get("audio", True)),
            video=bool(obj.get("video", False)),
            speaker=bool(obj.get("speaker", False)),
        )


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """Registration: the first message on a producer connection."""

    TYPE: ClassVar[str] = "device_info"

    device_id: str
    name: str | None = None
    location: str | None = None
    capabilities: Capabilities = field(default_factory=Capabilities)
    client_version: str | None = None
    system_info: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        obj: dict[str, Any] = {
            "type": self.TYPE,
            "deviceId": self.device_id,
            "capabilities": self.capabilities.to_wire(),
        }
        if self.name is not None:
            obj["name"] = self.name
        if self.location is not None:
            obj["location"] = self.location
        if self.client_version is not None:
            obj["clientVersion"] = self.client_version
        if self.system_info:
            obj["systemInfo"] = dict(self.system_info)
        return obj

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> DeviceInfo:
        return cls(
            device_id=_require_str(obj, "deviceId").strip(),
            name=_optional_str(obj, "name"),
            location=_optional_str(obj, "location"),
            capabilities=Capabilities.from_wire(_optional_dict(obj, "capabilities")),
            client_version=_optional_str(obj, "clientVersion"),
            system_info=_optional_dict(obj, "systemInfo"),
        )


@dataclass(frozen=True, slots=True)
class AudioData:
    TYPE: ClassVar[str] = "audio_data"

    device_id: str
    timestamp: int
    data: str

    @classmethod
    def from_pcm(cls, device_id: str, pcm: bytes, timestamp: int | None = None) -> AudioData:
        return cls(
            device_id=device_id,
            timestamp=now_ms() if timestamp is None else int(timestamp),
            data=base64.b64encode(pcm).decode("ascii"),
        )

    def payload(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError):
            raise ProtocolError(INVALID_FORMAT, "Audio data is not valid base64") from None

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "deviceId": self.device_id, "timestamp": self.timestamp, "data": self.data}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> AudioData:
        data = obj.get("data")
        if not isinstance(data, str) or not data:
            raise ProtocolError(INVALID_FORMAT, "Missing or invalid audio data")
        device_id = obj.get("deviceId")
        return cls(
            device_id=device_id if isinstance(device_id, str) else "",
            timestamp=capture_ms(obj.get("timestamp")),
            data=data,
        )


@dataclass(frozen=True, slots=True)
class ServerResponse:
    TYPE: ClassVar[str] = "server_response"

    message: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "message": self.message}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> ServerResponse:
        return cls(message=str(obj.get("message") or ""))


@dataclass(frozen=True, slots=True)
class Speak:
    TYPE: ClassVar[str] = "speak"

    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "text": self.text}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> Speak:
        return cls(text=str(obj.get("text") or ""))


@dataclass(frozen=True, slots=True)
class Command:
    """Control command. Observers address it with device_id; the hub strips it when forwarding."""

    TYPE: ClassVar[str] = "command"

    command: str
    params: dict[str, Any] = field(default_factory=dict)
    device_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"type": self.TYPE, "command": self.command, "params": dict(self.params)}
        if self.device_id is not None:
            obj["deviceId"] = self.device_id
        return obj

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> Command:
        return cls(
            command=_require_str(obj, "command"),
            params=_optional_dict(obj, "params"),
            device_id=_optional_str(obj, "deviceId"),
        )


@dataclass(frozen=True, slots=True)
class Fault:
    TYPE: ClassVar[str] = "error"

    message: str
    code: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "message": self.message, "code": self.code}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> Fault:
        return cls(message=str(obj.get("message") or ""), code=str(obj.get("code") or "unknown"))


@dataclass(frozen=True, slots=True)
class WebClient:
    """Observer opt-in."""

    TYPE: ClassVar[str] = "web_client"

    token: str | None = None

    def to_wire(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"type": self.TYPE}
        if self.token is not None:
            obj["token"] = self.token
        return obj

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> WebClient:
        token = obj.get("token")
        return cls(token=str(token) if token else None)


@dataclass(frozen=True, slots=True)
class DeviceList:
    TYPE: ClassVar[str] = "device_list"

    devices: list[dict[str, Any]]

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "devices": list(self.devices)}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> DeviceList:
        devices = obj.get("devices")
        return cls(devices=list(devices) if isinstance(devices, list) else [])


@dataclass(frozen=True, slots=True)
class RecentAlerts:
    TYPE: ClassVar[str] = "recent_alerts"

    alerts: list[dict[str, Any]]

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "alerts": list(self.alerts)}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> RecentAlerts:
        alerts = obj.get("alerts")
        return cls(alerts=list(alerts) if isinstance(alerts, list) else [])


@dataclass(frozen=True, slots=True)
class DeviceConnected:
    TYPE: ClassVar[str] = "device_connected"

    device_id: str
    name: str
    location: str
    capabilities: Capabilities

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "deviceId": self.device_id,
            "name": self.name,
            "location": self.location,
            "capabilities": self.capabilities.to_wire(),
        }

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> DeviceConnected:
        device_id = _require_str(obj, "deviceId")
        return cls(
            device_id=device_id,
            name=str(obj.get("name") or device_id),
            location=str(obj.get("location") or "Unknown"),
            capabilities=Capabilities.from_wire(_optional_dict(obj, "capabilities")),
        )


@dataclass(frozen=True, slots=True)
class DeviceDisconnected:
    TYPE: ClassVar[str] = "device_disconnected"

    device_id: str
    timestamp: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "deviceId": self.device_id, "timestamp": self.timestamp}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> DeviceDisconnected:
        return cls(device_id=_require_str(obj, "deviceId"), timestamp=str(obj.get("timestamp") or ""))


@dataclass(frozen=True, slots=True)
class Transcription:
    TYPE: ClassVar[str] = "transcription"

    device_id: str
    timestamp: str
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "deviceId": self.device_id, "timestamp": self.timestamp, "text": self.text}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> Transcription:
        return cls(
            device_id=_require_str(obj, "deviceId"),
            timestamp=str(obj.get("timestamp") or ""),
            text=str(obj.get("text") or ""),
        )


@dataclass(frozen=True, slots=True)
class AlertEvent:
    TYPE: ClassVar[str] = "alert"

    device_id: str
    timestamp: str
    message: str
    severity: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "deviceId": self.device_id,
            "timestamp": self.timestamp,
            "message": self.message,
            "severity": self.severity,
        }

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> AlertEvent:
        return cls(
            device_id=_require_str(obj, "deviceId"),
            timestamp=str(obj.get("timestamp") or ""),
            message=str(obj.get("message") or ""),
            severity=str(obj.get("severity") or "medium"),
        )


@dataclass(frozen=True, slots=True)
class CommandSent:
    TYPE: ClassVar[str] = "command_sent"

    device_id: str
    status: str
    message: str | None = None

    def to_wire(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"type": self.TYPE, "deviceId": self.device_id, "status": self.status}
        if self.message is not None:
            obj["message"] = self.message
        return obj

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> CommandSent:
        return cls(
            device_id=str(obj.get("deviceId") or ""),
            status=str(obj.get("status") or ""),
            message=_optional_str(obj, "message"),
        )


@dataclass(frozen=True, slots=True)
class AlertUpdated:
    TYPE: ClassVar[str] = "alert_updated"

    alert: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.TYPE, "alert": dict(self.alert)}

    @classmethod
    def from_wire(cls, obj: dict[str, Any]) -> AlertUpdated:
        return cls(alert=_optional_dict(obj, "alert"))


Message = Union[
    DeviceInfo,
    AudioData,
    ServerResponse,
    Speak,
    Command,
    Fault,
    WebClient,
    DeviceList,
    RecentAlerts,
    DeviceConnected,
    DeviceDisconnected,
    Transcription,
    AlertEvent,
    CommandSent,
    AlertUpdated,
]

MESSAGE_TYPES: dict[str, type[Any]] = {
    cls.TYPE: cls
    for cls in (
        DeviceInfo,
        AudioData,
        ServerResponse,
        Speak,
        Command,
        Fault,
        WebClient,
        DeviceList,
        RecentAlerts,
        DeviceConnected,
        DeviceDisconnected,
        Transcription,
        AlertEvent,
        CommandSent,
        AlertUpdated,
    )
}

# What each side is willing to dispatch; anything else is reported as unknown.
HUB_INBOUND = frozenset({DeviceInfo.TYPE, AudioData.TYPE, WebClient.TYPE, Command.TYPE})
DEVICE_INBOUND = frozenset({ServerResponse.TYPE, Speak.TYPE, Command.TYPE, Fault.TYPE})


def encode(message: Message) -> str:
    return dumps(message.to_wire())


def decode(raw: str | bytes | bytearray, accept: Collection[str] | None = None) -> Message:
    """Validate and parse one wire frame.

    The size ceiling is enforced before any JSON parsing happens.
    """
    size = encoded_size(raw)
    if size > MAX_MESSAGE_BYTES:
        raise ProtocolError(MESSAGE_TOO_LARGE, f"Message too large ({size} bytes)")
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError(INVALID_FORMAT, "Invalid message format") from None
    if not raw.strip():
        raise ProtocolError(INVALID_FORMAT, "Invalid message format")
    try:
        obj = loads(raw)
    except (ValueError, RecursionError):
        raise ProtocolError(INVALID_FORMAT, "Invalid message format") from None
    if not isinstance(obj, dict):
        raise ProtocolError(INVALID_FORMAT, "Invalid message format")
    msg_type = obj.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError(INVALID_FORMAT, "Invalid message format: missing type")
    cls = MESSAGE_TYPES.get(msg_type)
    if cls is None or (accept is not None and msg_type not in accept):
        raise ProtocolError(UNKNOWN_TYPE, f"Unknown message type: {msg_type}")
    return cls.from_wire(obj)
