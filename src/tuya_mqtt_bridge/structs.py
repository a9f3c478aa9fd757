"""Core data structures and typing protocols for the bridge."""

from __future__ import annotations

import asyncio
import os
import re
from argparse import Namespace
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from tuya_mqtt_bridge.const import (
    APP_DEBUG,
    APP_LOG_FILE,
    APP_LOG_FORMAT,
    APP_METRICS_PORT,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_FORMAT,
    RESERVED_PAYLOAD_KEYS,
    YES_ANSWER,
)

if TYPE_CHECKING:
    from tuya_mqtt_bridge.server import BridgeServer

DataPointKey = str | int
DataPoints = Mapping[DataPointKey, Any]

# Characters that would break the topic segment or act as MQTT wildcards
_INVALID_NAME_CHARS = re.compile(r"[/#+\s]")


class LinkState(StrEnum):
    """Lifecycle state of a tracked link (the broker or one device)."""

    UNKNOWN = "unknown"
    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"

    @property
    def is_up(self) -> bool:
        """True for the two states reached through a connect event."""
        return self in (LinkState.CONNECTED, LinkState.RECONNECTED)


class DeviceConfig(BaseModel):
    """Identity of one Tuya device. Immutable after creation."""

    model_config = ConfigDict(frozen=True)

    name: str
    id: str
    key: str
    ip: str
    version: str = "3.3"

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "device name must not be empty"
            raise ValueError(msg)
        if _INVALID_NAME_CHARS.search(value):
            msg = f"device name {value!r} must not contain '/', '#', '+' or whitespace"
            raise ValueError(msg)
        return value

    @field_validator("id", "key", "ip")
    @classmethod
    def _validate_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "value must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _validate_version(cls, value: object) -> str:
        text = str(value).strip()
        try:
            _ = float(text)
        except ValueError:
            msg = f"protocol version {text!r} is not a number like 3.3"
            raise ValueError(msg) from None
        return text

    @property
    def protocol_version(self) -> float:
        """Protocol version as the float the device client expects."""
        return float(self.version)

    def __repr__(self) -> str:
        # never leak the local key into logs
        return f"DeviceConfig(name={self.name!r}, id={self.id!r}, ip={self.ip!r}, version={self.version!r})"


@dataclass(frozen=True, slots=True)
class DeviceSnapshot:
    """Point-in-time copy of a device's connectivity flag and data points."""

    connected: bool
    data_points: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_payload(self, timestamp_ms: int) -> dict[str, Any]:
        """Build the flat broker payload: connected, data points, timestamp.

        ``connected`` and ``timestamp`` win over data points with the same key.
        """
        payload: dict[str, Any] = {"connected": self.connected}
        payload.update({k: v for k, v in self.data_points.items() if k not in RESERVED_PAYLOAD_KEYS})
        payload["timestamp"] = timestamp_ms
        return payload


# Device events: one tagged variant per signal the device client can emit.
@dataclass(frozen=True, slots=True)
class DeviceConnected:
    """The device link came up."""


@dataclass(frozen=True, slots=True)
class DeviceDisconnected:
    """The device link went down (or a connect attempt failed)."""


@dataclass(frozen=True, slots=True)
class DeviceDataUpdate:
    """Partial data-point map reported by the device.

    ``refresh`` marks data that answers an explicit status refresh rather than
    a spontaneous report.
    """

    data_points: Mapping[str, Any]
    refresh: bool = False


@dataclass(frozen=True, slots=True)
class DeviceError:
    """Non-fatal error reported by the device client."""

    error: BaseException


DeviceEvent = DeviceConnected | DeviceDisconnected | DeviceDataUpdate | DeviceError


class DeviceClientProtocol(Protocol):
    """Primitives the bridge needs from a device-protocol client."""

    async def connect(self) -> None:
        """Attempt to (re)establish the device link. Outcome is reported as events."""
        ...

    def is_connected(self) -> bool:
        """Probe whether the device link is currently up."""
        ...

    async def send(self, command: Mapping[str, Any]) -> None:
        """Send a data-point command to the device. Raises CommandSendError on failure."""
        ...

    async def close(self) -> None:
        """Release the device link."""
        ...


class GlobalObject:
    """Singleton container for process-wide state and the env-derived settings."""

    loop: asyncio.AbstractEventLoop | None = None
    bridge: BridgeServer | None = None
    cli_args: Namespace | None = None

    debug: bool = APP_DEBUG
    log_format: str = APP_LOG_FORMAT
    log_file: str = APP_LOG_FILE
    metrics_port: int = APP_METRICS_PORT

    _instance: GlobalObject | None = None

    def __new__(cls, *_args: Any, **_kwargs: Any) -> GlobalObject:
        """Ensure only one GlobalObject instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def reload_env(self) -> None:
        """Re-evaluate ``APP_*`` settings after an env file has been loaded.

        The module-level constants in ``const`` keep their import-time values.
        """
        self.debug = os.environ.get("APP_DEBUG", "0").casefold() in YES_ANSWER
        self.log_format = os.environ.get("APP_LOG_FORMAT", DEFAULT_LOG_FORMAT)
        self.log_file = os.environ.get("APP_LOG_FILE", DEFAULT_LOG_FILE)
        raw_port = os.environ.get("APP_METRICS_PORT", "0")
        self.metrics_port = int(raw_port) if raw_port.isdigit() else 0
