"""Bridge configuration: broker settings and the ordered device list.

Settings come from environment variables (optionally loaded from a dotenv
file by the CLI) and an optional YAML device file. Everything is validated
once at startup; any problem raises ``ConfigError``.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from tuya_mqtt_bridge.const import (
    DEFAULT_DEVICE_SOCKET_TIMEOUT,
    DEFAULT_MQTT_CONN_DELAY,
    DEFAULT_MQTT_HOST,
    DEFAULT_MQTT_PORT,
    DEFAULT_MQTT_TOPIC,
    DEFAULT_MQTTS_PORT,
    DEFAULT_RECONCILE_INTERVAL,
    DEVICE_ENV_PREFIX,
)
from tuya_mqtt_bridge.exceptions import ConfigError
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.structs import DeviceConfig
from tuya_mqtt_bridge.utils import decode_base64_secret

logger = get_logger(__name__)

__all__ = [
    "BridgeConfig",
    "BrokerSettings",
    "TLSFiles",
    "load_config",
    "parse_device_env",
    "parse_device_file",
]


class TLSFiles(BaseModel):
    """Paths to the TLS material used for ``mqtts`` connections."""

    model_config = ConfigDict(frozen=True)

    ca_certs: Path | None = None
    certfile: Path | None = None
    keyfile: Path | None = None


class BrokerSettings(BaseModel):
    """Broker connection parameters. Credentials are passed through untouched."""

    model_config = ConfigDict(frozen=True)

    protocol: str = "mqtt"
    host: str = DEFAULT_MQTT_HOST
    port: int = DEFAULT_MQTT_PORT
    username: str | None = None
    password: str | None = None
    client_id: str = ""
    tls: TLSFiles | None = None
    conn_delay: float = DEFAULT_MQTT_CONN_DELAY

    @property
    def use_tls(self) -> bool:
        """True when the broker is reached over ``mqtts``."""
        return self.protocol == "mqtts"

    def __repr__(self) -> str:
        return f"BrokerSettings(protocol={self.protocol!r}, host={self.host!r}, port={self.port!r}, username={self.username!r})"


class BridgeConfig(BaseModel):
    """Complete validated bridge configuration."""

    model_config = ConfigDict(frozen=True)

    broker: BrokerSettings
    root_topic: str = DEFAULT_MQTT_TOPIC
    devices: tuple[DeviceConfig, ...] = ()
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL
    device_socket_timeout: float = DEFAULT_DEVICE_SOCKET_TIMEOUT


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        msg = f"Expected a number, got {raw!r}"
        raise ConfigError(msg, name) from None
    if value <= 0:
        msg = f"Expected a positive number, got {raw!r}"
        raise ConfigError(msg, name)
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"Expected an integer, got {raw!r}"
        raise ConfigError(msg, name) from None


def _build_device(data: Mapping[str, Any], source: str) -> DeviceConfig:
    try:
        return DeviceConfig.model_validate(dict(data))
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        msg = f"Invalid device descriptor: {errors}"
        raise ConfigError(msg, source) from e


def parse_device_env(env: Mapping[str, str]) -> list[DeviceConfig]:
    """Parse ``APP_TUYAPI_<n>_*`` descriptors in index order.

    Scanning stops at the first index with no matching variable. Keys are
    base64 encoded in the environment.
    """
    devices: list[DeviceConfig] = []
    index = 0
    while any(name.startswith(f"{DEVICE_ENV_PREFIX}{index}_") for name in env):
        prefix = f"{DEVICE_ENV_PREFIX}{index}_"
        raw_key = env.get(f"{prefix}KEY", "")
        data = {
            "name": env.get(f"{prefix}NAME", ""),
            "id": env.get(f"{prefix}ID", ""),
            "key": decode_base64_secret(raw_key, f"{prefix}KEY") if raw_key else "",
            "ip": env.get(f"{prefix}IP", ""),
            "version": env.get(f"{prefix}VERSION", "3.3"),
        }
        devices.append(_build_device(data, f"{prefix}*"))
        index += 1
    return devices


def parse_device_file(path: Path) -> list[DeviceConfig]:
    """Parse a YAML device list: ``devices: [{name, id, key, ip, version}, ...]``.

    Keys in the file are plain text.
    """
    logger.debug("Parsing device file: %s", path)
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except OSError as e:
        msg = f"Cannot read device file: {e}"
        raise ConfigError(msg, str(path)) from e
    except yaml.YAMLError as e:
        msg = f"Device file is not valid YAML: {e}"
        raise ConfigError(msg, str(path)) from e

    if not data:
        return []
    entries = data.get("devices") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        msg = "Device file must contain a 'devices' list"
        raise ConfigError(msg, str(path))

    devices: list[DeviceConfig] = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            msg = f"Device entry {position} is not a mapping"
            raise ConfigError(msg, str(path))
        devices.append(_build_device(entry, f"{path}:devices[{position}]"))
    return devices


def _check_unique_names(devices: list[DeviceConfig]) -> None:
    seen: set[str] = set()
    for device in devices:
        if device.name in seen:
            msg = f"Duplicate device name {device.name!r}"
            raise ConfigError(msg, "device name")
        seen.add(device.name)


def _parse_broker(env: Mapping[str, str], cert_dir: Path) -> BrokerSettings:
    protocol = env.get("APP_MQTT_PROTOCOL", "mqtt").strip().casefold() or "mqtt"
    if protocol not in ("mqtt", "mqtts"):
        msg = f"Unsupported protocol {protocol!r}, expected 'mqtt' or 'mqtts'"
        raise ConfigError(msg, "APP_MQTT_PROTOCOL")

    default_port = DEFAULT_MQTTS_PORT if protocol == "mqtts" else DEFAULT_MQTT_PORT
    raw_password = env.get("APP_MQTT_PASSWORD")
    tls: TLSFiles | None = None
    if protocol == "mqtts":
        files: dict[str, Path | None] = {}
        for field_name, var in (
            ("ca_certs", "APP_MQTT_CA_FILENAME"),
            ("certfile", "APP_MQTT_CERT_FILENAME"),
            ("keyfile", "APP_MQTT_KEY_FILENAME"),
        ):
            filename = env.get(var)
            files[field_name] = cert_dir / filename if filename else None
        tls = TLSFiles(**files)

    return BrokerSettings(
        protocol=protocol,
        host=env.get("APP_MQTT_HOST") or DEFAULT_MQTT_HOST,
        port=_env_int(env, "APP_MQTT_PORT", default_port),
        username=env.get("APP_MQTT_USERNAME") or None,
        password=decode_base64_secret(raw_password, "APP_MQTT_PASSWORD") if raw_password else None,
        client_id=env.get("APP_MQTT_CLIENT_ID") or f"tuya-mqtt-bridge-{uuid.uuid4().hex[:8]}",
        tls=tls,
        conn_delay=_env_float(env, "APP_MQTT_CONN_DELAY", DEFAULT_MQTT_CONN_DELAY),
    )


def load_config(env: Mapping[str, str] | None = None) -> BridgeConfig:
    """Build the validated bridge configuration.

    Args:
        env: Environment mapping, defaults to ``os.environ``

    Returns:
        BridgeConfig with devices in configuration order (env first, then file)

    Raises:
        ConfigError: On any invalid or inconsistent setting

    """
    env = os.environ if env is None else env
    cert_dir = Path(env.get("APP_CERT_DIR") or os.getcwd())

    devices = parse_device_env(env)
    devices_file = env.get("APP_DEVICES_FILE")
    if devices_file:
        devices.extend(parse_device_file(Path(devices_file).expanduser()))
    _check_unique_names(devices)
    if not devices:
        logger.warning("No devices configured, the bridge will not mirror any device state")

    root_topic = (env.get("APP_MQTT_TOPIC") or DEFAULT_MQTT_TOPIC).strip().rstrip("/")
    if not root_topic or "#" in root_topic or "+" in root_topic:
        msg = f"Invalid root topic {root_topic!r}"
        raise ConfigError(msg, "APP_MQTT_TOPIC")

    config = BridgeConfig(
        broker=_parse_broker(env, cert_dir),
        root_topic=root_topic,
        devices=tuple(devices),
        reconcile_interval=_env_float(env, "APP_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL),
        device_socket_timeout=_env_float(env, "APP_DEVICE_SOCKET_TIMEOUT", DEFAULT_DEVICE_SOCKET_TIMEOUT),
    )
    logger.info(
        "Parsed config: %d devices",
        len(config.devices),
        extra={"root_topic": config.root_topic, "broker": f"{config.broker.host}:{config.broker.port}"},
    )
    return config
