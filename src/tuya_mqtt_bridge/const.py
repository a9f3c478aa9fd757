import logging
import os

from tuya_mqtt_bridge import __version__

__all__ = [
    "APP_DEBUG",
    "APP_LOG_FILE",
    "APP_LOG_FORMAT",
    "APP_METRICS_PORT",
    "BRIDGE_NAME",
    "BRIDGE_VERSION",
    "CMD_SET_STATE",
    "DEFAULT_DEVICE_SOCKET_TIMEOUT",
    "DEFAULT_LOG_FILE",
    "DEFAULT_LOG_FORMAT",
    "DEFAULT_MQTT_CONN_DELAY",
    "DEFAULT_MQTT_HOST",
    "DEFAULT_MQTT_PORT",
    "DEFAULT_MQTTS_PORT",
    "DEFAULT_MQTT_TOPIC",
    "DEFAULT_RECONCILE_INTERVAL",
    "DEVICE_ENV_PREFIX",
    "LOG_FILE_MAX_BYTES",
    "LOG_LEVEL",
    "MQTT_CLIENT_START_TASK_NAME",
    "PUBLISH_QOS",
    "RECONCILE_TASK_NAME",
    "RESERVED_PAYLOAD_KEYS",
    "STATE_SUFFIX",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", "on")

BRIDGE_NAME: str = "tuya-mqtt-bridge"
BRIDGE_VERSION: str = __version__

# Topic scheme: <root>/<device name>/state (out), <root>/<device name>/set-state (in)
STATE_SUFFIX: str = "state"
CMD_SET_STATE: str = "set-state"
PUBLISH_QOS: int = 0
RESERVED_PAYLOAD_KEYS: tuple[str, ...] = ("connected", "timestamp")

DEVICE_ENV_PREFIX: str = "APP_TUYAPI_"

DEFAULT_MQTT_HOST: str = "localhost"
DEFAULT_MQTT_PORT: int = 1883
DEFAULT_MQTTS_PORT: int = 8883
DEFAULT_MQTT_TOPIC: str = "tuyapi"
DEFAULT_MQTT_CONN_DELAY: float = 5.0
DEFAULT_RECONCILE_INTERVAL: float = 15.0
DEFAULT_DEVICE_SOCKET_TIMEOUT: float = 5.0

MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"
RECONCILE_TASK_NAME = "Reconciler_TICK"

APP_DEBUG: bool = os.environ.get("APP_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
DEFAULT_LOG_FORMAT: str = "both"  # "json", "human", or "both"
DEFAULT_LOG_FILE: str = "app.log"
APP_LOG_FORMAT: str = os.environ.get("APP_LOG_FORMAT", DEFAULT_LOG_FORMAT)
APP_LOG_FILE: str = os.environ.get("APP_LOG_FILE", DEFAULT_LOG_FILE)
LOG_FILE_MAX_BYTES: int = 1_000_000
LOG_LEVEL: int = logging.DEBUG if APP_DEBUG else logging.INFO

_metrics_port = os.environ.get("APP_METRICS_PORT", "0")
APP_METRICS_PORT: int = int(_metrics_port) if _metrics_port and _metrics_port.isdigit() else 0
