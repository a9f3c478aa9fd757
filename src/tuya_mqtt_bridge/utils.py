from __future__ import annotations

import base64
import binascii
import signal
import sys
import time

from tuya_mqtt_bridge.exceptions import ConfigError
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.structs import GlobalObject

logger = get_logger(__name__)
g = GlobalObject()


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def decode_base64_secret(value: str, setting: str) -> str:
    """Decode a base64 encoded secret (password or device key) to UTF-8 text.

    Raises:
        ConfigError: If the value is not valid base64 or not UTF-8

    """
    try:
        return base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        msg = "Value is not valid base64 encoded UTF-8"
        raise ConfigError(msg, setting) from e


def signal_handler(signum: int) -> None:
    """Translate SIGINT/SIGTERM into a graceful bridge shutdown."""
    logger.info("Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    if g.bridge is not None:
        g.bridge.request_shutdown()


def check_python_version() -> None:
    if sys.version_info < (3, 12):
        logger.critical(
            "Python 3.12 or newer is required, running %s",
            ".".join(str(part) for part in sys.version_info[:3]),
        )
        sys.exit(1)
