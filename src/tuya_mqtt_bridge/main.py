from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from functools import partial
from pathlib import Path

import dotenv
import uvloop

from tuya_mqtt_bridge.config import load_config
from tuya_mqtt_bridge.const import BRIDGE_NAME, BRIDGE_VERSION
from tuya_mqtt_bridge.correlation import correlation_scope
from tuya_mqtt_bridge.exceptions import ConfigError
from tuya_mqtt_bridge.logging_abstraction import (
    get_logger,
    install_exception_hook,
    reconfigure_bridge_loggers,
    set_bridge_log_level,
)
from tuya_mqtt_bridge.metrics import start_metrics_server
from tuya_mqtt_bridge.server import BridgeServer
from tuya_mqtt_bridge.structs import GlobalObject
from tuya_mqtt_bridge.utils import check_python_version, signal_handler

logger = get_logger(__name__)

# Third-party libraries only surface warnings and errors
for _name in ("aiomqtt", "mqtt", "tinytuya"):
    logging.getLogger(_name).setLevel(logging.WARNING)

g = GlobalObject()

EXIT_CONFIG_ERROR = 2


def _enable_debug(reason: str) -> None:
    set_bridge_log_level(logging.DEBUG)
    logger.info("Debug logging enabled via %s", reason)


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tuya LAN device to MQTT bridge")
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    g.cli_args = args = parser.parse_args(argv)

    if args.debug:
        _enable_debug("CLI argument")

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error("Environment file not found", extra={"path": str(env_path)})
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info("Environment variables loaded", extra={"source": str(env_path)})
            g.reload_env()
            reconfigure_bridge_loggers(g.log_format, g.log_file)
        else:
            logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return args


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ``tuya-mqtt-bridge`` console script."""
    install_exception_hook(logger)
    with correlation_scope("init"):
        logger.info("=== TUYA MQTT BRIDGE INITIALIZATION START === (%s v%s)", BRIDGE_NAME, BRIDGE_VERSION)
        args = parse_cli(argv)
        if not args.debug and g.debug:
            _enable_debug("configuration")
        check_python_version()

        try:
            config = load_config()
        except ConfigError as e:
            logger.error("Invalid configuration: %s", e)
            sys.exit(EXIT_CONFIG_ERROR)

        g.loop = uvloop.new_event_loop()
        asyncio.set_event_loop(g.loop)
        g.bridge = bridge = BridgeServer(config)
        g.loop.add_signal_handler(signal.SIGINT, partial(signal_handler, signal.SIGINT))
        g.loop.add_signal_handler(signal.SIGTERM, partial(signal_handler, signal.SIGTERM))
        logger.debug("Signal handlers configured for SIGINT & SIGTERM")

        if g.metrics_port > 0:
            start_metrics_server(g.metrics_port)
        logger.info(
            "=== TUYA MQTT BRIDGE INITIALIZATION COMPLETED === (%d device(s), root topic '%s')",
            len(config.devices),
            config.root_topic,
        )

    try:
        g.loop.run_until_complete(bridge.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.exception("Fatal error in main loop", extra={"error": str(e)})
        raise
    else:
        logger.info("Bridge stopped gracefully")
    finally:
        if not g.loop.is_closed():
            g.loop.close()
        logger.info("%s shutdown complete", BRIDGE_NAME)


if __name__ == "__main__":
    main()
