"""Inbound command routing: the broker-to-device half of the router.

Messages arrive on ``<root>/#``. A topic ``<root>/<device>/set-state`` whose
device is known has its JSON object payload forwarded verbatim to that
device. Every other topic under the root is ignored without error.
"""

from __future__ import annotations

import json
from json import JSONDecodeError
from typing import TYPE_CHECKING, Any, cast

from tuya_mqtt_bridge import metrics
from tuya_mqtt_bridge.const import CMD_SET_STATE
from tuya_mqtt_bridge.correlation import correlation_scope
from tuya_mqtt_bridge.exceptions import CommandSendError, PayloadDecodeError
from tuya_mqtt_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from tuya_mqtt_bridge.mqtt.client import MQTTClient

logger = get_logger(__name__)


def parse_command(payload: bytes) -> dict[str, Any]:
    """Decode a command payload into a data-point mapping.

    Raises:
        PayloadDecodeError: If the payload is empty, not UTF-8 JSON, or not a JSON object

    """
    if not payload:
        msg = "empty payload"
        raise PayloadDecodeError(msg, payload)
    try:
        data = json.loads(payload.decode("utf-8"))
    except UnicodeDecodeError as e:
        msg = "payload is not UTF-8"
        raise PayloadDecodeError(msg, payload) from e
    except JSONDecodeError as e:
        msg = f"invalid JSON: {e.msg}"
        raise PayloadDecodeError(msg, payload) from e
    if not isinstance(data, dict):
        msg = f"expected a JSON object, got {type(data).__name__}"
        raise PayloadDecodeError(msg, payload)
    return cast("dict[str, Any]", data)


def payload_bytes(payload: object) -> bytes:
    """Normalize an aiomqtt payload (bytes, str, number or None) to bytes."""
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    return str(payload).encode()


class CommandRouter:
    """Routes inbound broker messages to device links."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        """Initialize the command router.

        Args:
            mqtt_client: MQTTClient instance giving access to the root topic and device links

        """
        self.client: MQTTClient = mqtt_client

    def routing_key(self, topic: str) -> str | None:
        """Strip ``<root>/`` from a topic, giving ``<device>/<suffix>``; None if outside the root."""
        prefix = f"{self.client.topic}/"
        if not topic.startswith(prefix):
            return None
        return topic[len(prefix) :]

    async def handle_message(self, topic: str, payload: bytes) -> bool:
        """Route one inbound message. Returns True if a command was delivered to a device."""
        lp = f"{self.client.lp}rcv:"
        with correlation_scope("rcv"):
            key = self.routing_key(topic)
            if key is None:
                logger.debug("%s topic outside root, ignoring: %s", lp, topic)
                return False

            device_name, _, suffix = key.partition("/")
            if suffix != CMD_SET_STATE:
                logger.debug("%s not a command topic, ignoring: %s", lp, topic)
                return False

            link = self.client.links.get(device_name)
            if link is None:
                logger.debug("%s no device named '%s', ignoring: %s", lp, device_name, topic)
                return False

            try:
                command = parse_command(payload)
            except PayloadDecodeError as e:
                logger.warning(
                    "%s dropping malformed command for '%s': %s",
                    lp,
                    device_name,
                    e.reason,
                    extra={"payload": e.payload_preview},
                )
                metrics.record_command(device_name, "dropped")
                return False

            logger.info("%s >>> command for '%s': %s", lp, device_name, command)
            try:
                await link.send_command(command)
            except CommandSendError as e:
                logger.error("%s %s", lp, e)
                metrics.record_command(device_name, "error")
                return False
            metrics.record_command(device_name, "success")
            return True

    async def start_receiver_task(self) -> None:
        """Consume messages from the connected broker client until the connection ends."""
        assert self.client.client is not None, "client must be initialized"
        async for message in self.client.client.messages:
            msg: Any = cast("Any", message)
            await self.handle_message(str(msg.topic.value), payload_bytes(msg.payload))
