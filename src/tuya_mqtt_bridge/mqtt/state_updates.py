"""Snapshot publishing: the outbound half of the router.

Every publish goes to ``<root>/<device>/state``, retained, QoS 0, with a
timestamp taken at publish time.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from tuya_mqtt_bridge import metrics
from tuya_mqtt_bridge.const import PUBLISH_QOS, STATE_SUFFIX
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.utils import now_ms

if TYPE_CHECKING:
    from tuya_mqtt_bridge.devices.device_link import DeviceLink
    from tuya_mqtt_bridge.mqtt.client import MQTTClient
    from tuya_mqtt_bridge.structs import DeviceSnapshot

logger = get_logger(__name__)


class StateUpdateHelper:
    """Builds state payloads and publishes them through the MQTT client."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        """Initialize the state update helper.

        Args:
            mqtt_client: MQTTClient instance used for publishing and topic/links lookup

        """
        self.client: MQTTClient = mqtt_client

    def state_topic(self, device_name: str) -> str:
        return f"{self.client.topic}/{device_name}/{STATE_SUFFIX}"

    async def publish_snapshot(self, device_name: str, snapshot: DeviceSnapshot) -> bool:
        """Publish one snapshot, retained. Failures are logged and reported as False."""
        payload = snapshot.to_payload(now_ms())
        ok = await self.client.publish(
            self.state_topic(device_name),
            json.dumps(payload).encode(),
            qos=PUBLISH_QOS,
            retain=True,
        )
        metrics.record_publish(device_name, "success" if ok else "error")
        if ok:
            logger.debug(
                "%s published state",
                self.client.lp,
                extra={"device": device_name, "connected": snapshot.connected},
            )
        return ok

    async def publish_device(self, link: DeviceLink) -> bool:
        """Publish the current snapshot of one device link."""
        return await self.publish_snapshot(link.name, link.store.snapshot())

    async def publish_all(self) -> int:
        """Publish every device snapshot in configuration order. Returns the success count."""
        published = 0
        for link in self.client.links.values():
            if await self.publish_device(link):
                published += 1
        logger.debug("%s published %d/%d device states", self.client.lp, published, len(self.client.links))
        return published
