"""Periodic reconciliation of broker-visible state and device links.

Every tick republishes each device snapshot unconditionally, which heals any
publish lost while the broker was unreachable, and issues a reconnect attempt
for every device whose client reports it is not connected. There is no
backoff: a failed attempt is simply retried on the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from typing import TYPE_CHECKING

from tuya_mqtt_bridge.const import DEFAULT_RECONCILE_INTERVAL
from tuya_mqtt_bridge.correlation import correlation_scope
from tuya_mqtt_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from tuya_mqtt_bridge.devices.device_link import DeviceLink
    from tuya_mqtt_bridge.mqtt.state_updates import StateUpdateHelper

logger = get_logger(__name__)


class Reconciler:
    lp: str = "reconciler:"

    def __init__(
        self,
        links: Sequence[DeviceLink],
        publisher: StateUpdateHelper,
        interval: float = DEFAULT_RECONCILE_INTERVAL,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        self.links: Sequence[DeviceLink] = links
        self.publisher: StateUpdateHelper = publisher
        self.interval: float = interval
        self.shutdown_event: asyncio.Event = shutdown_event or asyncio.Event()

    async def tick(self) -> int:
        """Run one reconciliation pass. Returns the number of reconnects issued."""
        lp = f"{self.lp}tick:"
        for link in self.links:
            _ = await self.publisher.publish_device(link)

        reconnects = 0
        for link in self.links:
            if not link.is_connected() and link.request_reconnect() is not None:
                reconnects += 1
        if reconnects:
            logger.debug("%s issued %d reconnect attempt(s)", lp, reconnects)
        return reconnects

    async def run(self) -> None:
        """Tick every ``interval`` seconds until the shutdown event is set."""
        lp = f"{self.lp}run:"
        logger.debug("%s reconciling every %s seconds", lp, self.interval)
        while not self.shutdown_event.is_set():
            with contextlib.suppress(TimeoutError):
                _ = await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.interval)
            if self.shutdown_event.is_set():
                break
            with correlation_scope("tick"):
                try:
                    _ = await self.tick()
                except Exception:
                    logger.exception("%s reconcile tick failed", lp)
        logger.debug("%s stopped", lp)
