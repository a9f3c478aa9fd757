"""Bridge wiring and lifecycle.

``BridgeServer`` owns the broker link, one device link per configured device
and the reconciler, starts them on the running event loop and tears them down
when the shutdown event is set.
"""

from __future__ import annotations

import asyncio
import contextlib
from functools import partial

from tuya_mqtt_bridge.config import BridgeConfig
from tuya_mqtt_bridge.const import MQTT_CLIENT_START_TASK_NAME, RECONCILE_TASK_NAME
from tuya_mqtt_bridge.devices import DeviceClientFactory, DeviceLink, TuyaDeviceClient
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.mqtt import MQTTClient
from tuya_mqtt_bridge.reconciler import Reconciler

logger = get_logger(__name__)


class BridgeServer:
    lp: str = "bridge:"

    def __init__(self, config: BridgeConfig, client_factory: DeviceClientFactory | None = None) -> None:
        self.config: BridgeConfig = config
        if client_factory is None:
            client_factory = partial(TuyaDeviceClient, socket_timeout=config.device_socket_timeout)
        self.shutdown_event: asyncio.Event = asyncio.Event()
        self.mqtt_client: MQTTClient = MQTTClient(config)
        self.links: list[DeviceLink] = [
            DeviceLink(device, client_factory, self.mqtt_client.state_updates) for device in config.devices
        ]
        self.mqtt_client.attach_links(self.links)
        self.reconciler: Reconciler = Reconciler(
            self.links,
            self.mqtt_client.state_updates,
            interval=config.reconcile_interval,
            shutdown_event=self.shutdown_event,
        )
        self.reconcile_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start every link and the reconciler, then serve until shutdown is requested."""
        lp = f"{self.lp}start:"
        logger.info(
            "%s starting bridge for %d device(s)",
            lp,
            len(self.links),
            extra={"root_topic": self.config.root_topic},
        )
        for link in self.links:
            _ = link.start()
            _ = link.request_connect()

        self.mqtt_client.start_task = asyncio.create_task(self.mqtt_client.start(), name=MQTT_CLIENT_START_TASK_NAME)
        self.reconcile_task = asyncio.create_task(self.reconciler.run(), name=RECONCILE_TASK_NAME)

        try:
            _ = await self.shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            logger.info("%s shutdown requested", self.lp)
            self.shutdown_event.set()

    async def stop(self) -> None:
        """Cancel timers, stop device links and disconnect from the broker."""
        lp = f"{self.lp}stop:"
        self.shutdown_event.set()
        if self.reconcile_task is not None and not self.reconcile_task.done():
            _ = self.reconcile_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.reconcile_task
        for link in self.links:
            await link.stop()
        await self.mqtt_client.stop()
        logger.info("%s bridge stopped", lp)
