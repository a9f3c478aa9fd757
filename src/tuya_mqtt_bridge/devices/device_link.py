"""Device link: one configured device, its client, state tracker and snapshot.

Device clients emit events from wherever they run; the link queues them and a
single handler task applies them in emission order. That handler is the only
writer of the device's snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from tuya_mqtt_bridge import metrics
from tuya_mqtt_bridge.correlation import correlation_scope
from tuya_mqtt_bridge.device_store import DeviceStateStore
from tuya_mqtt_bridge.exceptions import CommandSendError
from tuya_mqtt_bridge.link_state import ConnectionStateTracker
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.structs import (
    DeviceClientProtocol,
    DeviceConfig,
    DeviceConnected,
    DeviceDataUpdate,
    DeviceDisconnected,
    DeviceError,
    DeviceEvent,
    LinkState,
)

if TYPE_CHECKING:
    from tuya_mqtt_bridge.mqtt.state_updates import StateUpdateHelper

logger = get_logger(__name__)

DeviceClientFactory = Callable[[DeviceConfig, Callable[[DeviceEvent], None]], DeviceClientProtocol]


class DeviceLink:
    lp: str = "device:"

    def __init__(
        self,
        device: DeviceConfig,
        client_factory: DeviceClientFactory,
        publisher: StateUpdateHelper,
    ) -> None:
        self.device: DeviceConfig = device
        self.name: str = device.name
        self.lp = f"{self.lp}{device.name}:"
        self.store: DeviceStateStore = DeviceStateStore(device)
        self.tracker: ConnectionStateTracker = ConnectionStateTracker(f"device:{device.name}")
        self.tracker.add_observer(self._log_transition)
        self.publisher: StateUpdateHelper = publisher
        self.queue: asyncio.Queue[DeviceEvent] = asyncio.Queue()
        self.client: DeviceClientProtocol = client_factory(device, self.emit)
        self.handler_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"DeviceLink(name={self.name!r}, state={self.tracker.state.value!r})"

    def _log_transition(self, state: LinkState) -> None:
        logger.info("Tuya device '%s' client %s.", self.name, state.value)

    def emit(self, event: DeviceEvent) -> None:
        """Queue an event from the device client for the handler task."""
        self.queue.put_nowait(event)

    def is_connected(self) -> bool:
        return self.client.is_connected()

    def start(self) -> asyncio.Task[None]:
        """Spawn the event handler task."""
        if self.handler_task is None or self.handler_task.done():
            self.handler_task = asyncio.create_task(self.run(), name=f"DeviceLink_{self.name}")
        return self.handler_task

    async def run(self) -> None:
        """Apply queued events one at a time, in emission order, until cancelled."""
        while True:
            event = await self.queue.get()
            with correlation_scope("dev"):
                try:
                    await self.handle_event(event)
                except Exception:
                    logger.exception("%s failed handling %s", self.lp, type(event).__name__)
                finally:
                    self.queue.task_done()

    async def handle_event(self, event: DeviceEvent) -> None:
        """Apply one event to tracker and store, then publish the snapshot.

        Error events are logged and change nothing.
        """
        if isinstance(event, DeviceError):
            logger.error("%s device client error: %s", self.lp, event.error)
            return

        if isinstance(event, DeviceConnected):
            _ = self.tracker.on_connect()
            self.store.apply_connected()
        elif isinstance(event, DeviceDataUpdate):
            logger.debug(
                "%s data%s: %s",
                self.lp,
                " (refresh)" if event.refresh else "",
                dict(event.data_points),
            )
            self.store.apply_data(event.data_points)
        elif isinstance(event, DeviceDisconnected):
            _ = self.tracker.on_close()
            self.store.apply_disconnected()
        else:
            logger.warning("%s unknown event type: %r", self.lp, event)
            return

        _ = await self.publisher.publish_device(self)

    def request_connect(self) -> asyncio.Task[None] | None:
        """Fire-and-forget connect attempt. Skipped while a previous attempt is running."""
        if self._connect_task is not None and not self._connect_task.done():
            logger.debug("%s connect attempt still running, skipping", self.lp)
            return None
        self._connect_task = asyncio.create_task(self._connect(), name=f"DeviceConnect_{self.name}")
        return self._connect_task

    def request_reconnect(self) -> asyncio.Task[None] | None:
        """Reconnect attempt issued by the reconciler for a link that is down."""
        task = self.request_connect()
        if task is not None:
            metrics.record_reconnect_attempt(self.name)
            logger.debug("%s reconnect attempt issued", self.lp)
        return task

    async def _connect(self) -> None:
        try:
            await self.client.connect()
        except Exception as e:
            # outcome is normally reported as events; this only catches client bugs
            logger.error("%s connect attempt raised: %s", self.lp, e, exc_info=True)

    async def send_command(self, command: Mapping[str, Any]) -> None:
        """Forward a data-point command to the device client.

        Raises:
            CommandSendError: If the device client fails to deliver it

        """
        try:
            await self.client.send(command)
        except CommandSendError:
            raise
        except Exception as e:
            raise CommandSendError(self.name, str(e)) from e

    async def stop(self) -> None:
        """Cancel pending work and close the device client."""
        for task in (self._connect_task, self.handler_task):
            if task is not None and not task.done():
                _ = task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._connect_task = None
        self.handler_task = None
        try:
            await self.client.close()
        except Exception as e:
            logger.warning("%s closing device client failed: %s", self.lp, e)
