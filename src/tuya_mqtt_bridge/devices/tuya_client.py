"""LAN Tuya device client built on tinytuya.

tinytuya talks to the device over a blocking socket, so every call runs in a
worker thread via ``asyncio.to_thread``. The client never touches the state
store directly: it reports what happens as ``DeviceEvent`` values through the
``emit`` callback handed to it by its device link.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Mapping
from typing import Any, Final

import tinytuya

from tuya_mqtt_bridge.const import DEFAULT_DEVICE_SOCKET_TIMEOUT
from tuya_mqtt_bridge.exceptions import CommandSendError, DeviceConnectionError
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.structs import (
    DeviceConfig,
    DeviceConnected,
    DeviceDataUpdate,
    DeviceDisconnected,
    DeviceError,
    DeviceEvent,
)

logger = get_logger(__name__)

# tinytuya error codes, reported as strings in the "Err" field of a response
ERR_CONNECT: Final = "901"
ERR_TIMEOUT: Final = "902"
ERR_OFFLINE: Final = "905"
ERR_KEY_OR_VER: Final = "914"
LINK_LOST_ERRORS: Final = frozenset({ERR_CONNECT, ERR_OFFLINE, ERR_KEY_OR_VER})

EventSink = Callable[[DeviceEvent], None]


def response_error(response: object) -> tuple[str, str] | None:
    """Return ``(code, message)`` if a tinytuya response is an error report."""
    if isinstance(response, Mapping) and response.get("Err"):
        return str(response["Err"]), str(response.get("Error", "unknown error"))
    return None


def response_data_points(response: object) -> dict[str, Any] | None:
    """Extract the data-point mapping from a tinytuya response, if it carries one."""
    if not isinstance(response, Mapping):
        return None
    dps = response.get("dps")
    if not isinstance(dps, Mapping) or not dps:
        return None
    return {str(key): value for key, value in dps.items()}


class TuyaDeviceClient:
    """Persistent LAN connection to one Tuya device.

    ``connect()`` opens the socket and reads the full status, which is reported
    as ``DeviceConnected`` followed by a refresh ``DeviceDataUpdate``. A reader
    task then relays spontaneous reports until the link drops, at which point a
    ``DeviceDisconnected`` is emitted. A failed connect attempt emits a
    ``DeviceError`` followed by ``DeviceDisconnected``.
    """

    lp: str = "tuya:"

    def __init__(
        self,
        device: DeviceConfig,
        emit: EventSink,
        socket_timeout: float = DEFAULT_DEVICE_SOCKET_TIMEOUT,
    ) -> None:
        self.device: DeviceConfig = device
        self.emit: EventSink = emit
        self.socket_timeout: float = socket_timeout
        self.lp = f"{self.lp}{device.name}:"
        self._tuya: tinytuya.Device | None = None
        self._connected: bool = False
        self._connect_lock: asyncio.Lock = asyncio.Lock()
        # commands and socket release never overlap
        self._io_lock: asyncio.Lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None

    def _open(self) -> tuple[tinytuya.Device, Any]:
        tuya = tinytuya.Device(
            dev_id=self.device.id,
            address=self.device.ip,
            local_key=self.device.key,
            version=self.device.protocol_version,
            persist=True,
            connection_timeout=self.socket_timeout,
            connection_retry_limit=1,
        )
        tuya.set_socketTimeout(self.socket_timeout)
        return tuya, tuya.status()

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open the device link and read its full status.

        Concurrent calls collapse into one attempt; a call while connected is a no-op.
        """
        lp = f"{self.lp}connect:"
        if self._connect_lock.locked():
            logger.debug("%s connect already in progress", lp)
            return
        async with self._connect_lock:
            if self._connected:
                return
            logger.debug("%s connecting to %s (v%s)", lp, self.device.ip, self.device.version)
            try:
                tuya, response = await asyncio.to_thread(self._open)
            except Exception as e:
                self._connect_failed(DeviceConnectionError(self.device.name, str(e)))
                return

            error = response_error(response)
            if error is not None:
                code, message = error
                await asyncio.to_thread(tuya.close)
                self._connect_failed(DeviceConnectionError(self.device.name, f"[{code}] {message}"))
                return

            self._tuya = tuya
            self._connected = True
            logger.info("%s connected to %s", lp, self.device.ip)
            self.emit(DeviceConnected())
            data_points = response_data_points(response)
            if data_points:
                self.emit(DeviceDataUpdate(data_points, refresh=True))
            self._reader_task = asyncio.create_task(self._read_loop(tuya), name=f"TuyaReader_{self.device.name}")

    def _connect_failed(self, error: DeviceConnectionError) -> None:
        logger.debug("%s connect failed: %s", self.lp, error.reason)
        self.emit(DeviceError(error))
        self.emit(DeviceDisconnected())

    async def _read_loop(self, tuya: tinytuya.Device) -> None:
        """Relay device reports until the link drops. Idle periods send a heartbeat."""
        lp = f"{self.lp}reader:"
        try:
            while True:
                try:
                    response = await asyncio.to_thread(tuya.receive)
                    error = response_error(response)
                    if response is None or (error is not None and error[0] == ERR_TIMEOUT):
                        _ = await asyncio.to_thread(tuya.heartbeat, nowait=True)
                        continue
                except Exception as e:
                    logger.debug("%s socket failure: %s", lp, e)
                    await self._link_lost(str(e))
                    return

                if error is not None:
                    code, message = error
                    if code in LINK_LOST_ERRORS:
                        await self._link_lost(f"[{code}] {message}")
                        return
                    self.emit(DeviceError(DeviceConnectionError(self.device.name, f"[{code}] {message}")))
                    continue

                data_points = response_data_points(response)
                if data_points:
                    logger.debug("%s <<< %s", lp, data_points)
                    self.emit(DeviceDataUpdate(data_points))
        except asyncio.CancelledError:
            logger.debug("%s reader cancelled", lp)
            raise

    async def _link_lost(self, reason: str) -> None:
        logger.info("%s link lost: %s", self.lp, reason)
        await self._release()
        self.emit(DeviceDisconnected())

    async def _release(self) -> None:
        self._connected = False
        async with self._io_lock:
            tuya, self._tuya = self._tuya, None
            if tuya is not None:
                with contextlib.suppress(OSError):
                    await asyncio.to_thread(tuya.close)

    async def send(self, command: Mapping[str, Any]) -> None:
        """Write data points to the device in one control message.

        Raises:
            CommandSendError: If the link is down or the device reports an error

        """
        async with self._io_lock:
            tuya = self._tuya
            if tuya is None or not self._connected:
                raise CommandSendError(self.device.name, "device is not connected")
            try:
                response = await asyncio.to_thread(tuya.set_multiple_values, dict(command), nowait=True)
            except Exception as e:
                raise CommandSendError(self.device.name, str(e)) from e
        error = response_error(response)
        if error is not None:
            code, message = error
            raise CommandSendError(self.device.name, f"[{code}] {message}")

    async def close(self) -> None:
        """Stop the reader and close the socket. Emits nothing."""
        if self._reader_task is not None and not self._reader_task.done():
            _ = self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._reader_task = None
        await self._release()
