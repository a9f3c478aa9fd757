"""Per-device state snapshot with last-write-wins data-point merging."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any

from tuya_mqtt_bridge.structs import DataPoints, DeviceConfig, DeviceSnapshot


class DeviceStateStore:
    """Mutable connectivity flag and merged data points for one device.

    Data points only grow or get overwritten; a disconnect keeps the last
    known values so the broker keeps seeing them next to ``connected: false``.
    Keys are normalized to strings, the form they take on the wire.
    """

    def __init__(self, device: DeviceConfig) -> None:
        self.device: DeviceConfig = device
        self.connected: bool = False
        self._data_points: dict[str, Any] = {}

    def apply_connected(self) -> None:
        self.connected = True

    def apply_data(self, partial: DataPoints) -> None:
        """Mark connected and overwrite each key present in ``partial``."""
        self.connected = True
        for key, value in partial.items():
            self._data_points[str(key)] = value

    def apply_disconnected(self) -> None:
        self.connected = False

    def snapshot(self) -> DeviceSnapshot:
        """Return an immutable copy, isolated from later mutations."""
        return DeviceSnapshot(
            connected=self.connected,
            data_points=MappingProxyType(dict(self._data_points)),
        )

    def __repr__(self) -> str:
        return f"DeviceStateStore(device={self.device.name!r}, connected={self.connected}, data_points={len(self._data_points)})"
