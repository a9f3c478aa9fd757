"""Device side of the bridge: per-device links and the Tuya LAN client."""

from .device_link import DeviceClientFactory, DeviceLink
from .tuya_client import TuyaDeviceClient

__all__ = [
    "DeviceClientFactory",
    "DeviceLink",
    "TuyaDeviceClient",
]
