"""
Shared fixtures for unit tests.

No network is touched: the aiomqtt client is a mock and device clients are
in-memory fakes that emit events on demand.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Mapping
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Console output only; the default format also writes app.log to the working directory
os.environ["APP_LOG_FORMAT"] = "human"

from tuya_mqtt_bridge.config import BridgeConfig, BrokerSettings
from tuya_mqtt_bridge.devices.device_link import DeviceLink
from tuya_mqtt_bridge.mqtt.client import MQTTClient
from tuya_mqtt_bridge.structs import (
    DeviceConfig,
    DeviceConnected,
    DeviceDisconnected,
    DeviceError,
    DeviceEvent,
)


class FakeDeviceClient:
    """In-memory device client.

    ``connect()`` reports success or failure as events, the way a real client
    does; ``send()`` records commands or raises the configured error.
    """

    def __init__(self, device: DeviceConfig, emit: Callable[[DeviceEvent], None]) -> None:
        self.device = device
        self.emit = emit
        self.connected = False
        self.connect_succeeds = True
        self.connect_calls = 0
        self.sent: list[dict[str, Any]] = []
        self.send_error: Exception | None = None
        self.closed = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_succeeds:
            self.connected = True
            self.emit(DeviceConnected())
        else:
            self.emit(DeviceError(OSError("unreachable")))
            self.emit(DeviceDisconnected())

    def is_connected(self) -> bool:
        return self.connected

    async def send(self, command: Mapping[str, Any]) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(dict(command))

    async def close(self) -> None:
        self.closed = True
        self.connected = False


@pytest.fixture
def fake_clients():
    """Registry of FakeDeviceClient instances keyed by device name."""
    return {}


@pytest.fixture
def fake_client_factory(fake_clients):
    """Device client factory that records every client it builds."""

    def factory(device: DeviceConfig, emit: Callable[[DeviceEvent], None]) -> FakeDeviceClient:
        client = FakeDeviceClient(device, emit)
        fake_clients[device.name] = client
        return client

    return factory


@pytest.fixture
def lamp1_config():
    return DeviceConfig(name="lamp1", id="bf0123456789abcdef01", key="0123456789abcdef", ip="192.168.1.50")


@pytest.fixture
def lamp2_config():
    return DeviceConfig(name="lamp2", id="bf0123456789abcdef02", key="fedcba9876543210", ip="192.168.1.51", version="3.4")


@pytest.fixture
def bridge_config(lamp1_config, lamp2_config):
    """Bridge configuration with two devices and fast timers."""
    return BridgeConfig(
        broker=BrokerSettings(host="broker.local", port=1883, client_id="test-client", conn_delay=0.01),
        root_topic="tuyapi",
        devices=(lamp1_config, lamp2_config),
        reconcile_interval=0.05,
        device_socket_timeout=1.0,
    )


@pytest.fixture
def mock_aiomqtt_client():
    """
    Mock aiomqtt.Client.

    Returns a MagicMock with the async methods the bridge calls.
    """
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.publish = AsyncMock()
    client.subscribe = AsyncMock()
    return client


@pytest.fixture
def mqtt_client(bridge_config, mock_aiomqtt_client, fake_client_factory):
    """MQTTClient with a live mock session and both device links attached."""
    client = MQTTClient(bridge_config)
    client.client = mock_aiomqtt_client
    links = [DeviceLink(device, fake_client_factory, client.state_updates) for device in bridge_config.devices]
    client.attach_links(links)
    return client


@pytest.fixture
def published():
    """Decoder turning every publish call on a mock client into (topic, payload, kwargs)."""

    def decode(mock_client: MagicMock) -> list[tuple[str, dict[str, Any], dict[str, Any]]]:
        return [
            (call.args[0], json.loads(call.args[1]), dict(call.kwargs)) for call in mock_client.publish.call_args_list
        ]

    return decode
