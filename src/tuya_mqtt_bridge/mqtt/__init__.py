"""MQTT side of the bridge.

- client.py: MQTTClient, the broker link and its connection lifecycle
- state_updates.py: retained device state publishing
- command_routing.py: ``set-state`` command routing to device links
"""

from .client import MQTTClient
from .command_routing import CommandRouter
from .state_updates import StateUpdateHelper

__all__ = [
    "CommandRouter",
    "MQTTClient",
    "StateUpdateHelper",
]
