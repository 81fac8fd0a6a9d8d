"""MQTT package for the spa bridge.

- client.py: MQTTClient with the broker connection lifecycle
- command_routing.py: inbound message handling
- state_updates.py: retained spa and component state
- discovery.py: Home Assistant discovery configs
"""

from .client import MQTTClient
from .command_routing import CommandRouter
from .discovery import DiscoveryHelper
from .state_updates import StateUpdateHelper

__all__ = [
    "CommandRouter",
    "DiscoveryHelper",
    "MQTTClient",
    "StateUpdateHelper",
]
