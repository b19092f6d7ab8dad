"""MQTT / Home Assistant surface of the bridge.

- client.py: MQTTClient with connection lifecycle and the device event publisher
- discovery.py: Home Assistant discovery configs
- command_routing.py: inbound command topics
- state_updates.py: device value publishing
"""

from .client import MQTTClient
from .command_routing import CommandRouter
from .discovery import DiscoveryHelper, slugify
from .state_updates import StateUpdateHelper

__all__ = [
    "CommandRouter",
    "DiscoveryHelper",
    "MQTTClient",
    "StateUpdateHelper",
    "slugify",
]
