"""Adapter modules for external integrations."""

from .api import MachineApiClient, MachineApiError
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "MachineApiClient",
    "MachineApiError",
    "MQTTClient",
    "MQTTConnectionError",
]
