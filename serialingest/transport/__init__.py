"""Serial and HTTP transports for the serial ingest bridge."""

from .http import Ack, DeliveryClient, DeliveryFailed, DeliveryFailureKind
from .serial import ConnectionLost, ConnectionOpenFailed, ConnectionSupervisor

__all__ = [
    "Ack",
    "ConnectionLost",
    "ConnectionOpenFailed",
    "ConnectionSupervisor",
    "DeliveryClient",
    "DeliveryFailed",
    "DeliveryFailureKind",
]
