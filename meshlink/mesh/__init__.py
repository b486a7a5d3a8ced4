"""Session lifecycle and connection resilience for Meshtastic devices.

- transports: opening BLE, serial and TCP links
- session: event subscriptions, configuration handshake and teardown
- watchdog: liveness escalation for silent transport failures
- supervisor: reconnection with bounded backoff
- client: the facade everything else talks to
"""

from .base import (
    ChannelDefinition,
    ChannelRole,
    ConnectionParameters,
    DeliveryStatus,
    MeshInterface,
    MessageRecord,
    NodeRecord,
    SessionStatus,
    TelemetryPoint,
    TransportKind,
)
from .client import MeshClient
from .selection import DeviceCandidate, DeviceSelector
from .transports import TransportFactory, TransportHandle

__all__ = [
    "ChannelDefinition",
    "ChannelRole",
    "ConnectionParameters",
    "DeliveryStatus",
    "DeviceCandidate",
    "DeviceSelector",
    "MeshClient",
    "MeshInterface",
    "MessageRecord",
    "NodeRecord",
    "SessionStatus",
    "TelemetryPoint",
    "TransportFactory",
    "TransportHandle",
    "TransportKind",
]
