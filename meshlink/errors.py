"""Exception types raised by the meshlink session core."""


class MeshLinkError(Exception):
    """Base class for all meshlink failures."""


class TransportError(MeshLinkError):
    """Base class for transport-layer failures."""


class InvalidAddress(TransportError):
    """A transport address is required but missing or malformed."""


class DeviceUnavailable(TransportError):
    """No device was found, or the user cancelled device selection."""


class TransportIOError(TransportError):
    """Lower-level I/O failure while opening or using a transport."""


class NotConnected(MeshLinkError):
    """A command was issued while no transport handle is held."""

    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class ConfigurationTimeout(MeshLinkError):
    """The configuration handshake did not complete in time."""


class DeliveryFailed(MeshLinkError):
    """A sent message was negatively acknowledged or timed out."""

    def __init__(self, packet_id: int, reason: str):
        super().__init__(f"Delivery of packet {packet_id} failed: {reason}")
        self.packet_id = packet_id
        self.reason = reason
