"""Data model and abstract client interface for mesh sessions.

The records in this module are what the session core accumulates from
protocol events and what it hands to persistence and presentation. The
``MeshInterface`` base class carries the status and callback plumbing shared
by client implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Optional
import asyncio
import inspect
import logging
import time

logger = logging.getLogger(__name__)

BROADCAST_NUM = 0xFFFFFFFF


class SessionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONFIGURED = "configured"
    STALE = "stale"
    RECONNECTING = "reconnecting"


class TransportKind(str, Enum):
    BLE = "ble"
    SERIAL = "serial"
    TCP = "tcp"

    @classmethod
    def parse(cls, value: "str | TransportKind") -> "TransportKind":
        """Accept enum members, values and the legacy network names."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name in ("http", "network"):
            return cls.TCP
        return cls(name)


class DeliveryStatus(Enum):
    SENDING = "sending"
    ACKED = "acked"
    FAILED = "failed"


class ChannelRole(IntEnum):
    DISABLED = 0
    PRIMARY = 1
    SECONDARY = 2


@dataclass(frozen=True)
class ConnectionParameters:
    """What the user asked to connect to; fixed for one logical session."""
    kind: TransportKind
    address: Optional[str] = None


@dataclass
class NodeRecord:
    """A node on the mesh, merged field by field as packets arrive."""
    node_id: int
    long_name: str = ""
    short_name: str = ""
    hw_model: str = ""
    snr: float = 0.0
    battery: int = 0
    last_heard: float = field(default_factory=time.time)
    latitude: float = 0.0
    longitude: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MessageRecord:
    """A sent or received text payload."""
    sender_id: int
    sender_name: str
    payload: str
    channel: int = 0
    timestamp: float = field(default_factory=time.time)
    packet_id: Optional[int] = None
    # Only set for messages this node originated
    status: Optional[DeliveryStatus] = None
    error: Optional[str] = None
    emoji: Optional[int] = None
    reply_id: Optional[int] = None
    to: Optional[int] = None  # None for broadcast
    id: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        return data


@dataclass
class ChannelDefinition:
    index: int
    name: str = ""
    role: ChannelRole = ChannelRole.DISABLED
    psk: bytes = b"\x01"

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "name": self.name,
            "role": self.role.name.lower(),
            "psk": self.psk.hex(),
        }


@dataclass
class TelemetryPoint:
    timestamp: float = field(default_factory=time.time)
    battery_level: Optional[int] = None
    voltage: Optional[float] = None
    snr: Optional[float] = None
    rssi: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class EventKind(Enum):
    DEVICE_STATUS = "device_status"
    IDENTITY = "identity"
    NODE_INFO = "node_info"
    POSITION = "position"
    TELEMETRY = "telemetry"
    CHANNEL = "channel"
    MESSAGE = "message"
    MESH_HEARTBEAT = "mesh_heartbeat"
    DELIVERY = "delivery"


class DeviceStatus(Enum):
    """Device-reported connection phases carried by DEVICE_STATUS events."""
    CONFIGURED = "configured"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ProtocolEvent:
    """A normalized protocol-level event."""
    kind: EventKind
    data: dict = field(default_factory=dict)


@dataclass
class SessionContext:
    """State shared by every handler of one transport session."""
    params: ConnectionParameters
    generation: int
    my_node_num: int = 0
    last_event_at: float = 0.0
    clock: Callable[[], float] = time.monotonic

    def touch(self) -> float:
        """Stamp the liveness timestamp; stamps are strictly increasing."""
        now = self.clock()
        if now <= self.last_event_at:
            now = self.last_event_at + 1e-6
        self.last_event_at = now
        return now


class MeshInterface(ABC):
    """Abstract base class for mesh session clients.

    Holds the session status and the consumer callbacks. Callbacks are
    registered with the ``on_*`` methods, each of which returns a callable
    that removes the registration again.
    """

    def __init__(self):
        self._status_callbacks: list[Callable[[SessionStatus], Any]] = []
        self._message_callbacks: list[Callable[[MessageRecord], Any]] = []
        self._message_status_callbacks: list[Callable[[MessageRecord], Any]] = []
        self._node_callbacks: list[Callable[[NodeRecord], Any]] = []
        self._save_callbacks: list[Callable[[Any], Any]] = []
        self._removed_callbacks: list[Callable[[int], Any]] = []
        self._status = SessionStatus.DISCONNECTED

    @property
    def status(self) -> SessionStatus:
        """Current session status."""
        return self._status

    # Connection methods
    @abstractmethod
    async def connect(self, kind: "str | TransportKind", address: Optional[str] = None) -> None:
        """Open a transport and configure a session on it."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the session and cancel any reconnection."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if a transport handle is currently held."""

    # Messaging methods
    @abstractmethod
    async def send_message(
        self,
        text: str,
        channel: int = 0,
        destination: Optional[int] = None,
    ) -> MessageRecord:
        """Send a text message and track its delivery status."""

    # Callback registration
    def on_status_change(self, callback: Callable[[SessionStatus], Any]) -> Callable[[], None]:
        """Register a callback for session status transitions."""
        return self._register(self._status_callbacks, callback)

    def on_message(self, callback: Callable[[MessageRecord], Any]) -> Callable[[], None]:
        """Register a callback for new messages."""
        return self._register(self._message_callbacks, callback)

    def on_message_status(self, callback: Callable[[MessageRecord], Any]) -> Callable[[], None]:
        """Register a callback for delivery status changes of sent messages."""
        return self._register(self._message_status_callbacks, callback)

    def on_node_update(self, callback: Callable[[NodeRecord], Any]) -> Callable[[], None]:
        """Register a callback for node record changes."""
        return self._register(self._node_callbacks, callback)

    def on_save(self, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register a persistence callback, called with every mutated record."""
        return self._register(self._save_callbacks, callback)

    def on_node_removed(self, callback: Callable[[int], Any]) -> Callable[[], None]:
        """Register a callback for explicit node removals."""
        return self._register(self._removed_callbacks, callback)

    @staticmethod
    def _register(callbacks: list, callback: Callable) -> Callable[[], None]:
        callbacks.append(callback)

        def unregister() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unregister

    # Internal callback dispatch
    def _dispatch(self, callbacks: list, *args) -> None:
        """Call every callback, scheduling coroutine results on the loop."""
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    task.add_done_callback(_log_task_failure)
            except Exception:
                logger.exception(f"Error in {getattr(callback, '__name__', 'callback')}")

    def _set_status(self, status: SessionStatus) -> None:
        """Update session status and notify callbacks."""
        if status == self._status:
            return
        logger.info(f"Session status: {self._status.value} -> {status.value}")
        self._status = status
        self._dispatch(self._status_callbacks, status)


def _log_task_failure(task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Callback task failed: {task.exception()!r}")
