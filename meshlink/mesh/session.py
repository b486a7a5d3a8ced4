"""One transport session with a Meshtastic device.

A ``Session`` subscribes to the meshtastic pubsub topics, drives the
configuration handshake on a transport handle, and republishes what the
library reports as normalized ``ProtocolEvent``s. Library callbacks arrive on
meshtastic's reader and publishing threads; they are translated there and
handed to the asyncio loop, so domain state is only ever touched from the
loop thread.
"""

from contextlib import ExitStack
from typing import Any, Callable, Iterable, Optional
import asyncio
import logging

from pubsub import pub

from .base import DeviceStatus, EventKind, ProtocolEvent, SessionContext
from .state import DomainState, StateChanges
from .transports import TransportFactory, TransportHandle, close_quietly, is_retired
from ..errors import ConfigurationTimeout, NotConnected, TransportIOError

logger = logging.getLogger(__name__)

EventCallback = Callable[[ProtocolEvent, StateChanges], None]


# Packet translation; these run on the library's threads
def heartbeat_event(packet: dict) -> Optional[ProtocolEvent]:
    return ProtocolEvent(EventKind.MESH_HEARTBEAT, {
        "from": packet.get("from"),
        "rx_snr": packet.get("rxSnr"),
        "rx_rssi": packet.get("rxRssi"),
    })


def message_event(packet: dict) -> Optional[ProtocolEvent]:
    decoded = packet.get("decoded") or {}
    return ProtocolEvent(EventKind.MESSAGE, {
        "from": packet.get("from"),
        "to": packet.get("to"),
        "id": packet.get("id"),
        "channel": packet.get("channel", 0),
        "text": decoded.get("text", ""),
        "rx_time": packet.get("rxTime"),
        "reply_id": decoded.get("replyId"),
        "emoji": decoded.get("emoji"),
    })


def position_event(packet: dict) -> Optional[ProtocolEvent]:
    position = (packet.get("decoded") or {}).get("position") or {}
    return ProtocolEvent(EventKind.POSITION, {
        "from": packet.get("from"),
        "latitude_i": position.get("latitudeI"),
        "longitude_i": position.get("longitudeI"),
        "latitude": position.get("latitude"),
        "longitude": position.get("longitude"),
    })


def user_event(packet: dict) -> Optional[ProtocolEvent]:
    user = (packet.get("decoded") or {}).get("user")
    if not user:
        return None
    return ProtocolEvent(EventKind.NODE_INFO, {"num": packet.get("from"), "user": user})


def telemetry_event(packet: dict) -> Optional[ProtocolEvent]:
    telemetry = (packet.get("decoded") or {}).get("telemetry") or {}
    metrics = telemetry.get("deviceMetrics")
    if not metrics:
        return None
    return ProtocolEvent(EventKind.TELEMETRY, {
        "from": packet.get("from"),
        "battery_level": metrics.get("batteryLevel"),
        "voltage": metrics.get("voltage"),
    })


def delivery_event(packet: dict) -> Optional[ProtocolEvent]:
    decoded = packet.get("decoded") or {}
    request_id = decoded.get("requestId")
    if not request_id:
        return None
    routing = decoded.get("routing") or {}
    return ProtocolEvent(EventKind.DELIVERY, {
        "request_id": request_id,
        "error_reason": routing.get("errorReason", "NONE"),
        "from": packet.get("from"),
    })


def node_event(node: dict) -> Optional[ProtocolEvent]:
    if not node.get("num"):
        return None
    return ProtocolEvent(EventKind.NODE_INFO, {
        "num": node.get("num"),
        "user": node.get("user"),
        "snr": node.get("snr"),
        "position": node.get("position"),
        "device_metrics": node.get("deviceMetrics"),
        "last_heard": node.get("lastHeard"),
    })


def configured_events(interface: Any) -> list[ProtocolEvent]:
    """Events describing a freshly configured device: identity and channels."""
    events = [ProtocolEvent(EventKind.DEVICE_STATUS, {"status": DeviceStatus.CONFIGURED})]
    my_info = getattr(interface, "myInfo", None)
    my_num = getattr(my_info, "my_node_num", None)
    if my_num:
        events.append(ProtocolEvent(EventKind.IDENTITY, {"my_node_num": my_num}))
    local_node = getattr(interface, "localNode", None)
    for channel in getattr(local_node, "channels", None) or []:
        settings = getattr(channel, "settings", None)
        events.append(ProtocolEvent(EventKind.CHANNEL, {
            "index": getattr(channel, "index", None),
            "name": getattr(settings, "name", ""),
            "role": int(getattr(channel, "role", 0)),
            "psk": bytes(getattr(settings, "psk", b"") or b""),
        }))
    return events


def lost_events(interface: Any) -> list[ProtocolEvent]:
    return [ProtocolEvent(EventKind.DEVICE_STATUS, {"status": DeviceStatus.DISCONNECTED})]


def _unsubscribe(listener: Callable, topic: str) -> None:
    try:
        pub.unsubscribe(listener, topic)
    except Exception as e:
        logger.debug(f"Unsubscribe from {topic} failed: {e}")


class Session:
    """Subscriptions, handshake and teardown for one transport handle."""

    def __init__(
        self,
        ctx: SessionContext,
        state: DomainState,
        on_event: EventCallback,
        handshake_timeout: float = 60.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.ctx = ctx
        self.state = state
        self._on_event = on_event
        self._handshake_timeout = handshake_timeout
        self._loop = loop or asyncio.get_running_loop()
        self._subscriptions = ExitStack()
        self._attached = False
        self._handle: Optional[TransportHandle] = None
        self._configured = asyncio.Event()
        self._released = asyncio.Event()
        self._closed = False

    @property
    def handle(self) -> Optional[TransportHandle]:
        return self._handle

    @property
    def configured(self) -> bool:
        return self._configured.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self) -> None:
        """Subscribe every listener; must precede the configuration request."""
        if self._attached:
            return
        for topic, listener in (
            ("meshtastic.receive", self._on_receive),
            ("meshtastic.receive.text", self._on_text),
            ("meshtastic.receive.position", self._on_position),
            ("meshtastic.receive.user", self._on_user),
            ("meshtastic.receive.telemetry", self._on_telemetry),
            ("meshtastic.receive.routing", self._on_routing),
            ("meshtastic.node.updated", self._on_node_updated),
            ("meshtastic.connection.established", self._on_established),
            ("meshtastic.connection.lost", self._on_lost),
        ):
            pub.subscribe(listener, topic)
            self._subscriptions.callback(_unsubscribe, listener, topic)
        self._attached = True

    def bind(self, handle: TransportHandle) -> None:
        """Take ownership of a transport handle so teardown releases it."""
        self._handle = handle

    async def configure(self, handle: TransportHandle) -> None:
        """Start the handshake on the handle and wait for the device dump.

        Raises:
            ConfigurationTimeout: the device did not finish configuring in time
            TransportIOError: the handshake failed at the transport level
            NotConnected: the session was torn down while waiting
        """
        if not self._attached:
            raise RuntimeError("Subscribers must be attached before configuring")
        if self._closed:
            raise RuntimeError("Session was torn down")
        self.bind(handle)
        handshake = asyncio.ensure_future(self._handshake(handle))
        released = asyncio.ensure_future(self._released.wait())
        try:
            done, _ = await asyncio.wait(
                {handshake, released},
                timeout=self._handshake_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            released.cancel()
            if not handshake.done():
                handshake.cancel()
        if handshake in done:
            handshake.result()
            return
        if self._closed:
            raise NotConnected("Session closed during configuration")
        raise ConfigurationTimeout(
            f"Configuration did not complete within {self._handshake_timeout}s"
        )

    async def _handshake(self, handle: TransportHandle) -> None:
        try:
            await self._loop.run_in_executor(None, handle.start)
        except Exception as e:
            if "timed out" in str(e).lower():
                raise ConfigurationTimeout(str(e)) from e
            raise TransportIOError(f"Configuration handshake failed: {e}") from e
        await self._configured.wait()

    async def send_heartbeat(self) -> None:
        """Write a heartbeat to the device; raises if the write fails."""
        interface = self.require_interface()
        await self._loop.run_in_executor(None, interface.sendHeartbeat)

    def require_interface(self) -> Any:
        if self._closed or self._handle is None:
            raise NotConnected()
        return self._handle.interface

    async def teardown(self) -> None:
        """Release subscriptions and the transport. Idempotent, never raises."""
        if self._closed:
            return
        self._closed = True
        # Wakes a configure() still waiting on the handshake
        self._released.set()
        self._subscriptions.close()
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self._loop.run_in_executor(
                None, close_quietly, getattr(handle.interface, "close", None),
                f"{handle.kind.value} interface",
            )
        finally:
            TransportFactory.close(handle)
        logger.info(f"Session on {handle.kind.value} transport torn down")

    # Loop-side event handling
    def handle_event(self, event: ProtocolEvent) -> None:
        """Apply one event on the loop thread and forward it."""
        if self._closed:
            return
        self.ctx.touch()
        if event.kind == EventKind.DEVICE_STATUS:
            status = event.data.get("status")
            if status == DeviceStatus.CONFIGURED:
                self._configured.set()
            elif status == DeviceStatus.DISCONNECTED and not self.configured:
                # Devices may report a disconnect while still configuring
                logger.debug("Ignoring disconnect reported before configuration")
                return
        changes = self.state.apply(self.ctx, event)
        self._on_event(event, changes)

    def _deliver(self, events: Iterable[ProtocolEvent]) -> None:
        for event in events:
            self.handle_event(event)

    # Thread-side listeners
    def _accepts(self, interface: Any) -> bool:
        if self._closed:
            return False
        if self._handle is not None:
            return interface is self._handle.interface
        return not is_retired(interface)

    def _post(self, interface: Any, build: Callable, payload: Any) -> None:
        if not self._accepts(interface):
            return
        try:
            events = build(payload)
        except Exception as e:
            logger.warning(f"Ignoring malformed event from device: {e}")
            return
        if not events:
            return
        if isinstance(events, ProtocolEvent):
            events = [events]
        try:
            self._loop.call_soon_threadsafe(self._deliver, events)
        except RuntimeError:
            logger.debug("Event loop closed, dropping device event")

    def _on_receive(self, packet, interface):
        self._post(interface, heartbeat_event, packet)

    def _on_text(self, packet, interface):
        self._post(interface, message_event, packet)

    def _on_position(self, packet, interface):
        self._post(interface, position_event, packet)

    def _on_user(self, packet, interface):
        self._post(interface, user_event, packet)

    def _on_telemetry(self, packet, interface):
        self._post(interface, telemetry_event, packet)

    def _on_routing(self, packet, interface):
        self._post(interface, delivery_event, packet)

    def _on_node_updated(self, node, interface):
        self._post(interface, node_event, node)

    def _on_established(self, interface):
        self._post(interface, configured_events, interface)

    def _on_lost(self, interface):
        self._post(interface, lost_events, interface)
