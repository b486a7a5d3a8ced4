"""Session facade for a Meshtastic device.

``MeshClient`` is the one object the web layer and persistence talk to. It
owns the session status, drives connect and disconnect, wires the liveness
watchdog to the reconnection supervisor, and turns user commands into
requests on the active transport.
"""

from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable, Optional
import asyncio
import logging
import time

from meshtastic.protobuf import mesh_pb2, portnums_pb2

from .base import (
    BROADCAST_NUM,
    ChannelDefinition,
    ChannelRole,
    ConnectionParameters,
    DeliveryStatus,
    DeviceStatus,
    EventKind,
    MeshInterface,
    MessageRecord,
    NodeRecord,
    ProtocolEvent,
    SessionContext,
    SessionStatus,
    TelemetryPoint,
    TransportKind,
)
from .selection import DeviceSelector
from .session import Session
from .state import DomainState, StateChanges
from .supervisor import ReconnectionSupervisor
from .transports import TransportFactory, TransportHandle, close_quietly
from .watchdog import DEFAULT_THRESHOLDS, LivenessWatchdog, Thresholds
from ..config import MeshConfig, ReconnectConfig, WatchdogConfig, config
from ..errors import DeliveryFailed, InvalidAddress, MeshLinkError, NotConnected, TransportIOError

logger = logging.getLogger(__name__)

EMOJI_FLAG = 1

ROUTING_ERRORS = {
    "NO_ROUTE": "No Route",
    "GOT_NAK": "Got NAK",
    "TIMEOUT": "Timeout",
    "NO_INTERFACE": "No Interface",
    "MAX_RETRANSMIT": "Max Retransmit",
    "NO_CHANNEL": "No Channel",
    "TOO_LARGE": "Too Large",
    "NO_RESPONSE": "No Response",
    "DUTY_CYCLE_LIMIT": "Duty Cycle Limit",
    "BAD_REQUEST": "Bad Request",
    "NOT_AUTHORIZED": "Not Authorized",
}


def routing_error_name(code: Any) -> str:
    """Human-readable name for a routing error code."""
    return ROUTING_ERRORS.get(str(code), f"Error {code}")


@dataclass
class _PendingDelivery:
    future: asyncio.Future
    timer: asyncio.TimerHandle


class MeshClient(MeshInterface):
    """Connection lifecycle, domain state and commands for one device."""

    def __init__(
        self,
        mesh_config: Optional[MeshConfig] = None,
        watchdog_config: Optional[WatchdogConfig] = None,
        reconnect_config: Optional[ReconnectConfig] = None,
        factory: Optional[TransportFactory] = None,
        selector: Optional[DeviceSelector] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        super().__init__()
        self.mesh_config = mesh_config or config.mesh
        self.watchdog_config = watchdog_config or config.watchdog
        self.reconnect_config = reconnect_config or config.reconnect
        self.selector = factory.selector if factory else (selector or DeviceSelector())
        self.factory = factory or TransportFactory(
            selector=self.selector,
            tcp_port=self.mesh_config.tcp_port,
            timeout=self.mesh_config.handshake_timeout,
        )
        self.state = DomainState()
        self._clock = clock
        self._sleep = sleep
        self._params: Optional[ConnectionParameters] = None
        self._generation = 0
        self._session: Optional[Session] = None
        self._watchdog: Optional[LivenessWatchdog] = None
        self._closing: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._pending: dict[int, _PendingDelivery] = {}
        self.supervisor = ReconnectionSupervisor(
            establish=self._reestablish,
            current_generation=lambda: self._generation,
            on_attempt=self._on_reconnect_attempt,
            on_exhausted=self._on_reconnect_exhausted,
            max_attempts=self.reconnect_config.max_attempts,
            base_delay=self.reconnect_config.base_delay,
            max_delay=self.reconnect_config.max_delay,
            sleep=sleep,
        )

    # Snapshots
    @property
    def connection(self) -> Optional[ConnectionParameters]:
        return self._params

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def my_node_num(self) -> int:
        return self._session.ctx.my_node_num if self._session else 0

    @property
    def nodes(self) -> list[NodeRecord]:
        return list(self.state.nodes.values())

    @property
    def messages(self) -> list[MessageRecord]:
        return list(self.state.messages)

    @property
    def telemetry(self) -> list[TelemetryPoint]:
        return list(self.state.telemetry)

    @property
    def channels(self) -> list[dict]:
        return self.state.chat_channels()

    @property
    def channel_configs(self) -> list[ChannelDefinition]:
        return self.state.channel_configs()

    def is_connected(self) -> bool:
        return self._session is not None and self._session.handle is not None

    def node_name(self, node_id: int) -> str:
        return self.state.node_name(node_id)

    def node_label(self, node_id: int) -> str:
        return self.state.node_label(node_id)

    def load(self, nodes: Iterable[NodeRecord], messages: Iterable[MessageRecord]) -> None:
        """Seed domain state from persisted records before connecting."""
        self.state.load(nodes, messages)

    def clear_messages(self) -> None:
        self.state.clear_messages()
        logger.info("Cleared message history")

    def clear_nodes(self) -> None:
        """Forget every remote node; the local node stays."""
        self.state.clear_nodes(keep=self.my_node_num or None)
        logger.info("Cleared node list")

    # Connection lifecycle
    async def connect(self, kind: "str | TransportKind", address: Optional[str] = None) -> None:
        """Open a transport and configure a session on it.

        Any existing session is torn down first and pending reconnection is
        cancelled. Failures propagate; the client is left disconnected.
        """
        try:
            kind = TransportKind.parse(kind)
        except ValueError as e:
            raise InvalidAddress(f"Unknown transport: {kind}") from e

        self._generation += 1
        generation = self._generation
        self.supervisor.cancel()
        self.selector.cancel()
        await self._stop_session()
        if generation != self._generation:
            return
        # A different device may answer; its configuration dump refills these
        self.state.reset_session()

        params = ConnectionParameters(kind=kind, address=address)
        self._params = params
        self._set_status(SessionStatus.CONNECTING)
        logger.info(f"Connecting via {kind.value}" + (f" to {address}" if address else ""))
        try:
            await self._establish(params, generation)
        except Exception:
            if generation == self._generation:
                self._params = None
                self._set_status(SessionStatus.DISCONNECTED)
            raise

    async def disconnect(self) -> None:
        """Tear down the session and stop any reconnection in progress."""
        self._generation += 1
        self.supervisor.cancel()
        self.selector.cancel()
        await self._stop_session()
        self._fail_pending("Disconnected")
        self._params = None
        self._set_status(SessionStatus.DISCONNECTED)
        logger.info("Disconnected")

    async def _establish(self, params: ConnectionParameters, generation: int) -> bool:
        """Open, attach and configure a session for ``params``.

        Returns False when a newer connect or a disconnect superseded this
        one while it was suspended; the half-built session is released.
        """
        ctx = SessionContext(params=params, generation=generation, clock=self._clock)
        session = Session(
            ctx,
            self.state,
            self._on_session_event,
            handshake_timeout=self.mesh_config.handshake_timeout,
        )
        session.attach()
        self._session = session

        try:
            handle = await self.factory.open(params.kind, params.address)
        except BaseException:
            await self._discard(session)
            raise
        if generation != self._generation or session.closed:
            await self._release(handle)
            await self._discard(session)
            return False

        session.bind(handle)
        if params.address is None and params.kind != TransportKind.TCP:
            # Reconnects go back to the device that was actually chosen
            ctx.params = self._params = ConnectionParameters(params.kind, handle.address)
        if not session.configured:
            self._set_status(SessionStatus.CONNECTED)

        try:
            await session.configure(handle)
        except Exception:
            await self._discard(session)
            if generation != self._generation:
                logger.info(f"Configuration of generation {generation} abandoned")
                return False
            raise
        except BaseException:
            await self._discard(session)
            raise
        if generation != self._generation or session.closed:
            await self._discard(session)
            return False

        self._set_status(SessionStatus.CONFIGURED)
        self._start_watchdog(session)
        self._start_refresh()
        logger.info(f"Session configured on {params.kind.value} (generation {generation})")
        return True

    async def _reestablish(self, params: ConnectionParameters, generation: int) -> bool:
        if self._closing is not None:
            await self._closing
        await self._stop_session()
        return await self._establish(params, generation)

    async def _discard(self, session: Session) -> None:
        if self._session is session:
            self._session = None
        await session.teardown()

    @staticmethod
    async def _release(handle: TransportHandle) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, close_quietly, getattr(handle.interface, "close", None), "superseded interface"
            )
        finally:
            TransportFactory.close(handle)

    async def _stop_session(self) -> None:
        self._stop_watchdog()
        self._stop_refresh()
        session, self._session = self._session, None
        if session is not None:
            await session.teardown()
        if self._closing is not None:
            closing, self._closing = self._closing, None
            await closing

    # Liveness and reconnection
    def _start_watchdog(self, session: Session) -> None:
        self._stop_watchdog()
        kind = session.ctx.params.kind
        configured = self.watchdog_config.thresholds.get(kind.value)
        thresholds = (
            Thresholds(stale=configured.stale, dead=configured.dead)
            if configured else DEFAULT_THRESHOLDS[kind]
        )
        self._watchdog = LivenessWatchdog(
            thresholds,
            last_event=lambda: session.ctx.last_event_at,
            on_stale=self._on_stale,
            on_recovered=self._on_recovered,
            # Resolved at call time so the watchdog holds no supervisor reference
            on_dead=lambda reason: self._on_dead(reason),
            probe=session.send_heartbeat if kind == TransportKind.BLE else None,
            poll_interval=self.watchdog_config.poll_interval,
            probe_interval=self.watchdog_config.probe_interval,
            clock=self._clock,
        )
        self._watchdog.start()

    def _stop_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
            self._watchdog = None

    def _on_stale(self) -> None:
        if self._status == SessionStatus.CONFIGURED:
            self._set_status(SessionStatus.STALE)

    def _on_recovered(self) -> None:
        if self._status == SessionStatus.STALE:
            self._set_status(SessionStatus.CONFIGURED)

    def _on_dead(self, reason: str) -> None:
        """Tear down the dead session and hand over to the supervisor."""
        params = self._params
        if params is None or self._session is None or self.supervisor.active:
            return
        logger.warning(f"Connection lost ({reason})")
        self._stop_watchdog()
        self._stop_refresh()
        session, self._session = self._session, None
        self._closing = asyncio.ensure_future(session.teardown())

        if params.kind.value not in self.reconnect_config.transports:
            logger.info(f"Automatic reconnection disabled for {params.kind.value}")
            self._params = None
            self._set_status(SessionStatus.DISCONNECTED)
            return
        self._set_status(SessionStatus.RECONNECTING)
        self.supervisor.trigger(params, self._generation)

    def _on_reconnect_attempt(self, attempt: int, delay: float) -> None:
        self._set_status(SessionStatus.RECONNECTING)

    def _on_reconnect_exhausted(self, params: ConnectionParameters) -> None:
        self._params = None
        self._set_status(SessionStatus.DISCONNECTED)

    # Optional periodic refresh
    def _start_refresh(self) -> None:
        self._stop_refresh()
        if self.mesh_config.refresh_interval > 0:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    def _stop_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await self._sleep(self.mesh_config.refresh_interval)
            if self._status not in (SessionStatus.CONFIGURED, SessionStatus.STALE):
                continue
            try:
                await self.request_refresh()
            except MeshLinkError as e:
                logger.debug(f"Periodic refresh failed: {e}")

    # Session events
    def _on_session_event(self, event: ProtocolEvent, changes: StateChanges) -> None:
        if self._watchdog is not None:
            self._watchdog.notify_event()

        if event.kind == EventKind.DEVICE_STATUS:
            if event.data.get("status") == DeviceStatus.DISCONNECTED:
                self._on_dead("device reported connection lost")
        elif event.kind == EventKind.DELIVERY:
            self._on_delivery(event.data)

        for node in changes.nodes:
            self._dispatch(self._node_callbacks, node)
            self._dispatch(self._save_callbacks, node)
        for message in changes.messages:
            self._dispatch(self._message_callbacks, message)
            self._dispatch(self._save_callbacks, message)

    # Delivery tracking
    def _on_delivery(self, data: dict) -> None:
        request_id = data.get("request_id")
        if request_id not in self._pending:
            return
        reason = data.get("error_reason") or "NONE"
        if reason == "NONE":
            self._complete(request_id, DeliveryStatus.ACKED)
        else:
            self._complete(request_id, DeliveryStatus.FAILED, routing_error_name(reason))

    def _track(self, packet_id: int) -> None:
        loop = asyncio.get_running_loop()
        timer = loop.call_later(
            self.mesh_config.ack_timeout,
            self._complete, packet_id, DeliveryStatus.FAILED, ROUTING_ERRORS["TIMEOUT"],
        )
        self._pending[packet_id] = _PendingDelivery(future=loop.create_future(), timer=timer)

    def _complete(self, packet_id: int, status: DeliveryStatus, error: Optional[str] = None) -> None:
        pending = self._pending.pop(packet_id, None)
        if pending is None:
            return
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(status)
        record = self.state.set_message_status(packet_id, status, error)
        if record is None:
            return
        if status == DeliveryStatus.FAILED:
            logger.warning(f"Delivery of packet {packet_id} failed: {error}")
        self._dispatch(self._message_status_callbacks, record)
        self._dispatch(self._save_callbacks, record)

    def _fail_pending(self, reason: str) -> None:
        for packet_id in list(self._pending):
            self._complete(packet_id, DeliveryStatus.FAILED, reason)

    async def delivery(self, packet_id: int) -> MessageRecord:
        """Wait for the delivery outcome of a sent message.

        Raises:
            DeliveryFailed: the message was rejected or not acknowledged in time
            KeyError: no sent message has this packet id
        """
        pending = self._pending.get(packet_id)
        if pending is not None:
            await asyncio.shield(pending.future)
        record = self.state.find_message(packet_id)
        if record is None:
            raise KeyError(packet_id)
        if record.status == DeliveryStatus.FAILED:
            raise DeliveryFailed(packet_id, record.error or "Failed")
        return record

    # Commands
    def _require_interface(self) -> Any:
        if self._session is None:
            raise NotConnected()
        return self._session.require_interface()

    async def _call(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking library request in the executor."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except MeshLinkError:
            raise
        except Exception as e:
            raise TransportIOError(f"{getattr(fn, '__name__', 'request')} failed: {e}") from e

    def _record_sent(self, packet: Any, text: str, channel: int, destination: Optional[int], **fields) -> MessageRecord:
        my_num = self.my_node_num
        packet_id = getattr(packet, "id", None) or None
        record = MessageRecord(
            sender_id=my_num,
            sender_name=self.state.node_name(my_num) if my_num else "Me",
            payload=text,
            channel=channel,
            packet_id=packet_id,
            status=DeliveryStatus.SENDING,
            to=None if destination in (None, BROADCAST_NUM) else destination,
            **fields,
        )
        self.state.add_message(record)
        if packet_id is not None:
            self._track(packet_id)
        self._dispatch(self._message_callbacks, record)
        self._dispatch(self._save_callbacks, record)
        return record

    async def send_message(
        self,
        text: str,
        channel: int = 0,
        destination: Optional[int] = None,
    ) -> MessageRecord:
        """Send text and return its record; delivery is tracked by packet id."""
        interface = self._require_interface()
        packet = await self._call(
            interface.sendText,
            text,
            destinationId=destination if destination is not None else BROADCAST_NUM,
            wantAck=True,
            channelIndex=channel,
        )
        logger.info(f"Sent message on channel {channel}: {text[:50]}")
        return self._record_sent(packet, text, channel, destination)

    async def send_reaction(self, emoji: str, reply_id: int, channel: int = 0) -> MessageRecord:
        """Send an emoji reaction (tapback) to an earlier message."""
        interface = self._require_interface()

        data = mesh_pb2.Data()
        data.portnum = portnums_pb2.PortNum.TEXT_MESSAGE_APP
        data.payload = emoji.encode("utf-8")
        data.reply_id = reply_id
        data.emoji = EMOJI_FLAG

        packet = mesh_pb2.MeshPacket()
        packet.channel = channel
        packet.decoded.CopyFrom(data)
        packet.id = interface._generatePacketId()

        sent = await self._call(interface._sendPacket, packet, destinationId=BROADCAST_NUM, wantAck=True)
        return self._record_sent(
            sent if sent is not None else packet, emoji, channel, None,
            emoji=EMOJI_FLAG, reply_id=reply_id,
        )

    async def request_position(self, destination: int, channel: int = 0) -> None:
        """Ask a node for its position; the answer arrives as a position event."""
        interface = self._require_interface()
        await self._call(
            interface.sendData,
            mesh_pb2.Position(),
            destinationId=destination,
            portNum=portnums_pb2.PortNum.POSITION_APP,
            wantResponse=True,
            channelIndex=channel,
        )

    async def request_refresh(self) -> None:
        """Broadcast a position request; nodes answer with position and telemetry."""
        await self.request_position(BROADCAST_NUM)

    async def trace_route(self, destination: int, hop_limit: int = 3, channel: int = 0) -> None:
        interface = self._require_interface()
        await self._call(
            interface.sendData,
            mesh_pb2.RouteDiscovery(),
            destinationId=destination,
            portNum=portnums_pb2.PortNum.TRACEROUTE_APP,
            wantResponse=True,
            channelIndex=channel,
            hopLimit=hop_limit,
        )

    def _local_node(self) -> Any:
        node = getattr(self._require_interface(), "localNode", None)
        if node is None:
            raise NotConnected("Local node not available")
        return node

    async def set_config(self, section: str, values: dict) -> None:
        """Update fields of one config section and write it to the device."""
        node = self._local_node()
        config_message = _select_config(node, section)
        if config_message is None:
            raise ValueError(f"Unknown config section: {section}")
        part = getattr(config_message, section)
        for name, value in values.items():
            try:
                setattr(part, name, value)
            except (AttributeError, TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for {section}.{name}: {e}") from e
        await self._call(node.writeConfig, section)
        logger.info(f"Wrote config section {section}")

    async def begin_edit(self) -> None:
        node = self._local_node()
        await self._call(node.beginSettingsTransaction)

    async def commit_config(self) -> None:
        node = self._local_node()
        await self._call(node.commitSettingsTransaction)

    async def set_channel(
        self,
        index: int,
        name: str = "",
        role: "ChannelRole | int" = ChannelRole.SECONDARY,
        psk: Optional[bytes] = None,
    ) -> ChannelDefinition:
        node = self._local_node()
        channel = self._device_channel(node, index)
        channel.settings.name = name
        if psk is not None:
            channel.settings.psk = psk
        channel.role = int(role)
        await self._call(node.writeChannel, index)
        return self._store_channel(index, name, ChannelRole(int(role)), bytes(channel.settings.psk) or b"\x01")

    async def clear_channel(self, index: int) -> ChannelDefinition:
        """Disable a secondary channel and wipe its settings."""
        node = self._local_node()
        channel = self._device_channel(node, index)
        if channel.role == ChannelRole.PRIMARY:
            raise ValueError("The primary channel cannot be cleared")
        channel.settings.Clear()
        channel.role = int(ChannelRole.DISABLED)
        await self._call(node.writeChannel, index)
        return self._store_channel(index, "", ChannelRole.DISABLED, b"\x01")

    @staticmethod
    def _device_channel(node: Any, index: int) -> Any:
        channels = getattr(node, "channels", None) or []
        if not 0 <= index < len(channels):
            raise ValueError(f"No channel at index {index}")
        return channels[index]

    def _store_channel(self, index: int, name: str, role: ChannelRole, psk: bytes) -> ChannelDefinition:
        channel = ChannelDefinition(index=index, name=name, role=role, psk=psk)
        self.state.channels[index] = channel
        return channel

    async def remove_node(self, node_id: int) -> None:
        """Remove a node from the device database and from local state."""
        node = self._local_node()
        await self._call(node.removeNode, node_id)
        self.state.remove_node(node_id)
        logger.info(f"Removed node !{node_id:x}")
        self._dispatch(self._removed_callbacks, node_id)

    async def reboot(self, seconds: int = 2) -> None:
        node = self._local_node()
        await self._call(node.reboot, seconds)

    async def shutdown(self, seconds: int = 2) -> None:
        node = self._local_node()
        await self._call(node.shutdown, seconds)

    async def factory_reset(self) -> None:
        node = self._local_node()
        await self._call(node.factoryReset)

    async def reset_node_db(self) -> None:
        node = self._local_node()
        await self._call(node.resetNodeDb)


def _select_config(node: Any, section: str) -> Any:
    """The local or module config message that has ``section`` as a field."""
    for name in ("localConfig", "moduleConfig"):
        message = getattr(node, name, None)
        if message is not None and section in message.DESCRIPTOR.fields_by_name:
            return message
    return None
