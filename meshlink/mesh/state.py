"""Domain state accumulated from protocol events.

Nodes are merged field by field and never replaced wholesale; messages are
append-only with delivery status mutated in place by packet id.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional
import logging
import time

from .base import (
    ChannelDefinition,
    ChannelRole,
    DeliveryStatus,
    EventKind,
    MessageRecord,
    NodeRecord,
    ProtocolEvent,
    SessionContext,
    TelemetryPoint,
)

logger = logging.getLogger(__name__)

MAX_TELEMETRY_POINTS = 50


@dataclass
class StateChanges:
    """Records touched while applying one event."""
    nodes: list[NodeRecord] = field(default_factory=list)
    messages: list[MessageRecord] = field(default_factory=list)
    telemetry: list[TelemetryPoint] = field(default_factory=list)
    channels: list[ChannelDefinition] = field(default_factory=list)


class DomainState:
    """Nodes, messages, telemetry and channels known to the client."""

    def __init__(self):
        self.nodes: dict[int, NodeRecord] = {}
        self.messages: list[MessageRecord] = []
        self.telemetry: deque[TelemetryPoint] = deque(maxlen=MAX_TELEMETRY_POINTS)
        self.channels: dict[int, ChannelDefinition] = {}

    def load(self, nodes: Iterable[NodeRecord], messages: Iterable[MessageRecord]) -> None:
        """Seed state from persisted records (messages oldest first)."""
        for node in nodes:
            self.nodes[node.node_id] = node
        self.messages.extend(messages)
        logger.info(f"Loaded {len(self.nodes)} nodes and {len(self.messages)} messages")

    # Nodes
    def ensure_node(self, node_id: int) -> tuple[NodeRecord, bool]:
        """Return the node, creating an empty record on first reference."""
        node = self.nodes.get(node_id)
        if node is not None:
            return node, False
        node = NodeRecord(node_id=node_id)
        self.nodes[node_id] = node
        return node, True

    def remove_node(self, node_id: int) -> Optional[NodeRecord]:
        return self.nodes.pop(node_id, None)

    def clear_nodes(self, keep: Optional[int] = None) -> None:
        """Forget every node except ``keep``."""
        kept = self.nodes.get(keep) if keep is not None else None
        self.nodes.clear()
        if kept is not None:
            self.nodes[kept.node_id] = kept

    def node_name(self, node_id: int) -> str:
        """Compact display name: short name, truncated long name, or hex id."""
        node = self.nodes.get(node_id)
        if node and node.short_name:
            return node.short_name
        if node and node.long_name:
            return node.long_name[:7]
        return f"!{node_id:x}"

    def node_label(self, node_id: int) -> str:
        """Extended label: short name plus hex id, long name, or hex id."""
        node = self.nodes.get(node_id)
        hex_id = f"!{node_id:x}"
        if node and node.short_name:
            if hex_id in node.short_name:
                return node.short_name
            return f"{node.short_name} {hex_id}"
        if node and node.long_name:
            return node.long_name
        return hex_id

    # Messages
    def add_message(self, record: MessageRecord) -> MessageRecord:
        self.messages.append(record)
        return record

    def clear_messages(self) -> None:
        self.messages.clear()

    def find_message(self, packet_id: int) -> Optional[MessageRecord]:
        for record in reversed(self.messages):
            if record.packet_id == packet_id:
                return record
        return None

    def set_message_status(
        self,
        packet_id: int,
        status: DeliveryStatus,
        error: Optional[str] = None,
    ) -> Optional[MessageRecord]:
        """Mutate the delivery status of a sent message in place."""
        record = self.find_message(packet_id)
        if record is None:
            return None
        record.status = status
        record.error = error
        return record

    # Channels
    def chat_channels(self) -> list[dict]:
        """Enabled channels for chat selection; index 0 is always present."""
        entries = {0: {"index": 0, "name": "Primary"}}
        for channel in self.channels.values():
            if channel.role == ChannelRole.DISABLED:
                continue
            default = "Primary" if channel.index == 0 else f"Channel {channel.index}"
            entries[channel.index] = {"index": channel.index, "name": channel.name or default}
        return [entries[i] for i in sorted(entries)]

    def channel_configs(self) -> list[ChannelDefinition]:
        return [self.channels[i] for i in sorted(self.channels)]

    def reset_session(self) -> None:
        """Forget per-device data that the next configuration dump restores."""
        self.channels.clear()

    # Event application
    def apply(self, ctx: SessionContext, event: ProtocolEvent) -> StateChanges:
        """Apply one protocol event and report what changed."""
        changes = StateChanges()
        handler = _HANDLERS.get(event.kind)
        if handler is not None:
            handler(self, ctx, event.data, changes)
        return changes

    def merge_node(self, node_id: int, changes: StateChanges, **fields) -> NodeRecord:
        node, _ = self.ensure_node(node_id)
        for key, value in fields.items():
            if value is not None:
                setattr(node, key, value)
        if node not in changes.nodes:
            changes.nodes.append(node)
        return node


def _apply_identity(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    my_num = data.get("my_node_num")
    if not my_num:
        return
    ctx.my_node_num = my_num
    node, created = state.ensure_node(my_num)
    if created:
        changes.nodes.append(node)


def _apply_node_info(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    node_id = data.get("num")
    if not node_id:
        return
    user = data.get("user") or {}
    position = data.get("position") or {}
    metrics = data.get("device_metrics") or {}
    hw_model = user.get("hwModel")
    last_heard = data.get("last_heard")
    state.merge_node(
        node_id,
        changes,
        long_name=user.get("longName"),
        short_name=user.get("shortName"),
        hw_model=str(hw_model) if hw_model is not None else None,
        snr=data.get("snr"),
        battery=metrics.get("batteryLevel"),
        last_heard=float(last_heard) if last_heard else time.time(),
        latitude=_coordinate(position, "latitude"),
        longitude=_coordinate(position, "longitude"),
    )


def _apply_position(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    node_id = data.get("from")
    latitude = _coordinate(data, "latitude")
    longitude = _coordinate(data, "longitude")
    if not node_id or (latitude is None and longitude is None):
        return
    state.merge_node(
        node_id,
        changes,
        latitude=latitude,
        longitude=longitude,
        last_heard=time.time(),
    )


def _apply_telemetry(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    battery = data.get("battery_level")
    voltage = data.get("voltage")
    if battery is None and voltage is None:
        return
    point = TelemetryPoint(battery_level=battery, voltage=voltage)
    state.telemetry.append(point)
    changes.telemetry.append(point)

    node_id = data.get("from")
    if battery and node_id:
        state.merge_node(node_id, changes, battery=battery, last_heard=time.time())


def _apply_mesh_heartbeat(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    node_id = data.get("from")
    if not node_id:
        return
    snr = data.get("rx_snr")
    rssi = data.get("rx_rssi")
    if snr and node_id in state.nodes:
        state.merge_node(node_id, changes, snr=snr, last_heard=time.time())
    if snr or rssi:
        point = TelemetryPoint(snr=snr, rssi=rssi)
        state.telemetry.append(point)
        changes.telemetry.append(point)


def _apply_channel(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    index = data.get("index")
    if index is None:
        return
    channel = ChannelDefinition(
        index=index,
        name=data.get("name") or "",
        role=ChannelRole(data.get("role") or 0),
        psk=data.get("psk") or b"\x01",
    )
    state.channels[index] = channel
    changes.channels.append(channel)


def _apply_message(state: DomainState, ctx: SessionContext, data: dict, changes: StateChanges) -> None:
    sender = data.get("from") or 0
    packet_id = data.get("id")
    is_echo = bool(ctx.my_node_num) and sender == ctx.my_node_num
    if is_echo and packet_id and state.find_message(packet_id) is not None:
        return
    rx_time = data.get("rx_time")
    to = data.get("to")
    record = MessageRecord(
        sender_id=sender,
        sender_name=state.node_name(sender),
        payload=data.get("text") or "",
        channel=data.get("channel") or 0,
        timestamp=float(rx_time) if rx_time else time.time(),
        packet_id=packet_id,
        status=DeliveryStatus.SENDING if is_echo else None,
        emoji=data.get("emoji") or None,
        reply_id=data.get("reply_id") or None,
        to=None if to in (None, 0xFFFFFFFF) else to,
    )
    state.add_message(record)
    changes.messages.append(record)


def _coordinate(data: dict, name: str) -> Optional[float]:
    """Read a coordinate from its integer (1e-7 degree) or float form."""
    scaled = data.get(f"{name}I", data.get(f"{name}_i"))
    if scaled is not None:
        return scaled / 1e7
    value = data.get(name)
    return float(value) if value is not None else None


_HANDLERS = {
    EventKind.IDENTITY: _apply_identity,
    EventKind.NODE_INFO: _apply_node_info,
    EventKind.POSITION: _apply_position,
    EventKind.TELEMETRY: _apply_telemetry,
    EventKind.MESH_HEARTBEAT: _apply_mesh_heartbeat,
    EventKind.CHANNEL: _apply_channel,
    EventKind.MESSAGE: _apply_message,
}
