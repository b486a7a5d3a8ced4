"""Tests for domain state merging."""

from meshlink.mesh.base import (
    ChannelRole,
    ConnectionParameters,
    DeliveryStatus,
    EventKind,
    MessageRecord,
    NodeRecord,
    ProtocolEvent,
    SessionContext,
    TransportKind,
)
from meshlink.mesh.state import MAX_TELEMETRY_POINTS, DomainState

from conftest import FakeClock


def make_ctx(clock=None) -> SessionContext:
    return SessionContext(
        params=ConnectionParameters(TransportKind.SERIAL, "/dev/ttyUSB0"),
        generation=1,
        clock=clock or FakeClock(),
    )


def node_info(num, **fields) -> ProtocolEvent:
    return ProtocolEvent(EventKind.NODE_INFO, {"num": num, **fields})


def test_node_info_merge_keeps_known_fields():
    state = DomainState()
    ctx = make_ctx()
    user = {"longName": "Ridge Repeater", "shortName": "RDG", "hwModel": "RAK4631"}
    position = {"latitudeI": 473977000, "longitudeI": -1223331000}

    state.apply(ctx, node_info(0x1234, user=user, snr=6.5, position=position,
                               device_metrics={"batteryLevel": 80}, last_heard=1700000000))
    before = NodeRecord(**state.nodes[0x1234].to_dict())

    changes = state.apply(ctx, node_info(0x1234, device_metrics={"batteryLevel": 55},
                                         last_heard=1700000100))

    after = state.nodes[0x1234]
    assert changes.nodes == [after]
    assert after.battery == 55
    assert after.last_heard == 1700000100
    for name in ("long_name", "short_name", "hw_model", "snr", "latitude", "longitude"):
        assert getattr(after, name) == getattr(before, name)
    assert after.latitude == 47.3977


def test_identity_creates_own_node_placeholder():
    state = DomainState()
    ctx = make_ctx()

    changes = state.apply(ctx, ProtocolEvent(EventKind.IDENTITY, {"my_node_num": 0xBEEF}))

    assert ctx.my_node_num == 0xBEEF
    assert state.nodes[0xBEEF].long_name == ""
    assert len(changes.nodes) == 1


def test_node_name_and_label_fallbacks():
    state = DomainState()
    state.nodes[1] = NodeRecord(node_id=1, short_name="ALF")
    state.nodes[2] = NodeRecord(node_id=2, long_name="Bravo Base Station")
    state.nodes[3] = NodeRecord(node_id=3, short_name="!3 x")

    assert state.node_name(1) == "ALF"
    assert state.node_name(2) == "Bravo B"
    assert state.node_name(0xabc) == "!abc"
    assert state.node_label(1) == "ALF !1"
    assert state.node_label(2) == "Bravo Base Station"
    assert state.node_label(3) == "!3 x"
    assert state.node_label(0xabc) == "!abc"


def test_position_ignores_empty_fix():
    state = DomainState()
    changes = state.apply(make_ctx(), ProtocolEvent(EventKind.POSITION, {"from": 5}))
    assert changes.nodes == []
    assert 5 not in state.nodes


def test_telemetry_ring_is_bounded():
    state = DomainState()
    ctx = make_ctx()
    for level in range(MAX_TELEMETRY_POINTS + 10):
        state.apply(ctx, ProtocolEvent(EventKind.TELEMETRY, {"from": 9, "battery_level": level + 1}))

    assert len(state.telemetry) == MAX_TELEMETRY_POINTS
    assert state.telemetry[-1].battery_level == MAX_TELEMETRY_POINTS + 10
    assert state.nodes[9].battery == MAX_TELEMETRY_POINTS + 10


def test_mesh_heartbeat_updates_known_nodes_only():
    state = DomainState()
    ctx = make_ctx()
    state.nodes[7] = NodeRecord(node_id=7)

    state.apply(ctx, ProtocolEvent(EventKind.MESH_HEARTBEAT, {"from": 7, "rx_snr": 4.25, "rx_rssi": -90}))
    state.apply(ctx, ProtocolEvent(EventKind.MESH_HEARTBEAT, {"from": 8, "rx_snr": 3.0}))

    assert state.nodes[7].snr == 4.25
    assert 8 not in state.nodes
    assert [p.snr for p in state.telemetry] == [4.25, 3.0]


def test_channels_for_chat_and_config():
    state = DomainState()
    ctx = make_ctx()
    for index, name, role in ((0, "", 1), (1, "ops", 2), (2, "", 0), (3, "", 2)):
        state.apply(ctx, ProtocolEvent(EventKind.CHANNEL, {"index": index, "name": name, "role": role, "psk": b""}))

    assert state.chat_channels() == [
        {"index": 0, "name": "Primary"},
        {"index": 1, "name": "ops"},
        {"index": 3, "name": "Channel 3"},
    ]
    configs = state.channel_configs()
    assert [c.index for c in configs] == [0, 1, 2, 3]
    assert configs[2].role is ChannelRole.DISABLED
    assert configs[2].psk == b"\x01"

    state.reset_session()
    assert state.channel_configs() == []
    assert state.chat_channels() == [{"index": 0, "name": "Primary"}]


def test_clear_nodes_keeps_local_node_and_clear_messages():
    state = DomainState()
    for num in (0x10, 0x22, 0x33):
        state.ensure_node(num)
    state.add_message(MessageRecord(sender_id=0x22, sender_name="bob", payload="hi"))

    state.clear_nodes(keep=0x10)
    state.clear_messages()

    assert list(state.nodes) == [0x10]
    assert state.messages == []
    state.clear_nodes()
    assert state.nodes == {}


def test_message_echo_of_sent_packet_is_not_duplicated():
    state = DomainState()
    ctx = make_ctx()
    ctx.my_node_num = 0x10
    state.add_message(MessageRecord(sender_id=0x10, sender_name="me", payload="hi",
                                    packet_id=42, status=DeliveryStatus.SENDING))

    changes = state.apply(ctx, ProtocolEvent(EventKind.MESSAGE, {"from": 0x10, "id": 42, "text": "hi"}))

    assert changes.messages == []
    assert len(state.messages) == 1


def test_received_message_is_appended():
    state = DomainState()
    state.nodes[0x22] = NodeRecord(node_id=0x22, short_name="BOB")

    changes = state.apply(make_ctx(), ProtocolEvent(EventKind.MESSAGE, {
        "from": 0x22, "to": 0xFFFFFFFF, "id": 7, "channel": 1, "text": "hello", "rx_time": 1700000000,
    }))

    record = changes.messages[0]
    assert record.sender_name == "BOB"
    assert record.to is None
    assert record.channel == 1
    assert record.timestamp == 1700000000
    assert record.status is None


def test_set_message_status_by_packet_id():
    state = DomainState()
    state.add_message(MessageRecord(sender_id=1, sender_name="me", payload="x", packet_id=5,
                                    status=DeliveryStatus.SENDING))

    record = state.set_message_status(5, DeliveryStatus.FAILED, "No Route")

    assert record.status is DeliveryStatus.FAILED
    assert record.error == "No Route"
    assert state.set_message_status(6, DeliveryStatus.ACKED) is None


def test_liveness_timestamp_strictly_increases():
    clock = FakeClock()
    ctx = make_ctx(clock)
    stamps = [ctx.touch() for _ in range(5)]
    assert all(b > a for a, b in zip(stamps, stamps[1:]))
