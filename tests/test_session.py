"""Tests for the session: subscriptions, handshake and teardown."""

import asyncio
import logging

import pytest

from meshlink.errors import ConfigurationTimeout, NotConnected
from meshlink.mesh.base import (
    ConnectionParameters,
    DeviceStatus,
    EventKind,
    SessionContext,
    TransportKind,
)
from meshlink.mesh.session import Session, configured_events, delivery_event, message_event
from meshlink.mesh.state import DomainState
from meshlink.mesh.transports import TransportHandle

from conftest import MY_NODE, FakeClock, FakeInterface, publish, settle


def make_session(handshake_timeout=2.0):
    ctx = SessionContext(
        params=ConnectionParameters(TransportKind.SERIAL, "/dev/ttyUSB0"),
        generation=1,
        clock=FakeClock(),
    )
    received = []
    session = Session(ctx, DomainState(), lambda event, changes: received.append(event),
                      handshake_timeout=handshake_timeout)
    return session, received


def make_handle(interface):
    return TransportHandle(kind=TransportKind.SERIAL, interface=interface, starter=interface.waitForConfig)


@pytest.mark.asyncio
async def test_configure_requires_attached_subscribers():
    session, _ = make_session()
    with pytest.raises(RuntimeError):
        await session.configure(make_handle(FakeInterface()))


@pytest.mark.asyncio
async def test_configure_applies_identity_and_channels():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()

    await session.configure(make_handle(interface))
    await settle()

    assert session.configured
    assert session.ctx.my_node_num == MY_NODE
    assert MY_NODE in session.state.nodes
    assert sorted(session.state.channels) == [0, 1, 2]
    assert received[0].kind is EventKind.DEVICE_STATUS
    await session.teardown()


@pytest.mark.asyncio
async def test_configure_times_out():
    session, _ = make_session(handshake_timeout=0.05)
    session.attach()

    with pytest.raises(ConfigurationTimeout):
        await session.configure(make_handle(FakeInterface(configures=False)))

    await session.teardown()


@pytest.mark.asyncio
async def test_teardown_wakes_pending_configure():
    session, _ = make_session(handshake_timeout=30.0)
    session.attach()

    configuring = asyncio.create_task(session.configure(make_handle(FakeInterface(configures=False))))
    await settle()
    await session.teardown()

    with pytest.raises(NotConnected):
        await asyncio.wait_for(configuring, timeout=1.0)
    assert not session.configured


@pytest.mark.asyncio
async def test_events_stamp_liveness_in_order():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()
    await session.configure(make_handle(interface))
    await settle()

    stamps = []
    for i in range(3):
        publish("meshtastic.receive.text", packet={
            "from": 0x22, "to": 0xFFFFFFFF, "id": 100 + i, "decoded": {"text": f"msg {i}"},
        }, interface=interface)
        await settle()
        stamps.append(session.ctx.last_event_at)

    assert all(b > a for a, b in zip(stamps, stamps[1:]))
    assert [m.payload for m in session.state.messages] == ["msg 0", "msg 1", "msg 2"]
    await session.teardown()


@pytest.mark.asyncio
async def test_events_from_other_interfaces_are_ignored():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()
    await session.configure(make_handle(interface))
    await settle()
    count = len(received)

    publish("meshtastic.receive.text", packet={"from": 5, "id": 1, "decoded": {"text": "stray"}},
            interface=FakeInterface())
    await settle()

    assert len(received) == count
    await session.teardown()


@pytest.mark.asyncio
async def test_disconnect_before_configured_is_ignored():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()
    session.bind(make_handle(interface))

    publish("meshtastic.connection.lost", interface=interface)
    await settle()

    assert received == []
    await session.teardown()


@pytest.mark.asyncio
async def test_disconnect_after_configured_is_forwarded():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()
    await session.configure(make_handle(interface))
    await settle()

    publish("meshtastic.connection.lost", interface=interface)
    await settle()

    assert received[-1].kind is EventKind.DEVICE_STATUS
    assert received[-1].data["status"] is DeviceStatus.DISCONNECTED
    await session.teardown()


@pytest.mark.asyncio
async def test_teardown_is_idempotent_and_unsubscribes():
    session, received = make_session()
    interface = FakeInterface()
    session.attach()
    await session.configure(make_handle(interface))
    await settle()

    await session.teardown()
    await session.teardown()
    count = len(received)
    publish("meshtastic.receive.text", packet={"from": 5, "id": 9, "decoded": {"text": "late"}},
            interface=interface)
    await settle()

    assert session.closed
    assert interface.closed
    assert interface.stream.closed
    assert len(received) == count
    with pytest.raises(NotConnected):
        session.require_interface()


@pytest.mark.asyncio
async def test_teardown_survives_close_failure(caplog):
    session, _ = make_session()
    interface = FakeInterface()
    interface.close_error = RuntimeError("write failed")
    session.attach()
    await session.configure(make_handle(interface))

    with caplog.at_level(logging.WARNING):
        await session.teardown()

    assert interface.stream.closed
    assert "write failed" in caplog.text


@pytest.mark.asyncio
async def test_send_heartbeat_raises_when_write_fails():
    session, _ = make_session()
    interface = FakeInterface()
    session.attach()
    await session.configure(make_handle(interface))

    await session.send_heartbeat()
    interface.heartbeat_error = OSError("BLE write failed")
    with pytest.raises(OSError):
        await session.send_heartbeat()

    assert interface.heartbeats == 1
    await session.teardown()


def test_configured_events_describe_device():
    events = configured_events(FakeInterface())
    kinds = [e.kind for e in events]
    assert kinds[:2] == [EventKind.DEVICE_STATUS, EventKind.IDENTITY]
    assert kinds.count(EventKind.CHANNEL) == 3


def test_packet_translation():
    event = message_event({"from": 1, "to": 2, "id": 3, "channel": 1,
                           "decoded": {"text": ":)", "replyId": 77, "emoji": 1}})
    assert event.data["reply_id"] == 77
    assert event.data["emoji"] == 1
    assert delivery_event({"decoded": {"routing": {}}}) is None
    ack = delivery_event({"from": 9, "decoded": {"requestId": 5, "routing": {"errorReason": "NO_ROUTE"}}})
    assert ack.data == {"request_id": 5, "error_reason": "NO_ROUTE", "from": 9}
