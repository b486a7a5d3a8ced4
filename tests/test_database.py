"""Tests for node and message persistence."""

import asyncio

import pytest

from meshlink.config import config
from meshlink.database import Database, db as shared_db
from meshlink.mesh.base import DeliveryStatus, MessageRecord, NodeRecord


def make_db(tmp_path) -> Database:
    return Database(str(tmp_path / "data" / "meshlink.db"))


@pytest.mark.asyncio
async def test_nodes_round_trip_and_delete(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()

    await db.save_record(NodeRecord(node_id=0x22, short_name="BOB", battery=80, last_heard=100.0))
    await db.save_record(NodeRecord(node_id=0x22, short_name="BOB", battery=55, last_heard=200.0))
    await db.save_node(NodeRecord(node_id=0x33, long_name="Charlie", last_heard=150.0))

    nodes = await db.get_nodes()
    assert [n.node_id for n in nodes] == [0x22, 0x33]
    assert nodes[0].battery == 55

    assert await db.delete_node(0x22) is True
    assert await db.delete_node(0x22) is False
    assert [n.node_id for n in await db.get_nodes()] == [0x33]
    await db.close()


@pytest.mark.asyncio
async def test_overlapping_node_saves_keep_one_row(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()
    record = NodeRecord(node_id=0x44, short_name="NEW", last_heard=50.0)

    results = await asyncio.gather(
        db.save_node(record), db.save_node(record), db.save_record(record),
        return_exceptions=True,
    )

    assert results == [None, None, None]
    nodes = await db.get_nodes()
    assert [n.node_id for n in nodes] == [0x44]
    await db.close()


@pytest.mark.asyncio
async def test_messages_upsert_by_packet_id(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()

    record = MessageRecord(sender_id=1, sender_name="me", payload="hello", packet_id=42,
                           status=DeliveryStatus.SENDING, timestamp=10.0)
    await db.save_record(record)
    record.status = DeliveryStatus.FAILED
    record.error = "No Route"
    await db.save_record(record)
    await db.save_message(MessageRecord(sender_id=2, sender_name="bob", payload="hi", timestamp=20.0))

    messages = await db.get_messages()
    assert [m.payload for m in messages] == ["hello", "hi"]
    assert messages[0].status is DeliveryStatus.FAILED
    assert messages[0].error == "No Route"
    assert record.id == messages[0].id
    await db.close()


@pytest.mark.asyncio
async def test_ack_saved_while_first_save_in_flight(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()
    record = MessageRecord(sender_id=1, sender_name="me", payload="ping", packet_id=7,
                           status=DeliveryStatus.SENDING, timestamp=5.0)

    first = asyncio.ensure_future(db.save_record(record))
    record.status = DeliveryStatus.ACKED
    second = asyncio.ensure_future(db.save_record(record))
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert results == [None, None]
    messages = await db.get_messages()
    assert len(messages) == 1
    assert messages[0].status is DeliveryStatus.ACKED
    await db.close()


@pytest.mark.asyncio
async def test_history_limit_keeps_newest(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()
    for i in range(5):
        await db.save_message(MessageRecord(sender_id=1, sender_name="a", payload=str(i),
                                            packet_id=i + 1, timestamp=float(i)))

    messages = await db.get_messages(limit=3)

    assert [m.payload for m in messages] == ["2", "3", "4"]
    await db.close()


@pytest.mark.asyncio
async def test_clear_messages_and_nodes(tmp_path):
    db = make_db(tmp_path)
    await db.initialize()
    await db.save_node(NodeRecord(node_id=1))
    await db.save_message(MessageRecord(sender_id=1, sender_name="a", payload="x"))

    await db.clear_messages()
    assert await db.get_messages() == []
    assert len(await db.get_nodes()) == 1

    await db.clear_nodes()
    assert await db.get_nodes() == []
    await db.close()


def test_shared_database_uses_configured_path():
    assert shared_db.db_path == config.database.path
