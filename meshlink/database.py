"""Database models and operations for meshlink.

Uses SQLAlchemy with async SQLite to persist the node map and message
history so both survive restarts.
"""

from typing import Union
from pathlib import Path

from sqlalchemy import Column, Integer, String, Text, Float, BigInteger, delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.future import select

from .config import config
from .mesh.base import DeliveryStatus, MessageRecord, NodeRecord

Base = declarative_base()


class Message(Base):
    """Stored text messages, sent and received."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    packet_id = Column(BigInteger, unique=True, nullable=True)
    sender_id = Column(BigInteger, nullable=False, index=True)
    sender_name = Column(String(64), nullable=True)
    to_id = Column(BigInteger, nullable=True, index=True)
    payload = Column(Text, nullable=False)
    channel = Column(Integer, default=0)
    timestamp = Column(Float, nullable=False, index=True)
    status = Column(String(16), nullable=True)
    error = Column(String(64), nullable=True)
    emoji = Column(Integer, nullable=True)
    reply_id = Column(BigInteger, nullable=True)

    def to_record(self) -> MessageRecord:
        return MessageRecord(
            id=self.id,
            packet_id=self.packet_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name or "",
            to=self.to_id,
            payload=self.payload,
            channel=self.channel or 0,
            timestamp=self.timestamp,
            status=DeliveryStatus(self.status) if self.status else None,
            error=self.error,
            emoji=self.emoji,
            reply_id=self.reply_id,
        )


class Node(Base):
    """Cached node information."""
    __tablename__ = "nodes"

    node_id = Column(BigInteger, primary_key=True, autoincrement=False)
    long_name = Column(String(64), nullable=True)
    short_name = Column(String(16), nullable=True)
    hw_model = Column(String(32), nullable=True)
    snr = Column(Float, nullable=True)
    battery = Column(Integer, nullable=True)
    last_heard = Column(Float, nullable=True, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    def to_record(self) -> NodeRecord:
        return NodeRecord(
            node_id=self.node_id,
            long_name=self.long_name or "",
            short_name=self.short_name or "",
            hw_model=self.hw_model or "",
            snr=self.snr or 0.0,
            battery=self.battery or 0,
            last_heard=self.last_heard or 0.0,
            latitude=self.latitude or 0.0,
            longitude=self.longitude or 0.0,
        )


class Database:
    """Async database manager."""

    def __init__(self, db_path: str = "data/meshlink.db"):
        self.db_path = db_path
        self._engine = None
        self._session_factory = None

    async def initialize(self) -> None:
        """Initialize the database and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._engine = create_async_engine(
            f"sqlite+aiosqlite:///{self.db_path}",
            echo=False
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._session_factory = sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def get_session(self) -> AsyncSession:
        """Get a database session."""
        if not self._session_factory:
            await self.initialize()
        return self._session_factory()

    async def save_record(self, record: Union[NodeRecord, MessageRecord]) -> None:
        """Persist whichever record type the client reports as changed."""
        if isinstance(record, NodeRecord):
            await self.save_node(record)
        elif isinstance(record, MessageRecord):
            await self.save_message(record)

    # Message operations
    async def save_message(self, record: MessageRecord) -> MessageRecord:
        """Insert a message, or update the stored one with the same packet id."""
        values = {
            "sender_id": record.sender_id,
            "sender_name": record.sender_name,
            "to_id": record.to,
            "payload": record.payload,
            "channel": record.channel,
            "timestamp": record.timestamp,
            "status": record.status.value if record.status else None,
            "error": record.error,
            "emoji": record.emoji,
            "reply_id": record.reply_id,
        }
        async with await self.get_session() as session:
            if record.packet_id is not None:
                # Single statement so overlapping saves of one packet cannot both insert
                stmt = sqlite_insert(Message).values(packet_id=record.packet_id, **values)
                stmt = stmt.on_conflict_do_update(index_elements=[Message.packet_id], set_=values)
                await session.execute(stmt)
                result = await session.execute(
                    select(Message.id).where(Message.packet_id == record.packet_id)
                )
                record.id = result.scalar_one()
                await session.commit()
                return record

            message = await session.get(Message, record.id) if record.id is not None else None
            if message is None:
                message = Message()
                session.add(message)
            for key, value in values.items():
                setattr(message, key, value)
            await session.commit()
            record.id = message.id
            return record

    async def get_messages(self, limit: int = 500) -> list[MessageRecord]:
        """Most recent messages, oldest first."""
        async with await self.get_session() as session:
            query = select(Message).order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit)
            result = await session.execute(query)
            return [m.to_record() for m in reversed(result.scalars().all())]

    async def clear_messages(self) -> None:
        async with await self.get_session() as session:
            await session.execute(delete(Message))
            await session.commit()

    # Node operations
    async def save_node(self, record: NodeRecord) -> None:
        """Update or create a node record."""
        values = record.to_dict()
        node_id = values.pop("node_id")
        stmt = sqlite_insert(Node).values(node_id=node_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[Node.node_id], set_=values)
        async with await self.get_session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_nodes(self) -> list[NodeRecord]:
        """Get all known nodes."""
        async with await self.get_session() as session:
            result = await session.execute(
                select(Node).order_by(Node.last_heard.desc())
            )
            return [n.to_record() for n in result.scalars().all()]

    async def delete_node(self, node_id: int) -> bool:
        async with await self.get_session() as session:
            result = await session.execute(delete(Node).where(Node.node_id == node_id))
            await session.commit()
            return result.rowcount > 0

    async def clear_nodes(self) -> None:
        async with await self.get_session() as session:
            await session.execute(delete(Node))
            await session.commit()


# Global database instance
db = Database(config.database.path)
