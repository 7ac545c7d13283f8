"""
State Persistence Layer

Keeps the sync cursor and device trust records durable across restarts.
SQLite (through SQLModel and aiosqlite) is the default backend; an in-memory
store is provided for tests and throwaway bots.

Loading never crashes the bot: unreadable state is logged and treated as
empty, which only means already-seen events are processed again.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import Field, SQLModel, select

from .state import DeviceTrustRecord, TrustState

logger = logging.getLogger(__name__)


class SyncCursorRecord(SQLModel, table=True):
    """SQLModel for the last processed sync cursor of a bot user."""

    __tablename__ = "sync_cursors"

    user_id: str = Field(primary_key=True, description="Bot user id")
    cursor: str = Field(description="Opaque sync token")
    updated_at: float = Field(description="Unix timestamp of the last update")


class DeviceTrustRow(SQLModel, table=True):
    """SQLModel for remote device trust records."""

    __tablename__ = "device_trust"

    user_id: str = Field(primary_key=True, description="Owner of the device")
    device_id: str = Field(primary_key=True, description="Device identifier")
    state: str = Field(description="unknown, pending, verified or rejected")
    rooms: str = Field(default="[]", description="JSON list of room ids the device was seen in")
    transaction_id: Optional[str] = Field(default=None, description="Current verification transaction")
    updated_at: float = Field(description="Unix timestamp of the last transition")

    def to_record(self) -> DeviceTrustRecord:
        return DeviceTrustRecord(
            user_id=self.user_id,
            device_id=self.device_id,
            state=TrustState(self.state),
            rooms=frozenset(json.loads(self.rooms or "[]")),
            transaction_id=self.transaction_id,
            updated_at=self.updated_at,
        )


class StateStore(ABC):
    """Durable storage for the sync cursor and device trust records."""

    @abstractmethod
    async def load_cursor(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def save_cursor(self, user_id: str, cursor: str) -> None:
        pass

    @abstractmethod
    async def load_trust_records(self) -> List[DeviceTrustRecord]:
        pass

    @abstractmethod
    async def save_trust_record(self, record: DeviceTrustRecord) -> None:
        pass

    async def close(self) -> None:
        return None


class MemoryStateStore(StateStore):
    """Non-durable store, state is lost when the process exits."""

    def __init__(self):
        self.cursors: Dict[str, str] = {}
        self.trust_records: Dict[Tuple[str, str], DeviceTrustRecord] = {}

    async def load_cursor(self, user_id: str) -> Optional[str]:
        return self.cursors.get(user_id)

    async def save_cursor(self, user_id: str, cursor: str) -> None:
        self.cursors[user_id] = cursor

    async def load_trust_records(self) -> List[DeviceTrustRecord]:
        return list(self.trust_records.values())

    async def save_trust_record(self, record: DeviceTrustRecord) -> None:
        self.trust_records[record.key] = record


def sqlite_url(database: str) -> str:
    """Accept a plain file path as well as a SQLAlchemy URL."""
    if "://" in database:
        return database
    return f"sqlite+aiosqlite:///{Path(database).expanduser().resolve()}"


class SqlStateStore(StateStore):
    """StateStore backed by SQLite through SQLModel. Tables are created on first use."""

    def __init__(self, database: str):
        self.database_url = sqlite_url(database)
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    async def _connect(self) -> async_sessionmaker:
        if self._sessions is not None:
            return self._sessions

        db_file = self.database_url.split(":///", 1)[-1]
        if self.database_url.startswith("sqlite") and db_file not in ("", ":memory:"):
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

        self._engine = create_async_engine(self.database_url, echo=False)
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._sessions = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        logger.info(f"SqlStateStore: Using {self.database_url}")
        return self._sessions

    @asynccontextmanager
    async def _session(self):
        sessions = await self._connect()
        async with sessions() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def load_cursor(self, user_id: str) -> Optional[str]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(SyncCursorRecord).where(SyncCursorRecord.user_id == user_id)
                )
                record = result.scalar_one_or_none()
                return record.cursor if record else None
        except Exception as e:
            logger.warning(f"SqlStateStore: Could not load sync cursor, starting fresh: {e}")
            return None

    async def save_cursor(self, user_id: str, cursor: str) -> None:
        async with self._session() as session:
            result = await session.execute(
                select(SyncCursorRecord).where(SyncCursorRecord.user_id == user_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = SyncCursorRecord(user_id=user_id, cursor=cursor, updated_at=time.time())
            else:
                record.cursor = cursor
                record.updated_at = time.time()
            session.add(record)
            await session.commit()

    async def load_trust_records(self) -> List[DeviceTrustRecord]:
        records = []
        try:
            async with self._session() as session:
                result = await session.execute(select(DeviceTrustRow))
                rows = result.scalars().all()
        except Exception as e:
            logger.warning(f"SqlStateStore: Could not load device trust records: {e}")
            return records

        for row in rows:
            try:
                records.append(row.to_record())
            except (ValueError, TypeError) as e:
                logger.warning(
                    f"SqlStateStore: Skipping unreadable trust record {row.user_id}/{row.device_id}: {e}"
                )
        return records

    async def save_trust_record(self, record: DeviceTrustRecord) -> None:
        async with self._session() as session:
            result = await session.execute(
                select(DeviceTrustRow).where(
                    DeviceTrustRow.user_id == record.user_id,
                    DeviceTrustRow.device_id == record.device_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = DeviceTrustRow(
                    user_id=record.user_id,
                    device_id=record.device_id,
                    state=record.state.value,
                    updated_at=record.updated_at,
                )
            row.state = record.state.value
            row.rooms = json.dumps(sorted(record.rooms))
            row.transaction_id = record.transaction_id
            row.updated_at = record.updated_at
            session.add(row)
            await session.commit()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None


def create_state_store(database_url: Optional[str]) -> StateStore:
    """Build the configured store; no URL means state is kept in memory only."""
    if not database_url:
        return MemoryStateStore()
    return SqlStateStore(database_url)
