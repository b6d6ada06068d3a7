import asyncio
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep the rotating sync log out of the real user data dir
os.environ.setdefault("TILLBOOK_DATA_DIR", tempfile.mkdtemp(prefix="tillbook-tests-"))

import pytest
from sqlmodel import Field, SQLModel

from core.settings import SyncSettings
from datetime_utils import UTC
from services.local_apply import LocalChangeApplier
from services.remote_store import ChangeBatch, RemoteAck, RemoteChange
from services.sync_engine import SyncEngine
from services.sync_queue import SyncQueue
from storage.conflicts import ConflictStore
from storage.db import create_db_engine, init_db, make_session_factory
from storage.sync_state import SyncStateStore


class Product(SQLModel, table=True):
    __tablename__ = "products"

    id: str = Field(primary_key=True)
    name: str = ""
    price: float = 0.0
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = ""


class Clock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRemote:
    """In-memory remote store recording every call in order."""

    def __init__(self, *, configured: bool = True):
        self.configured = configured
        self.online = True
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.delays: Dict[str, float] = {}
        self.remote_ids: Dict[str, str] = {}
        self.changes: List[RemoteChange] = []
        self.watermark: Optional[str] = None
        self.changes_error: Optional[BaseException] = None
        self.since_seen: List[Optional[str]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    def is_configured(self) -> bool:
        return self.configured

    def fail(self, record_id: str, *errors: BaseException) -> None:
        self.failures.setdefault(record_id, []).extend(errors)

    async def _record(self, kind: str, table_name: str, record_id: str, data) -> RemoteAck:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        delay = self.delays.get(record_id)
        if delay:
            await asyncio.sleep(delay)
        pending = self.failures.get(record_id)
        if pending:
            raise pending.pop(0)
        self.calls.append((kind, table_name, record_id, data))
        return RemoteAck(remote_id=self.remote_ids.get(record_id, record_id))

    async def upsert(self, table_name, record_id, data):
        return await self._record("upsert", table_name, record_id, data)

    async def delete(self, table_name, record_id, data=None):
        return await self._record("delete", table_name, record_id, data)

    async def get_changes(self, since):
        self.since_seen.append(since)
        self.calls.append(("get_changes", since))
        if self.changes_error is not None:
            raise self.changes_error
        return ChangeBatch(changes=list(self.changes), watermark=self.watermark)

    async def ping(self) -> bool:
        return self.online


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(tmp_path / "tillbook-test.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def queue(session_factory, clock):
    return SyncQueue(session_factory, now=clock)


@pytest.fixture
def state(session_factory):
    return SyncStateStore(session_factory)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def conflicts(session_factory, clock):
    return ConflictStore(session_factory, now=clock)


@pytest.fixture
def applier(queue, state, conflicts):
    return LocalChangeApplier(queue, state, conflicts, {"products": Product, "customers": Customer})


def build_engine(session_factory, queue, state, remote, applier, *, connection=None, **settings):
    return SyncEngine(
        session_factory,
        queue,
        state,
        remote,
        applier,
        connection=connection,
        settings=SyncSettings(**settings),
    )


@pytest.fixture
def sync_engine(session_factory, queue, state, remote, applier):
    return build_engine(session_factory, queue, state, remote, applier)
