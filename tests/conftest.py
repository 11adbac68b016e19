import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dora_core.database.base import Base
from dora_core.models.deployment import Deployment
from dora_core.models.incident import Incident
from dora_core.models.watermark import SourceWatermark  # noqa: F401
from dora_core.reconciler.policy import EntityKind
from dora_core.reconciler.service import Reconciler
from dora_core.store.repository import EventStore

_KEY_COLUMNS = {
    EntityKind.DEPLOYMENT: (Deployment, Deployment.external_run_id),
    EntityKind.INCIDENT: (Incident, Incident.external_incident_number),
}


def _session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite event store with the production schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield _session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def serialized_session_factory(tmp_path):
    """
    File-backed SQLite with one connection per session and every transaction
    opened as BEGIN IMMEDIATE, so concurrent writers queue on the database lock
    the way SELECT ... FOR UPDATE queues them on PostgreSQL.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield _session_factory(engine)

    await engine.dispose()


@pytest.fixture
def store():
    return EventStore()


@pytest.fixture
def reconciler(session_factory):
    return Reconciler(session_factory)


@pytest.fixture
def fetch_record(session_factory, store):
    """Read a record back through a fresh session."""
    async def _fetch(kind, key, factory=None):
        model, column = _KEY_COLUMNS[kind]
        async with (factory or session_factory)() as session:
            result = await session.execute(select(model).where(column == key))
            record = result.scalar_one_or_none()
            return None if record is None else store.state_of(record)
    return _fetch


@pytest.fixture
def count_records(session_factory):
    async def _count(model, factory=None):
        async with (factory or session_factory)() as session:
            result = await session.execute(select(func.count()).select_from(model))
            return result.scalar_one()
    return _count
