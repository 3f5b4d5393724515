from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shelfresolver.models.db import Base


@pytest.fixture
async def async_engine(tmp_path):
    """File-backed SQLite engine with working SAVEPOINTs.

    pysqlite's implicit transaction handling breaks nested transactions, so
    BEGIN is emitted explicitly instead.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/store.db", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    """Provide a database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def dune_raw() -> dict[str, Any]:
    """A clean vision record for a book."""
    return {
        "title": "Dune",
        "author": "Frank Herbert",
        "year": "1965",
        "format": "Paperback",
        "position": "0.25,0.5",
        "confidence": 0.92,
    }


@pytest.fixture
def dvne_raw() -> dict[str, Any]:
    """The same book as misread by OCR."""
    return {"title": "Dvne", "author": "Frank Herbert", "confidence": 0.61}


@pytest.fixture
def openlibrary_edition() -> dict[str, Any]:
    return {
        "key": "/books/OL26242482M",
        "title": "Dune",
        "publishers": ["Ace"],
        "publish_date": "2005",
        "isbn_13": ["9780441013593"],
        "isbn_10": ["0441013597"],
        "covers": [11481354],
        "physical_format": "Mass Market Paperback",
        "number_of_pages": 528,
        "works": [{"key": "/works/OL893415W"}],
    }


@pytest.fixture
def openlibrary_work() -> dict[str, Any]:
    return {
        "key": "/works/OL893415W",
        "title": "Dune",
        "first_publish_date": "1965",
        "description": {"type": "/type/text", "value": "Set on the desert planet Arrakis."},
        "subjects": ["Science fiction", "Arrakis"],
        "authors": [{"author": {"key": "/authors/OL79034A"}, "type": {"key": "/type/author_role"}}],
    }


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
