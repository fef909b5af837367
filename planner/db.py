from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import event

import os
import logging

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./planner.db")


def _is_sqlite_url(url: str | None) -> bool:
    return bool(url) and url.startswith('sqlite')


def _install_sqlite_immediate_transactions(async_engine) -> None:
    """Make every SQLite transaction start with BEGIN IMMEDIATE.

    pysqlite's default deferred BEGIN lets two writers both read and then
    deadlock on the write upgrade. Taking the write lock up front serializes
    check-then-write units such as a task rollover, and the busy timeout
    makes the second writer wait instead of failing.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # disable the driver's own implicit BEGIN so ours is the only one
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(url: str):
    """Build the async engine used by the app and the admin scripts."""
    connect_args = {}
    if _is_sqlite_url(url):
        connect_args['timeout'] = float(os.getenv('SQLITE_BUSY_TIMEOUT_SECONDS', '30'))
    # Use NullPool so connections are never shared across event loops
    # (pytest-asyncio creates a fresh loop per test).
    eng = create_async_engine(url, echo=False, future=True, poolclass=NullPool, connect_args=connect_args)
    if _is_sqlite_url(url):
        _install_sqlite_immediate_transactions(eng)
    return eng


engine = create_engine_for_url(DATABASE_URL)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # import models so their tables are registered on SQLModel.metadata
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('database schema ready (%s)', DATABASE_URL)
