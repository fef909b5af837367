import sys
import os
import pathlib
import tempfile
import uuid
import warnings
from datetime import date

import pytest
import pytest_asyncio

# Point the app at a throwaway SQLite file before planner.db builds its engine.
_TEST_DB_DIR = tempfile.mkdtemp(prefix='planner-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{_TEST_DB_DIR}/planner_test.db")
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from httpx import AsyncClient, ASGITransport
from sqlmodel import SQLModel, select

from planner import db as planner_db
from planner.db import async_session
from planner.main import app
from planner.models import Task, TaskHistory, User
from planner.auth import pwd_context
from planner.store import build_engine


@pytest_asyncio.fixture
async def ensure_db():
    """Start every test from empty tables."""
    from planner import models  # noqa: F401
    async with planner_db.engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)


@pytest_asyncio.fixture
async def make_user(ensure_db):
    async def _make(username: str | None = None, timezone: str = 'UTC', is_admin: bool = False, password: str = 'pw') -> User:
        async with async_session() as sess:
            u = User(
                username=username or f"user-{uuid.uuid4().hex[:8]}",
                password_hash=pwd_context.hash(password),
                is_admin=is_admin,
                timezone=timezone,
            )
            sess.add(u)
            await sess.commit()
            await sess.refresh(u)
            return u
    return _make


@pytest_asyncio.fixture
async def make_task(ensure_db):
    async def _make(owner: User, scheduled_for: date, status: str = 'open', rollover_count: int = 0, title: str | None = None) -> Task:
        async with async_session() as sess:
            t = Task(
                owner_id=owner.id,
                title=title or f"task-{uuid.uuid4().hex[:6]}",
                scheduled_for=scheduled_for,
                status=status,
                rollover_count=rollover_count,
            )
            sess.add(t)
            await sess.commit()
            await sess.refresh(t)
            return t
    return _make


async def load_task(task_id: int) -> Task:
    async with async_session() as sess:
        return await sess.get(Task, task_id)


async def rollover_rows(task_id: int) -> list[TaskHistory]:
    async with async_session() as sess:
        q = await sess.exec(
            select(TaskHistory)
            .where(TaskHistory.task_id == task_id)
            .where(TaskHistory.kind == 'rollover')
            .order_by(TaskHistory.to_date)
        )
        return list(q.all())


@pytest.fixture
def rollover_engine(ensure_db):
    return build_engine(async_session, max_workers=2)


async def _login(ac: AsyncClient, username: str, password: str) -> None:
    resp = await ac.post("/auth/token", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    ac.headers.update({"Authorization": f"Bearer {resp.json()['access_token']}"})


@pytest_asyncio.fixture
async def client(make_user):
    """Authenticated client for an admin user named 'testuser'."""
    await make_user(username='testuser', password='testpass', is_admin=True)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        await _login(ac, 'testuser', 'testpass')
        yield ac


@pytest_asyncio.fixture
async def user_client(make_user):
    """Authenticated client for a regular (non-admin) user named 'plainuser'."""
    await make_user(username='plainuser', password='plainpass', is_admin=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        await _login(ac, 'plainuser', 'plainpass')
        yield ac


@pytest_asyncio.fixture
async def anon_client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
