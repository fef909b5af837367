"""SQLModel-backed collaborators for the rollover engine.

SqlTaskStore opens one session transaction per task so the idempotency
check, the task update and the audit insert commit or roll back together.
Driver errors are translated into the engine's error taxonomy here.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import List, Optional
import logging

from sqlmodel import select
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from .audit import ROLLOVER_KIND, RolloverEntry, entry_from_row, history_row_for
from .errors import PartialTaskFailure, RolloverError, StorageUnavailable, TransactionConflict
from .models import Task, TaskHistory, TaskStatus, User
from .rollover import TaskSnapshot
from .utils import now_utc

logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def _is_unavailable(exc: BaseException) -> bool:
    if isinstance(exc, _UNAVAILABLE_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and bool(getattr(exc, 'connection_invalidated', False))


def _snapshot(task: Task) -> TaskSnapshot:
    return TaskSnapshot(
        id=task.id,
        status=task.status,
        scheduled_for=task.scheduled_for,
        rollover_count=task.rollover_count or 0,
        owner_id=task.owner_id,
    )


@dataclass(frozen=True)
class UserRecord:
    id: int
    timezone: Optional[str]


class SqlTaskTransaction:
    """Per-task unit of work handed out by SqlTaskStore.transaction()."""

    def __init__(self, sess):
        self._sess = sess

    async def get_task(self, task_id: int) -> Optional[TaskSnapshot]:
        task = await self._sess.get(Task, task_id)
        return _snapshot(task) if task is not None else None

    async def find_open_tasks_scheduled_on(self, user_id: int, day: date) -> List[TaskSnapshot]:
        q = (
            select(Task)
            .where(Task.owner_id == user_id)
            .where(Task.status == TaskStatus.OPEN.value)
            .where(Task.scheduled_for == day)
            .order_by(Task.position_index, Task.id)
        )
        res = await self._sess.exec(q)
        return [_snapshot(t) for t in res.all()]

    async def find_rollover_audit(self, task_id: int, to_date: date) -> Optional[RolloverEntry]:
        q = (
            select(TaskHistory)
            .where(TaskHistory.task_id == task_id)
            .where(TaskHistory.kind == ROLLOVER_KIND)
            .where(TaskHistory.to_date == to_date)
        )
        res = await self._sess.exec(q)
        row = res.first()
        return entry_from_row(row) if row is not None else None

    async def update_task_schedule(self, task_id: int, new_date: date, new_rollover_count: int,
                                   expected_date: Optional[date] = None) -> bool:
        """Move an open task to new_date. Returns False if no row matched.

        When expected_date is given the update only applies while the task is
        still on that day, so a task moved by someone else is left untouched.
        """
        stmt = (
            sqlalchemy_update(Task)
            .where(Task.id == task_id)
            .where(Task.status == TaskStatus.OPEN.value)
            .values(scheduled_for=new_date, rollover_count=new_rollover_count, modified_at=now_utc())
        )
        if expected_date is not None:
            stmt = stmt.where(Task.scheduled_for == expected_date)
        res = await self._sess.exec(stmt)
        return (res.rowcount or 0) == 1

    async def create_rollover_audit(self, task_id: int, entry: RolloverEntry) -> None:
        self._sess.add(history_row_for(task_id, entry))
        try:
            await self._sess.flush()
        except IntegrityError as e:
            # unique (task_id, kind, to_date) lost to a concurrent run
            raise TransactionConflict(task_id) from e


class SqlTaskStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def find_open_tasks_scheduled_on(self, user_id: int, day: date) -> List[TaskSnapshot]:
        try:
            async with self._session_factory() as sess:
                return await SqlTaskTransaction(sess).find_open_tasks_scheduled_on(user_id, day)
        except SQLAlchemyError as e:
            if _is_unavailable(e):
                raise StorageUnavailable(f'task store unavailable: {e}') from e
            raise

    @asynccontextmanager
    async def transaction(self, task_id: int):
        """Yield a SqlTaskTransaction whose work commits atomically on exit."""
        try:
            async with self._session_factory() as sess:
                async with sess.begin():
                    yield SqlTaskTransaction(sess)
        except RolloverError:
            raise
        except SQLAlchemyError as e:
            if _is_unavailable(e):
                raise StorageUnavailable(f'task store unavailable: {e}') from e
            logger.exception('rollover transaction failed for task %s', task_id)
            raise PartialTaskFailure(task_id, str(e)) from e
        except ValueError as e:
            # malformed audit row for this task
            raise PartialTaskFailure(task_id, str(e)) from e


class SqlUserDirectory:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def list_users(self) -> List[UserRecord]:
        async with self._session_factory() as sess:
            res = await sess.exec(select(User).order_by(User.id))
            return [UserRecord(id=u.id, timezone=u.timezone) for u in res.all()]

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        async with self._session_factory() as sess:
            u = await sess.get(User, user_id)
            return UserRecord(id=u.id, timezone=u.timezone) if u is not None else None


def build_engine(session_factory=None, **kwargs):
    """Wire a RolloverEngine to the SQL store and directory."""
    from .rollover import RolloverEngine
    if session_factory is None:
        from .db import async_session as session_factory
    return RolloverEngine(SqlTaskStore(session_factory), SqlUserDirectory(session_factory), **kwargs)
