from typing import Optional
from datetime import date, datetime
from enum import Enum
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import Index, UniqueConstraint


class TaskStatus(str, Enum):
    OPEN = 'open'
    DONE = 'done'


class User(SQLModel, table=True):
    """Planner user: password stored as a pbkdf2/bcrypt hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    is_admin: bool = Field(default=False)
    # IANA timezone name; the user's "today" and rollover boundary derive from it.
    timezone: str = Field(default='UTC')
    created_at: datetime | None = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    status: str = Field(default=TaskStatus.OPEN.value)
    # Calendar day the task is on. Naive date, no time component.
    scheduled_for: date = Field(index=True)
    due_date: Optional[date] = None
    # Optional per-task priority: 1 (lowest) .. 10 (highest).
    priority: Optional[int] = None
    # Position among the owner's tasks on the same day.
    position_index: int = Field(default=0)
    # Number of times the rollover engine carried this task forward. Only the
    # engine writes it and it never decreases.
    rollover_count: int = Field(default=0)
    created_at: datetime | None = Field(default_factory=now_utc)
    modified_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        Index('ix_task_owner_status_day', 'owner_id', 'status', 'scheduled_for'),
    )


class TaskHistory(SQLModel, table=True):
    """Append-only audit trail for a task.

    Rollover rows carry their payload in the structured columns below so
    the (task_id, to_date) idempotency lookup is an indexed query. Other
    kinds store a validated JSON payload in meta_json (see planner.audit).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key="task.id", index=True)
    kind: str = Field(index=True)
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    rollover_count_after: Optional[int] = None
    backfilled: bool = Field(default=False)
    meta_json: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)

    # At most one rollover record per task per target day. Non-rollover kinds
    # leave to_date NULL, which never collides.
    __table_args__ = (
        UniqueConstraint('task_id', 'kind', 'to_date', name='uq_taskhistory_task_kind_to_date'),
    )


class DayNote(SQLModel, table=True):
    """Free-text note attached to one of a user's calendar days."""
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    day: date = Field(index=True)
    content_text: str = Field(default='')
    modified_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (UniqueConstraint('owner_id', 'day'),)


class Tag(SQLModel, table=True):
    """A user's task label. Names are stored trimmed and lowercased."""
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    name: str = Field(index=True)

    __table_args__ = (UniqueConstraint('owner_id', 'name', name='uq_tag_owner_name'),)


class TaskTag(SQLModel, table=True):
    task_id: Optional[int] = Field(default=None, foreign_key="task.id", primary_key=True)
    tag_id: Optional[int] = Field(default=None, foreign_key="tag.id", primary_key=True)
