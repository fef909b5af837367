"""Typed task audit entries.

Every TaskHistory row holds exactly one of the entry kinds below. Rollover
entries are stored in the structured columns of the row; the other kinds
are validated and stored as JSON in ``meta_json``.
"""
from datetime import date
from typing import Annotated, List, Literal, Union
import json

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .models import TaskHistory

ROLLOVER_KIND = 'rollover'


class CreateEntry(BaseModel):
    kind: Literal['create'] = 'create'
    scheduled_for: date


class EditEntry(BaseModel):
    kind: Literal['edit'] = 'edit'
    fields: List[str]
    scheduled_for: date


class CompleteEntry(BaseModel):
    kind: Literal['complete'] = 'complete'
    scheduled_for: date


class ReopenEntry(BaseModel):
    kind: Literal['reopen'] = 'reopen'
    scheduled_for: date


class RolloverEntry(BaseModel):
    kind: Literal['rollover'] = 'rollover'
    from_date: date
    to_date: date
    rollover_count_after: int = Field(ge=1)
    backfilled: bool = False


AuditEntry = Annotated[
    Union[CreateEntry, EditEntry, CompleteEntry, ReopenEntry, RolloverEntry],
    Field(discriminator='kind'),
]

_entry_adapter = TypeAdapter(AuditEntry)


def history_row_for(task_id: int, entry) -> TaskHistory:
    """Build an unsaved TaskHistory row for a typed entry."""
    if isinstance(entry, RolloverEntry):
        return TaskHistory(
            task_id=task_id,
            kind=ROLLOVER_KIND,
            from_date=entry.from_date,
            to_date=entry.to_date,
            rollover_count_after=entry.rollover_count_after,
            backfilled=entry.backfilled,
        )
    # round-trip through the adapter so only known kinds are persisted
    entry = _entry_adapter.validate_python(entry.model_dump())
    return TaskHistory(task_id=task_id, kind=entry.kind, meta_json=entry.model_dump_json(exclude={'kind'}))


def entry_from_row(row: TaskHistory):
    """Return the typed entry stored in a TaskHistory row.

    Raises ValueError for unknown kinds or malformed payloads.
    """
    if row.kind == ROLLOVER_KIND:
        data = {
            'kind': ROLLOVER_KIND,
            'from_date': row.from_date,
            'to_date': row.to_date,
            'rollover_count_after': row.rollover_count_after,
            'backfilled': bool(row.backfilled),
        }
    else:
        try:
            data = json.loads(row.meta_json) if row.meta_json else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"history row {row.id}: invalid meta_json") from e
        if not isinstance(data, dict):
            raise ValueError(f"history row {row.id}: meta_json must be an object")
        data['kind'] = row.kind
    try:
        return _entry_adapter.validate_python(data)
    except ValidationError as e:
        raise ValueError(f"history row {row.id}: invalid {row.kind!r} entry") from e
