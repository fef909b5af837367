from fastapi import FastAPI, HTTPException, Depends, Request
from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import func
from pydantic import BaseModel
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional
import asyncio
import logging
import sys

from . import config
from .audit import CompleteEntry, CreateEntry, EditEntry, ReopenEntry, entry_from_row, history_row_for
from .auth import create_access_token, authenticate_user, require_login
from .dates import format_date, parse_date, iter_days, local_midnight, is_within_rollover_window, week_days
from .db import async_session, init_db
from .errors import ConfigurationError
from .models import DayNote, Tag, Task, TaskHistory, TaskStatus, TaskTag, User
from .rollover_api import router as rollover_router
from .store import build_engine
from .utils import now_utc, normalize_tag, normalize_title

logger = logging.getLogger(__name__)
# Ensure INFO-level messages appear on the server console when no handlers
# are configured.
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

# Widest range /days will return in one call.
MAX_DAYS_RANGE = 62

# /search: queries shorter than this return nothing; each of tasks and notes
# is capped at SEARCH_LIMIT matches and the merged list at SEARCH_MAX_RESULTS.
SEARCH_MIN_LENGTH = 2
SEARCH_LIMIT = 20
SEARCH_MAX_RESULTS = 15
SNIPPET_CONTEXT = 50
NOTE_PREVIEW_LENGTH = 100


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    stop_event = asyncio.Event()

    async def _rollover_worker(interval: int):
        engine = build_engine(async_session)
        while not stop_event.is_set():
            try:
                await asyncio.sleep(interval)
                await engine.run_for_all_users()
            except asyncio.CancelledError:
                break
            except Exception:
                # log unexpected errors but keep the worker running
                logger.exception("rollover worker encountered an error")

    task = None
    if config.ROLLOVER_SCHEDULER_ENABLED:
        interval = config.ROLLOVER_INTERVAL_SECONDS or 300
        logger.info('rollover scheduler: enabled (every %ds)', interval)
        task = asyncio.create_task(_rollover_worker(interval))
    else:
        logger.info('rollover scheduler: disabled (set ROLLOVER_SCHEDULER_ENABLED=1 to enable)')
    try:
        yield
    finally:
        stop_event.set()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(lifespan=lifespan)
app.include_router(rollover_router)


class TokenRequest(BaseModel):
    username: str
    password: str


def _serialize_task(task: Task, tags: Optional[list[str]] = None) -> dict:
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'scheduled_for': format_date(task.scheduled_for),
        'due_date': format_date(task.due_date) if task.due_date else None,
        'priority': task.priority,
        'position_index': task.position_index,
        'rollover_count': task.rollover_count,
        'tags': sorted(tags or []),
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'modified_at': task.modified_at.isoformat() if task.modified_at else None,
    }


def _serialize_note(note: DayNote) -> dict:
    return {
        'day': format_date(note.day),
        'content_text': note.content_text,
        'modified_at': note.modified_at.isoformat() if note.modified_at else None,
    }


def _date_field(payload: dict, key: str, required: bool = False) -> Optional[date]:
    value = payload.get(key)
    if value is None or value == '':
        if required:
            raise HTTPException(status_code=400, detail=f"{key} is required")
        return None
    try:
        return parse_date(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{key} must be a YYYY-MM-DD date")


def _priority_field(payload: dict) -> Optional[int]:
    priority = payload.get('priority')
    if priority is None or (isinstance(priority, str) and priority.strip() == ''):
        return None
    try:
        priority = int(priority)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="priority must be an integer")
    if not 1 <= priority <= 10:
        raise HTTPException(status_code=400, detail="priority must be between 1 and 10")
    return priority


def _tags_field(payload: dict) -> list[str]:
    """Normalized, de-duplicated tag names from payload['tags']. Blank names are skipped."""
    raw = payload.get('tags')
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(t, str) for t in raw):
        raise HTTPException(status_code=400, detail="tags must be a list of strings")
    names: list[str] = []
    for t in raw:
        try:
            name = normalize_tag(t)
        except ValueError:
            continue
        if name not in names:
            names.append(name)
    return names


async def _sync_task_tags(sess, owner_id: int, task_id: int, names: list[str]) -> bool:
    """Make the task's tag links match names, creating missing Tag rows.

    Does not commit. Returns True when the set of linked tags changed.
    """
    existing: dict[str, int] = {}
    if names:
        res = await sess.exec(select(Tag).where(Tag.owner_id == owner_id).where(Tag.name.in_(names)))
        for tag in res.all():
            existing[tag.name] = tag.id
        missing = [n for n in names if n not in existing]
        if missing:
            new_tags = [Tag(owner_id=owner_id, name=n) for n in missing]
            sess.add_all(new_tags)
            # flush assigns primary keys without committing
            await sess.flush()
            for tag in new_tags:
                existing[tag.name] = tag.id

    desired = {existing[n] for n in names}
    res_links = await sess.exec(select(TaskTag.tag_id).where(TaskTag.task_id == task_id))
    current = set(res_links.all())
    to_delete = current - desired
    to_insert = desired - current
    if to_delete:
        await sess.exec(
            sqlalchemy_delete(TaskTag)
            .where(TaskTag.task_id == task_id)
            .where(TaskTag.tag_id.in_(list(to_delete)))
        )
    if to_insert:
        sess.add_all([TaskTag(task_id=task_id, tag_id=tid) for tid in sorted(to_insert)])
        await sess.flush()
    return bool(to_delete or to_insert)


async def _tags_by_task(sess, task_ids: list[int]) -> dict[int, list[str]]:
    tags: dict[int, list[str]] = {}
    if not task_ids:
        return tags
    res = await sess.exec(
        select(TaskTag.task_id, Tag.name)
        .join(Tag, Tag.id == TaskTag.tag_id)
        .where(TaskTag.task_id.in_(task_ids))
    )
    for task_id, name in res.all():
        tags.setdefault(task_id, []).append(name)
    return tags


def _note_snippet(content: str, query: str) -> str:
    """Up to SNIPPET_CONTEXT characters either side of the first match."""
    index = content.lower().find(query.lower())
    if index < 0:
        return content
    start = max(0, index - SNIPPET_CONTEXT)
    end = min(len(content), index + len(query) + SNIPPET_CONTEXT)
    return ('...' if start > 0 else '') + content[start:end] + ('...' if end < len(content) else '')


async def _read_json(request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON object expected")
    return payload


async def _get_owned_task(sess, task_id: int, current_user: User) -> Task:
    task = await sess.get(Task, task_id)
    # other users' tasks look the same as missing ones
    if not task or task.owner_id != current_user.id:
        raise HTTPException(status_code=404, detail="task not found")
    return task


@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


@app.get('/me/today')
async def my_today(current_user: User = Depends(require_login)):
    """The caller's local calendar day and whether the rollover window is open."""
    try:
        today = local_midnight(current_user.timezone)
        in_window = is_within_rollover_window(current_user.timezone)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'today': format_date(today), 'timezone': current_user.timezone, 'rollover_window': in_window}


@app.post("/tasks")
async def create_task(request: Request, current_user: User = Depends(require_login)):
    """
    Create a task on a calendar day. Expects JSON payload with:
    - title: str (required)
    - scheduled_for: YYYY-MM-DD (required)
    - description: str (optional)
    - due_date: YYYY-MM-DD (optional)
    - priority: int 1..10 (optional)
    - tags: list of str (optional; trimmed, lowercased, created on first use)
    """
    payload = await _read_json(request)
    try:
        title = normalize_title(payload.get('title') if isinstance(payload.get('title'), str) else None)
    except ValueError:
        raise HTTPException(status_code=400, detail="title is required and must be a string")
    scheduled_for = _date_field(payload, 'scheduled_for', required=True)
    due_date = _date_field(payload, 'due_date')
    priority = _priority_field(payload)
    description = payload.get('description') or None
    tags = _tags_field(payload)

    async with async_session() as sess:
        q = await sess.exec(
            select(func.max(Task.position_index))
            .where(Task.owner_id == current_user.id)
            .where(Task.scheduled_for == scheduled_for)
        )
        max_pos = q.first()
        task = Task(
            owner_id=current_user.id,
            title=title,
            description=description,
            scheduled_for=scheduled_for,
            due_date=due_date,
            priority=priority,
            position_index=(max_pos if max_pos is not None else -1) + 1,
        )
        sess.add(task)
        await sess.flush()
        if tags:
            await _sync_task_tags(sess, current_user.id, task.id, tags)
        sess.add(history_row_for(task.id, CreateEntry(scheduled_for=scheduled_for)))
        await sess.commit()
        await sess.refresh(task)
    logger.info('task %s created for user %s on %s', task.id, current_user.id, format_date(scheduled_for))
    return _serialize_task(task, tags)


@app.patch("/tasks/{task_id}")
async def update_task(task_id: int, request: Request, current_user: User = Depends(require_login)):
    """
    Update a task. Optional fields: title, description, status ('open'|'done'),
    scheduled_for, due_date, priority, position_index, tags (replaces the
    task's tag set). rollover_count is maintained by the rollover engine and
    cannot be set.
    """
    payload = await _read_json(request)
    if 'rollover_count' in payload:
        raise HTTPException(status_code=400, detail="rollover_count is managed by the server")
    tags = _tags_field(payload) if 'tags' in payload else None

    async with async_session() as sess:
        task = await _get_owned_task(sess, task_id, current_user)
        changed: list[str] = []

        if 'title' in payload:
            try:
                title = normalize_title(payload['title'] if isinstance(payload['title'], str) else None)
            except ValueError:
                raise HTTPException(status_code=400, detail="title must be a non-empty string")
            if title != task.title:
                task.title = title
                changed.append('title')
        if 'description' in payload:
            description = payload['description'] or None
            if description != task.description:
                task.description = description
                changed.append('description')
        if 'scheduled_for' in payload:
            scheduled_for = _date_field(payload, 'scheduled_for', required=True)
            if scheduled_for != task.scheduled_for:
                task.scheduled_for = scheduled_for
                changed.append('scheduled_for')
        if 'due_date' in payload:
            due_date = _date_field(payload, 'due_date')
            if due_date != task.due_date:
                task.due_date = due_date
                changed.append('due_date')
        if 'priority' in payload:
            priority = _priority_field(payload)
            if priority != task.priority:
                task.priority = priority
                changed.append('priority')
        if 'position_index' in payload:
            try:
                position_index = int(payload['position_index'])
            except (TypeError, ValueError):
                raise HTTPException(status_code=400, detail="position_index must be an integer")
            if position_index != task.position_index:
                task.position_index = position_index
                changed.append('position_index')

        status_entry = None
        if 'status' in payload:
            try:
                new_status = TaskStatus(payload['status'])
            except ValueError:
                raise HTTPException(status_code=400, detail="status must be 'open' or 'done'")
            if new_status != task.status:
                task.status = new_status.value
                if new_status == TaskStatus.DONE:
                    status_entry = CompleteEntry(scheduled_for=task.scheduled_for)
                else:
                    status_entry = ReopenEntry(scheduled_for=task.scheduled_for)

        if tags is not None and await _sync_task_tags(sess, current_user.id, task.id, tags):
            changed.append('tags')

        if changed or status_entry is not None:
            task.modified_at = now_utc()
            sess.add(task)
            if changed:
                sess.add(history_row_for(task.id, EditEntry(fields=sorted(changed), scheduled_for=task.scheduled_for)))
            if status_entry is not None:
                sess.add(history_row_for(task.id, status_entry))
            await sess.commit()
            await sess.refresh(task)
        tag_map = await _tags_by_task(sess, [task.id])
        return _serialize_task(task, tag_map.get(task.id))


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        task = await _get_owned_task(sess, task_id, current_user)
        # history rows belong to the task and go with it
        await sess.exec(sqlalchemy_delete(TaskHistory).where(TaskHistory.task_id == task_id))
        await sess.exec(sqlalchemy_delete(TaskTag).where(TaskTag.task_id == task_id))
        await sess.delete(task)
        await sess.commit()
    return {'ok': True, 'deleted': task_id}


@app.get("/tasks/{task_id}/history")
async def task_history(task_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        await _get_owned_task(sess, task_id, current_user)
        q = await sess.exec(
            select(TaskHistory).where(TaskHistory.task_id == task_id).order_by(TaskHistory.id)
        )
        rows = q.all()
    entries = []
    for row in rows:
        try:
            entry = entry_from_row(row)
        except ValueError:
            logger.exception('skipping unreadable history row %s', row.id)
            continue
        item = entry.model_dump(mode='json')
        item['created_at'] = row.created_at.isoformat() if row.created_at else None
        entries.append(item)
    return {'task_id': task_id, 'history': entries}


@app.get("/days")
async def list_days(start: Optional[str] = None, end: Optional[str] = None,
                    current_user: User = Depends(require_login)):
    """Tasks and note for every day from start to end inclusive.

    Without start and end, returns the Monday..Sunday week containing the
    caller's local today.
    """
    if start is None and end is None:
        try:
            week = week_days(local_midnight(current_user.timezone))
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        start_day, end_day = week[0], week[-1]
    else:
        try:
            start_day = parse_date(start)
            end_day = parse_date(end)
        except ValueError:
            raise HTTPException(status_code=400, detail="start and end must be YYYY-MM-DD dates")
    if end_day < start_day:
        raise HTTPException(status_code=400, detail="end must not be before start")
    if (end_day - start_day).days >= MAX_DAYS_RANGE:
        raise HTTPException(status_code=400, detail=f"range is limited to {MAX_DAYS_RANGE} days")

    async with async_session() as sess:
        qt = await sess.exec(
            select(Task)
            .where(Task.owner_id == current_user.id)
            .where(Task.scheduled_for >= start_day)
            .where(Task.scheduled_for <= end_day)
            .order_by(Task.scheduled_for, Task.position_index, Task.id)
        )
        tasks = qt.all()
        tag_map = await _tags_by_task(sess, [t.id for t in tasks])
        qn = await sess.exec(
            select(DayNote)
            .where(DayNote.owner_id == current_user.id)
            .where(DayNote.day >= start_day)
            .where(DayNote.day <= end_day)
        )
        notes = qn.all()

    days = {format_date(d): {'date': format_date(d), 'tasks': [], 'note': None} for d in iter_days(start_day, end_day)}
    for t in tasks:
        days[format_date(t.scheduled_for)]['tasks'].append(_serialize_task(t, tag_map.get(t.id)))
    for n in notes:
        days[format_date(n.day)]['note'] = _serialize_note(n)
    return {'days': list(days.values())}


@app.get("/search")
async def search(q: str = '', current_user: User = Depends(require_login)):
    """Substring search over the caller's tasks and day notes, newest day first.

    A query starting with '#' matches tasks by tag name instead of title and
    description. Notes always match on the query text as typed.
    """
    query = q.strip()
    if len(query) < SEARCH_MIN_LENGTH:
        return {'results': []}
    tag_search = query.startswith('#')
    term = query[1:].strip().lower() if tag_search else query
    like = f"%{term}%"

    async with async_session() as sess:
        if tag_search:
            qt = (
                select(Task)
                .join(TaskTag, TaskTag.task_id == Task.id)
                .join(Tag, Tag.id == TaskTag.tag_id)
                .where(Task.owner_id == current_user.id)
                .where(Tag.name.ilike(like))
                .distinct()
            )
        else:
            qt = (
                select(Task)
                .where(Task.owner_id == current_user.id)
                .where((Task.title.ilike(like)) | (Task.description.ilike(like)))
            )
        qt = qt.order_by(Task.scheduled_for.desc(), Task.id.desc()).limit(SEARCH_LIMIT)
        tasks = (await sess.exec(qt)).all()
        qn = (
            select(DayNote)
            .where(DayNote.owner_id == current_user.id)
            .where(DayNote.content_text.ilike(f"%{query}%"))
            .order_by(DayNote.day.desc())
            .limit(SEARCH_LIMIT)
        )
        notes = (await sess.exec(qn)).all()

    results = [
        {
            'id': t.id,
            'type': 'task',
            'date': format_date(t.scheduled_for),
            'content': t.title,
            'snippet': t.description or t.title,
        }
        for t in tasks
    ]
    for n in notes:
        content = n.content_text
        results.append({
            'id': n.id,
            'type': 'note',
            'date': format_date(n.day),
            'content': content[:NOTE_PREVIEW_LENGTH] + ('...' if len(content) > NOTE_PREVIEW_LENGTH else ''),
            'snippet': _note_snippet(content, query),
        })
    # ISO dates sort chronologically as strings
    results.sort(key=lambda r: r['date'], reverse=True)
    return {'results': results[:SEARCH_MAX_RESULTS]}


@app.get("/day-notes/{day}")
async def get_day_note(day: str, current_user: User = Depends(require_login)):
    try:
        d = parse_date(day)
    except ValueError:
        raise HTTPException(status_code=400, detail="day must be a YYYY-MM-DD date")
    async with async_session() as sess:
        q = await sess.exec(select(DayNote).where(DayNote.owner_id == current_user.id).where(DayNote.day == d))
        note = q.first()
    if not note:
        return {'day': format_date(d), 'content_text': '', 'modified_at': None}
    return _serialize_note(note)


@app.put("/day-notes/{day}")
async def put_day_note(day: str, request: Request, current_user: User = Depends(require_login)):
    try:
        d = parse_date(day)
    except ValueError:
        raise HTTPException(status_code=400, detail="day must be a YYYY-MM-DD date")
    payload = await _read_json(request)
    content = payload.get('content_text')
    if content is None:
        content = ''
    if not isinstance(content, str):
        raise HTTPException(status_code=400, detail="content_text must be a string")
    async with async_session() as sess:
        q = await sess.exec(select(DayNote).where(DayNote.owner_id == current_user.id).where(DayNote.day == d))
        note = q.first()
        if note:
            note.content_text = content
            note.modified_at = now_utc()
        else:
            note = DayNote(owner_id=current_user.id, day=d, content_text=content)
        sess.add(note)
        await sess.commit()
        await sess.refresh(note)
    return _serialize_note(note)
