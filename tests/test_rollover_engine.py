import asyncio
import logging
from datetime import date, datetime, timezone

import pytest

from planner.db import async_session
from planner.errors import ConfigurationError
from planner.models import TaskHistory
from conftest import load_task, rollover_rows

pytestmark = pytest.mark.asyncio

# 00:05 UTC on 2024-01-02: inside the rollover window for UTC users
NOW = datetime(2024, 1, 2, 0, 5, tzinfo=timezone.utc)
YESTERDAY = date(2024, 1, 1)
TODAY = date(2024, 1, 2)


async def test_open_task_rolls_to_today(make_user, make_task, rollover_engine):
    user = await make_user()
    task = await make_task(user, YESTERDAY)

    result = await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)

    assert result.user_id == user.id
    assert result.tasks_rolled == 1
    assert result.from_date == YESTERDAY
    assert result.to_date == TODAY
    assert result.failures == []

    t = await load_task(task.id)
    assert t.scheduled_for == TODAY
    assert t.rollover_count == 1
    rows = await rollover_rows(task.id)
    assert len(rows) == 1
    assert (rows[0].from_date, rows[0].to_date, rows[0].rollover_count_after) == (YESTERDAY, TODAY, 1)
    assert rows[0].backfilled is False


async def test_second_run_same_day_is_noop(make_user, make_task, rollover_engine):
    user = await make_user()
    task = await make_task(user, YESTERDAY)

    first = await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)
    second = await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)

    assert first.tasks_rolled == 1
    assert second.tasks_rolled == 0
    t = await load_task(task.id)
    assert t.scheduled_for == TODAY
    assert t.rollover_count == 1
    assert len(await rollover_rows(task.id)) == 1


async def test_done_and_stale_tasks_are_not_rolled(make_user, make_task, rollover_engine):
    user = await make_user()
    done = await make_task(user, YESTERDAY, status='done')
    stale = await make_task(user, date(2023, 12, 31))
    current = await make_task(user, TODAY)

    result = await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)

    assert result.tasks_rolled == 0
    assert (await load_task(done.id)).scheduled_for == YESTERDAY
    assert (await load_task(stale.id)).scheduled_for == date(2023, 12, 31)
    assert (await load_task(current.id)).rollover_count == 0
    for t in (done, stale, current):
        assert await rollover_rows(t.id) == []


async def test_only_the_given_users_tasks_roll(make_user, make_task, rollover_engine):
    alice = await make_user()
    bob = await make_user()
    a_task = await make_task(alice, YESTERDAY)
    b_task = await make_task(bob, YESTERDAY)

    result = await rollover_engine.execute_rollover(alice.id, alice.timezone, now=NOW)

    assert result.tasks_rolled == 1
    assert (await load_task(a_task.id)).scheduled_for == TODAY
    assert (await load_task(b_task.id)).scheduled_for == YESTERDAY


async def test_counter_grows_by_one_per_day(make_user, make_task, rollover_engine):
    user = await make_user()
    task = await make_task(user, YESTERDAY, rollover_count=4)

    for day in range(2, 6):
        now = datetime(2024, 1, day, 0, 1, tzinfo=timezone.utc)
        result = await rollover_engine.execute_rollover(user.id, user.timezone, now=now)
        assert result.tasks_rolled == 1
        t = await load_task(task.id)
        assert t.rollover_count == 4 + (day - 1)
        assert t.scheduled_for == date(2024, 1, day)

    rows = await rollover_rows(task.id)
    assert [r.rollover_count_after for r in rows] == [5, 6, 7, 8]


async def test_existing_marker_prevents_second_roll(make_user, make_task, rollover_engine):
    """A task moved back to yesterday after rolling keeps its place."""
    user = await make_user()
    task = await make_task(user, YESTERDAY)
    async with async_session() as sess:
        sess.add(TaskHistory(task_id=task.id, kind='rollover', from_date=YESTERDAY, to_date=TODAY, rollover_count_after=1))
        await sess.commit()

    result = await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)

    assert result.tasks_rolled == 0
    assert result.tasks_skipped == 1
    t = await load_task(task.id)
    assert t.scheduled_for == YESTERDAY
    assert t.rollover_count == 0


async def test_user_timezone_decides_the_day(make_user, make_task, rollover_engine):
    # 2024-01-01 13:05 UTC is 2024-01-02 00:05 in Melbourne
    now = datetime(2024, 1, 1, 13, 5, tzinfo=timezone.utc)
    mel = await make_user(timezone='Australia/Melbourne')
    utc_user = await make_user(timezone='UTC')
    mel_task = await make_task(mel, YESTERDAY)
    utc_task = await make_task(utc_user, YESTERDAY)

    mel_result = await rollover_engine.execute_rollover(mel.id, mel.timezone, now=now)
    utc_result = await rollover_engine.execute_rollover(utc_user.id, utc_user.timezone, now=now)

    assert mel_result.to_date == TODAY and mel_result.tasks_rolled == 1
    assert utc_result.to_date == YESTERDAY and utc_result.tasks_rolled == 0
    assert (await load_task(mel_task.id)).scheduled_for == TODAY
    assert (await load_task(utc_task.id)).scheduled_for == YESTERDAY


async def test_late_trigger_still_rolls_and_is_logged(make_user, make_task, rollover_engine, caplog):
    user = await make_user()
    task = await make_task(user, YESTERDAY)
    late = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)

    with caplog.at_level(logging.INFO, logger='planner.rollover'):
        result = await rollover_engine.execute_rollover(user.id, user.timezone, now=late)

    assert result.tasks_rolled == 1
    assert (await load_task(task.id)).scheduled_for == TODAY
    assert any('outside the midnight window' in r.getMessage() for r in caplog.records)


async def test_unknown_timezone_fails_the_call(make_user, make_task, rollover_engine):
    user = await make_user(timezone='Nowhere/Special')
    task = await make_task(user, YESTERDAY)

    with pytest.raises(ConfigurationError):
        await rollover_engine.execute_rollover(user.id, user.timezone, now=NOW)
    assert (await load_task(task.id)).scheduled_for == YESTERDAY


async def test_concurrent_runs_roll_each_task_once(make_user, make_task, rollover_engine):
    user = await make_user()
    tasks = [await make_task(user, YESTERDAY) for _ in range(5)]

    results = await asyncio.gather(*(
        rollover_engine.execute_rollover(user.id, user.timezone, now=NOW) for _ in range(4)
    ))

    assert sum(r.tasks_rolled for r in results) == 5
    assert all(r.failures == [] for r in results)
    for t in tasks:
        loaded = await load_task(t.id)
        assert loaded.scheduled_for == TODAY
        assert loaded.rollover_count == 1
        assert len(await rollover_rows(t.id)) == 1


async def test_new_year_task_rolls_once_and_rerun_is_noop(make_user, make_task, rollover_engine):
    user = await make_user()
    task = await make_task(user, date(2024, 1, 1), rollover_count=0)

    result = await rollover_engine.execute_rollover(user.id, 'UTC', now=NOW)
    assert result.tasks_rolled == 1
    t = await load_task(task.id)
    assert (t.scheduled_for, t.rollover_count) == (date(2024, 1, 2), 1)
    rows = await rollover_rows(task.id)
    assert [(r.from_date, r.to_date, r.rollover_count_after) for r in rows] == [(date(2024, 1, 1), date(2024, 1, 2), 1)]

    again = await rollover_engine.execute_rollover(user.id, 'UTC', now=NOW)
    assert again.tasks_rolled == 0
    t2 = await load_task(task.id)
    assert (t2.scheduled_for, t2.rollover_count) == (date(2024, 1, 2), 1)
