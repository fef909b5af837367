from datetime import timedelta

import pytest

from planner import config
from planner.dates import local_midnight
from conftest import load_task, rollover_rows

pytestmark = pytest.mark.asyncio


async def test_trigger_requires_authentication(anon_client):
    resp = await anon_client.post('/internal/rollover')
    assert resp.status_code == 401


async def test_trigger_requires_admin(user_client):
    resp = await user_client.post('/internal/rollover')
    assert resp.status_code == 403
    resp = await user_client.post('/internal/rollover/backfill', params={'user_id': 1, 'days': 1})
    assert resp.status_code == 403


async def test_admin_runs_fleet_rollover(client, make_user, make_task):
    user = await make_user()
    yesterday = local_midnight('UTC') - timedelta(days=1)
    task = await make_task(user, yesterday)

    resp = await client.post('/internal/rollover')
    assert resp.status_code == 200
    body = resp.json()
    # the admin account has no tasks but is still a processed user
    assert body['users_processed'] == 2
    assert body['total_tasks_rolled'] == 1
    assert body['failed_user_ids'] == []
    assert (await load_task(task.id)).rollover_count == 1

    again = await client.post('/internal/rollover')
    assert again.json()['total_tasks_rolled'] == 0
    assert len(await rollover_rows(task.id)) == 1


async def test_shared_token_grants_access(anon_client, make_user, monkeypatch):
    monkeypatch.setattr(config, 'ROLLOVER_TRIGGER_TOKEN', 'cron-secret')
    await make_user()

    resp = await anon_client.post('/internal/rollover', headers={'X-Rollover-Token': 'wrong'})
    assert resp.status_code == 401
    resp = await anon_client.post('/internal/rollover', headers={'X-Rollover-Token': 'cron-secret'})
    assert resp.status_code == 200
    assert resp.json()['users_processed'] == 1


async def test_token_is_ignored_when_not_configured(anon_client, monkeypatch):
    monkeypatch.setattr(config, 'ROLLOVER_TRIGGER_TOKEN', None)
    resp = await anon_client.post('/internal/rollover', headers={'X-Rollover-Token': ''})
    assert resp.status_code == 401


async def test_fleet_report_lists_failed_users(client, make_user):
    bad = await make_user(timezone='Invalid/Zone')
    resp = await client.post('/internal/rollover')
    assert resp.status_code == 200
    assert resp.json()['failed_user_ids'] == [bad.id]


async def test_backfill_endpoint(client, make_user, make_task):
    user = await make_user()
    today = local_midnight('UTC')
    task = await make_task(user, today - timedelta(days=3))

    resp = await client.post('/internal/rollover/backfill', params={'user_id': user.id, 'days': 3})
    assert resp.status_code == 200
    results = resp.json()
    assert [r['tasks_rolled'] for r in results] == [1, 1, 1]
    assert results[-1]['to_date'] == today.isoformat()
    t = await load_task(task.id)
    assert t.scheduled_for == today
    assert t.rollover_count == 3
    assert all(r.backfilled for r in await rollover_rows(task.id))


async def test_backfill_endpoint_errors(client, make_user):
    resp = await client.post('/internal/rollover/backfill', params={'user_id': 9999, 'days': 1})
    assert resp.status_code == 404

    user = await make_user()
    resp = await client.post('/internal/rollover/backfill', params={'user_id': user.id, 'days': 0})
    assert resp.status_code == 400

    broken = await make_user(timezone='Invalid/Zone')
    resp = await client.post('/internal/rollover/backfill', params={'user_id': broken.id, 'days': 2})
    assert resp.status_code == 400
    assert 'Invalid/Zone' in resp.json()['detail']


async def test_timezone_naming_a_zone_directory_is_rejected(client, make_user, make_task):
    user = await make_user(timezone='America')
    await make_task(user, local_midnight('UTC') - timedelta(days=1))

    resp = await client.post('/internal/rollover/backfill', params={'user_id': user.id, 'days': 1})
    assert resp.status_code == 400
    assert 'America' in resp.json()['detail']

    resp = await client.post('/internal/rollover')
    assert resp.status_code == 200
    assert resp.json()['failed_user_ids'] == [user.id]
