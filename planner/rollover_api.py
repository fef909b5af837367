"""Trigger endpoints for the rollover engine.

Called by an external scheduler (cron) or an administrator. Access needs
either an admin bearer token or the shared ROLLOVER_TRIGGER_TOKEN secret in
the X-Rollover-Token header.
"""
from fastapi import APIRouter, Depends, Header, HTTPException
from typing import List, Optional
import logging
import secrets

from . import config
from .auth import get_current_user
from .db import async_session
from .errors import ConfigurationError, StorageUnavailable
from .models import User
from .rollover import FleetRolloverReport, RolloverResult
from .store import build_engine

logger = logging.getLogger(__name__)

router = APIRouter()


def get_rollover_engine():
    return build_engine(async_session)


async def require_trigger_access(
    x_rollover_token: Optional[str] = Header(default=None),
    current_user: Optional[User] = Depends(get_current_user),
) -> None:
    expected = config.ROLLOVER_TRIGGER_TOKEN
    if x_rollover_token and expected and secrets.compare_digest(x_rollover_token, expected):
        return
    if current_user is None:
        raise HTTPException(status_code=401, detail='authentication required')
    if not getattr(current_user, 'is_admin', False):
        raise HTTPException(status_code=403, detail='admin required')


@router.post('/internal/rollover', response_model=FleetRolloverReport)
async def run_fleet_rollover(_: None = Depends(require_trigger_access), engine=Depends(get_rollover_engine)):
    """Run the daily rollover for every user now."""
    return await engine.run_for_all_users()


@router.post('/internal/rollover/backfill', response_model=List[RolloverResult])
async def backfill_user(user_id: int, days: int, _: None = Depends(require_trigger_access),
                        engine=Depends(get_rollover_engine)):
    """Replay rollover for one user over the last `days` days, oldest first."""
    async with async_session() as sess:
        user = await sess.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail='user not found')
    try:
        results = await engine.backfill(user.id, user.timezone, days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageUnavailable:
        logger.exception('backfill for user %s aborted', user_id)
        raise HTTPException(status_code=503, detail='storage unavailable')
    logger.info('backfill requested for user %s: %d days, %d tasks rolled',
                user_id, days, sum(r.tasks_rolled for r in results))
    return results
