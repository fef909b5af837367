"""Daily task rollover engine.

Once per local day every open task scheduled for "yesterday" is moved to
"today" and its rollover counter incremented. Each move is recorded as a
rollover audit row keyed by (task_id, to_date); that row is the only thing
that makes a repeated run, a concurrent run or a backfill a no-op for tasks
already handled.

The engine is storage-agnostic: it receives a task store and a user
directory (see planner.store for the SQLModel implementations) and runs to
completion per call. It owns no background work.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
import asyncio
import logging

from pydantic import BaseModel, Field

from . import config
from .audit import RolloverEntry
from .dates import add_days, format_date, local_midnight, is_within_rollover_window, time_of_day
from .errors import ConfigurationError, PartialTaskFailure, StorageUnavailable, TransactionConflict
from .models import TaskStatus
from .utils import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskSnapshot:
    id: int
    status: str
    scheduled_for: date
    rollover_count: int
    owner_id: Optional[int] = None


@dataclass(frozen=True)
class RolloverDecision:
    task_id: int
    from_date: date
    to_date: date
    rollover_count: int


def decide_rollover(task: TaskSnapshot, target_date: date) -> Optional[RolloverDecision]:
    """Return the new state for task if it must roll onto target_date, else None.

    Only an open task sitting on exactly the day before target_date rolls.
    Older tasks are reached one day at a time by backfill.
    """
    if task.status != TaskStatus.OPEN:
        return None
    previous = add_days(target_date, -1)
    if task.scheduled_for != previous:
        return None
    return RolloverDecision(
        task_id=task.id,
        from_date=previous,
        to_date=target_date,
        rollover_count=task.rollover_count + 1,
    )


class TaskFailure(BaseModel):
    task_id: int
    error: str


class RolloverResult(BaseModel):
    user_id: int
    tasks_rolled: int = 0
    from_date: date
    to_date: date
    # candidates left alone: already rolled for to_date or lost a race
    tasks_skipped: int = 0
    failures: List[TaskFailure] = Field(default_factory=list)


class FleetRolloverReport(BaseModel):
    results: List[RolloverResult] = Field(default_factory=list)
    users_processed: int = 0
    total_tasks_rolled: int = 0
    # Users absent from results. Same information a caller gets by diffing
    # result user ids against the directory.
    failed_user_ids: List[int] = Field(default_factory=list)


class RolloverEngine:
    def __init__(self, store, directory, max_workers: Optional[int] = None,
                 user_timeout: Optional[float] = None, clock=now_utc,
                 max_backfill_days: Optional[int] = None):
        self._store = store
        self._directory = directory
        self._max_workers = max(1, max_workers or config.ROLLOVER_MAX_WORKERS)
        self._user_timeout = user_timeout if user_timeout is not None else config.ROLLOVER_USER_TIMEOUT_SECONDS
        self._clock = clock
        self._max_backfill_days = max_backfill_days or config.BACKFILL_MAX_DAYS

    async def execute_rollover(self, user_id: int, timezone: Optional[str], now: Optional[datetime] = None) -> RolloverResult:
        """Roll the user's open tasks from yesterday to today (local days).

        Raises ConfigurationError for an unknown timezone and
        StorageUnavailable when the store cannot be reached. Per-task data
        failures are reported in the result instead.
        """
        instant = now or self._clock()
        today = local_midnight(timezone, instant)
        if not is_within_rollover_window(timezone, instant):
            hour, minute = time_of_day(timezone, instant)
            logger.info('rollover for user %s triggered outside the midnight window (local time %02d:%02d)', user_id, hour, minute)
        return await self._roll_day(user_id, add_days(today, -1), today, backfilled=False)

    async def backfill(self, user_id: int, timezone: Optional[str], days_missed: int, now: Optional[datetime] = None) -> List[RolloverResult]:
        """Replay rollover for the last days_missed days, oldest first.

        The last day processed is today. Returns one result per day, including
        days where nothing needed to roll.
        """
        if isinstance(days_missed, bool) or not isinstance(days_missed, int):
            raise ValueError('days_missed must be an integer')
        if days_missed < 1 or days_missed > self._max_backfill_days:
            raise ValueError(f'days_missed must be between 1 and {self._max_backfill_days}')
        instant = now or self._clock()
        today = local_midnight(timezone, instant)
        results: List[RolloverResult] = []
        for offset in range(days_missed - 1, -1, -1):
            target = add_days(today, -offset)
            results.append(await self._roll_day(user_id, add_days(target, -1), target, backfilled=True))
        logger.info('backfill for user %s: %d days, %d tasks rolled',
                    user_id, days_missed, sum(r.tasks_rolled for r in results))
        return results

    async def run_for_all_users(self, now: Optional[datetime] = None) -> FleetRolloverReport:
        """Run the daily rollover for every user in the directory.

        Never raises (except on cancellation): a user whose run fails is
        logged and left out of the report.
        """
        instant = now or self._clock()
        try:
            users = await self._directory.list_users()
        except Exception:
            logger.exception('rollover: failed to list users')
            return FleetRolloverReport()

        sem = asyncio.Semaphore(self._max_workers)

        async def _run_user(user) -> Optional[RolloverResult]:
            async with sem:
                try:
                    run = self.execute_rollover(user.id, user.timezone, now=instant)
                    if self._user_timeout:
                        return await asyncio.wait_for(run, timeout=self._user_timeout)
                    return await run
                except ConfigurationError as e:
                    logger.error('rollover skipped for user %s: %s', user.id, e)
                except StorageUnavailable as e:
                    logger.error('rollover aborted for user %s: storage unavailable: %s', user.id, e)
                except asyncio.TimeoutError:
                    logger.error('rollover for user %s timed out after %ss', user.id, self._user_timeout)
                except Exception:
                    logger.exception('rollover failed for user %s', user.id)
                return None

        outcomes = await asyncio.gather(*(_run_user(u) for u in users))

        report = FleetRolloverReport()
        for user, outcome in zip(users, outcomes):
            if outcome is None:
                report.failed_user_ids.append(user.id)
            else:
                report.results.append(outcome)
        report.users_processed = len(report.results)
        report.total_tasks_rolled = sum(r.tasks_rolled for r in report.results)
        logger.info('rollover completed: %d tasks rolled for %d users (%d failed)',
                    report.total_tasks_rolled, report.users_processed, len(report.failed_user_ids))
        return report

    async def _roll_day(self, user_id: int, from_date: date, to_date: date, backfilled: bool) -> RolloverResult:
        result = RolloverResult(user_id=user_id, from_date=from_date, to_date=to_date)
        candidates = await self._store.find_open_tasks_scheduled_on(user_id, from_date)
        # Tasks of one user are handled one transaction at a time.
        for candidate in candidates:
            try:
                rolled = await self._roll_task(candidate.id, to_date, backfilled)
            except TransactionConflict as e:
                logger.debug('rollover conflict ignored: %s', e)
                result.tasks_skipped += 1
                continue
            except PartialTaskFailure as e:
                logger.warning('rollover failed for task %s (user %s, %s -> %s): %s',
                               e.task_id, user_id, format_date(from_date), format_date(to_date), e)
                result.failures.append(TaskFailure(task_id=e.task_id, error=str(e)))
                continue
            if rolled:
                result.tasks_rolled += 1
            else:
                result.tasks_skipped += 1
        logger.info('rollover user=%s %s -> %s: rolled=%d skipped=%d failed=%d%s',
                    user_id, format_date(from_date), format_date(to_date), result.tasks_rolled,
                    result.tasks_skipped, len(result.failures), ' (backfill)' if backfilled else '')
        return result

    async def _roll_task(self, task_id: int, to_date: date, backfilled: bool) -> bool:
        """Check-then-write for one task inside a single store transaction.

        Returns False when the task no longer needs to roll onto to_date.
        """
        async with self._store.transaction(task_id) as tx:
            if await tx.find_rollover_audit(task_id, to_date) is not None:
                return False
            task = await tx.get_task(task_id)
            if task is None:
                return False
            decision = decide_rollover(task, to_date)
            if decision is None:
                return False
            updated = await tx.update_task_schedule(
                task_id, decision.to_date, decision.rollover_count, expected_date=decision.from_date
            )
            if not updated:
                raise TransactionConflict(task_id)
            await tx.create_rollover_audit(task_id, RolloverEntry(
                from_date=decision.from_date,
                to_date=decision.to_date,
                rollover_count_after=decision.rollover_count,
                backfilled=backfilled,
            ))
            return True
