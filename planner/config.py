"""Runtime configuration for the daily planner.

Control flags are read from environment variables so the rollover engine
can be tuned per deployment without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Timezone used for users whose timezone field is blank.
DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')

# When true, an unknown timezone on a user row falls back to UTC (with a
# warning) instead of failing that user's rollover with ConfigurationError.
ROLLOVER_TIMEZONE_FALLBACK = _trueish(os.getenv('ROLLOVER_TIMEZONE_FALLBACK', '0'))

# Minutes after local midnight during which a daily trigger counts as on time.
ROLLOVER_WINDOW_MINUTES = _int_env('ROLLOVER_WINDOW_MINUTES', 10)

# Maximum number of users processed concurrently by a fleet run.
ROLLOVER_MAX_WORKERS = max(1, _int_env('ROLLOVER_MAX_WORKERS', 4) or 1)

# Optional per-user timeout (seconds) for a fleet run. Unset means no limit.
ROLLOVER_USER_TIMEOUT_SECONDS = _int_env('ROLLOVER_USER_TIMEOUT_SECONDS', None)

# Upper bound on the days_missed argument accepted by backfill.
BACKFILL_MAX_DAYS = _int_env('BACKFILL_MAX_DAYS', 366)

# Shared secret accepted in the X-Rollover-Token header by the internal
# trigger endpoints (for cron jobs that don't hold an admin login).
ROLLOVER_TRIGGER_TOKEN = os.getenv('ROLLOVER_TRIGGER_TOKEN') or None

# In-process periodic trigger. Off by default; an external scheduler hitting
# POST /internal/rollover is the usual deployment.
ROLLOVER_SCHEDULER_ENABLED = _trueish(os.getenv('ROLLOVER_SCHEDULER_ENABLED', '0'))
ROLLOVER_INTERVAL_SECONDS = _int_env('ROLLOVER_INTERVAL_SECONDS', 300)


# Optional local overrides: define variables in planner/local_config.py to
# override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
