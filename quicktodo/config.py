"""Runtime configuration for quicktodo.

Settings are read from environment variables so the app, the sync engine
and the scripts can be retargeted without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


# Local task store. Any async SQLAlchemy URL works; sqlite+aiosqlite is the
# default for single-user installs.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./quicktodo.db')

# IANA zone used as the "ambient calendar" for parsing and recurrence math.
DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')

# A local task missing from the remote snapshot is pushed instead of deleted
# when it was created less than this many seconds ago.
SYNC_GRACE_SECONDS = _int_env('SYNC_GRACE_SECONDS', 10)

# Remote document store. Leave REMOTE_BASE_URL empty to run local-only.
REMOTE_BASE_URL = os.getenv('REMOTE_BASE_URL', '').strip()
REMOTE_USER_ID = os.getenv('REMOTE_USER_ID', 'default')
REMOTE_TIMEOUT = _float_env('REMOTE_TIMEOUT', 10.0)
REMOTE_POLL_INTERVAL = _float_env('REMOTE_POLL_INTERVAL', 5.0)

# Changes the in-process store (and so the docserver) keeps per user. A client
# whose cursor falls behind the retained log must resubscribe from a snapshot.
CHANGE_LOG_LIMIT = _int_env('CHANGE_LOG_LIMIT', 10000)

# Start the live listener and push local changes on startup. Only meaningful
# when REMOTE_BASE_URL is set.
ENABLE_SYNC = _trueish(os.getenv('ENABLE_SYNC', '1'))

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

HOST = os.getenv('HOST', '127.0.0.1')
PORT = _int_env('PORT', 8000)

# Optional local overrides: define variables in quicktodo/local_config.py to
# change the defaults above without touching versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
