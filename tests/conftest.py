import sys
import pathlib
import logging
import re
import warnings
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import SAWarning

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from quicktodo.db import TaskStore
from quicktodo.main import create_app
from quicktodo.notifications import NotificationCenter
from quicktodo.parser import DateRecognizer, NaturalLanguageParser
from quicktodo.remote import InMemoryRemoteStore
from quicktodo.service import TaskService
from quicktodo.sync import SyncEngine

warnings.filterwarnings("ignore", category=SAWarning)

# Reduce SQLAlchemy logger verbosity during tests
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'aiosqlite'):
    logging.getLogger(_name).setLevel(logging.ERROR)


# Wednesday
FIXED_NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock frozen at FIXED_NOW until advanced."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# --- Test helpers for stubbing heavy date parsing ---
# Parser tests use StubRecognizer instead of dateparser so results do not
# depend on dateparser's heuristics. It only understands ISO dates with an
# optional HH:MM, e.g. "2025-03-05" or "2025-03-05 14:30".
class StubRecognizer(DateRecognizer):
    PATTERN = re.compile(r'(\d{4})-(\d{2})-(\d{2})(?:\s+(\d{1,2}):(\d{2}))?')

    def __init__(self):
        self.calls = []

    def search(self, text, now):
        self.calls.append(text)
        out = []
        for m in self.PATTERN.finditer(text):
            y, mo, d, h, mi = m.groups()
            dt = datetime(int(y), int(mo), int(d), int(h or 0), int(mi or 0), tzinfo=now.tzinfo)
            out.append((m.group(0), dt))
        return out


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def stub_recognizer():
    return StubRecognizer()


@pytest.fixture
def parser(clock, stub_recognizer):
    return NaturalLanguageParser(now=clock, recognizer=stub_recognizer, tz=timezone.utc)


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TaskStore(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}")
    await s.init_db()
    try:
        yield s
    finally:
        await s.dispose()


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def notifier(clock):
    return NotificationCenter(clock=clock)


@pytest.fixture
def engine(store, remote, notifier, clock):
    return SyncEngine(
        store, remote, 'u1',
        notifier=notifier, clock=clock,
        grace_seconds=10, fetch_timeout=1.0, listener_retry_delay=0.01,
    )


@pytest.fixture
def service(store, parser, notifier, clock):
    return TaskService(store, parser=parser, notifier=notifier, clock=clock, tz=timezone.utc)


@pytest.fixture
def synced_service(store, parser, notifier, clock, engine):
    return TaskService(store, parser=parser, sync=engine, notifier=notifier, clock=clock, tz=timezone.utc)


@pytest_asyncio.fixture
async def client(service):
    app = create_app(service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
