from datetime import datetime, timedelta, timezone

from quicktodo.models import Task
from quicktodo.notifications import REMINDER_BODY, NotificationCenter

UTC = timezone.utc
NOW = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)


def task(scheduled=None, timed=True, title='call'):
    return Task(title=title, raw_input=title, scheduled_date=scheduled, has_specific_time=timed,
                created_at=NOW, updated_at=NOW)


def center():
    return NotificationCenter(clock=lambda: NOW)


def test_only_future_timed_tasks_are_scheduled():
    nc = center()
    assert nc.schedule(task(NOW + timedelta(hours=1))) is True
    assert nc.schedule(task(NOW + timedelta(hours=1), timed=False)) is False
    assert nc.schedule(task(None)) is False
    assert nc.schedule(task(NOW)) is False
    assert nc.schedule(task(NOW - timedelta(minutes=1))) is False
    assert len(nc.pending) == 1


def test_pending_entry_contents():
    nc = center()
    t = task(NOW + timedelta(hours=2), title='Call mom')
    nc.schedule(t)
    p = nc.pending[t.id]
    assert p.title == 'Call mom'
    assert p.body == REMINDER_BODY
    assert p.fire_at == NOW + timedelta(hours=2)


def test_update_replaces_and_cancels():
    nc = center()
    t = task(NOW + timedelta(hours=1))
    nc.schedule(t)
    t.scheduled_date = NOW + timedelta(hours=3)
    assert nc.update(t) is True
    assert nc.pending[t.id].fire_at == NOW + timedelta(hours=3)

    t.has_specific_time = False
    assert nc.update(t) is False
    assert t.id not in nc.pending


def test_cancel_unknown_is_harmless():
    nc = center()
    t = task(NOW + timedelta(hours=1))
    nc.cancel(t.id)
    nc.schedule(t)
    nc.cancel_all()
    assert nc.pending == {}


def test_due_pops_in_time_order():
    nc = center()
    late, early, future = (task(NOW + timedelta(minutes=m)) for m in (20, 10, 90))
    for t in (late, early, future):
        nc.schedule(t)
    fired = nc.due(NOW + timedelta(minutes=30))
    assert [p.task_id for p in fired] == [early.id, late.id]
    assert list(nc.pending) == [future.id]
    assert nc.due(NOW + timedelta(minutes=30)) == []


def test_completed_tasks_get_no_reminder():
    nc = center()
    t = task(NOW + timedelta(hours=1))
    nc.schedule(t)
    t.is_completed = True
    t.completed_at = NOW
    assert nc.update(t) is False
    assert t.id not in nc.pending
    assert nc.schedule(t) is False
