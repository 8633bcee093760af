import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

import quicktodo.sync as sync_mod
from quicktodo.models import Task
from quicktodo.remote import ChangeBatch, ChangeType, DocumentChange, InMemoryRemoteStore
from quicktodo.sync import SyncEngine, SyncState

UTC = timezone.utc


def doc(task_id, title='remote', updated='2025-01-15T10:00:00Z', **extra):
    d = {
        'id': str(task_id),
        'title': title,
        'rawInput': title,
        'hasSpecificTime': False,
        'isCompleted': False,
        'createdAt': '2025-01-01T00:00:00Z',
        'updatedAt': updated,
        'sortOrder': 1,
    }
    d.update(extra)
    return d


async def save(store, *tasks):
    async with store.writing() as repo:
        for t in tasks:
            await repo.upsert(t)


def local_task(clock, title='local', age=timedelta(hours=1), updated=None):
    created = clock() - age
    return Task(title=title, raw_input=title, created_at=created, updated_at=updated or created)


async def wait_until(pred, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await pred():
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_force_fetch_inserts_remote_documents(engine, remote, store, clock):
    tid = uuid.uuid4()
    await remote.upsert('u1', str(tid), doc(tid, 'From phone'))
    report = await engine.force_fetch()
    assert report.ok
    assert report.inserted == [tid]
    task = await store.get(tid)
    assert task.title == 'From phone'
    assert task.updated_at == datetime(2025, 1, 15, 10, 0, tzinfo=UTC)
    assert engine.state == SyncState.IDLE
    assert engine.last_sync_time == clock()


@pytest.mark.asyncio
async def test_force_fetch_resolves_conflicts_by_updated_at(engine, remote, store, clock):
    older = local_task(clock, 'mine (older)', updated=clock() - timedelta(minutes=5))
    newer = local_task(clock, 'mine (newer)', updated=clock() + timedelta(minutes=5))
    await save(store, older, newer)
    await remote.upsert('u1', str(older.id), doc(older.id, 'theirs'))
    await remote.upsert('u1', str(newer.id), doc(newer.id, 'theirs'))

    report = await engine.force_fetch()
    assert report.updated == [older.id]
    assert (await store.get(older.id)).title == 'theirs'
    assert (await store.get(newer.id)).title == 'mine (newer)'


@pytest.mark.asyncio
async def test_force_fetch_grace_window(engine, remote, store, clock):
    fresh = local_task(clock, 'just typed', age=timedelta(seconds=3))
    stale = local_task(clock, 'deleted elsewhere', age=timedelta(seconds=60))
    await save(store, fresh, stale)

    report = await engine.force_fetch()
    assert report.deleted == [stale.id]
    assert report.pushed == [fresh.id]
    assert await store.get(stale.id) is None
    assert await store.get(fresh.id) is not None
    pushed = await remote.fetch_all('u1')
    assert pushed[str(fresh.id)]['title'] == 'just typed'


@pytest.mark.asyncio
async def test_fetch_failure_leaves_local_state_alone(engine, remote, store, clock):
    stale = local_task(clock, age=timedelta(days=1))
    await save(store, stale)
    remote.fail_with = ConnectionError('offline')

    report = await engine.force_fetch()
    assert not report.ok
    assert 'offline' in report.error
    assert await store.get(stale.id) is not None
    assert engine.state == SyncState.IDLE
    assert engine.last_sync_time is None


class SlowRemote(InMemoryRemoteStore):
    async def fetch_all(self, user_id):
        await asyncio.sleep(5)
        return {}


@pytest.mark.asyncio
async def test_fetch_times_out(store, clock):
    engine = SyncEngine(store, SlowRemote(), 'u1', clock=clock, fetch_timeout=0.05)
    stale = local_task(clock, age=timedelta(days=1))
    await save(store, stale)
    report = await engine.force_fetch()
    assert not report.ok
    assert 'timed out' in report.error
    assert await store.get(stale.id) is not None


@pytest.mark.asyncio
async def test_merge_runs_suppressed_under_the_store_lock(engine, remote, store, monkeypatch):
    seen = {}
    real = sync_mod.plan_merge

    def spy(*args, **kwargs):
        seen['suppress'] = engine.suppress_local_push
        seen['state'] = engine.state
        seen['locked'] = store.lock.locked()
        return real(*args, **kwargs)

    monkeypatch.setattr(sync_mod, 'plan_merge', spy)
    await engine.force_fetch()
    assert seen == {'suppress': True, 'state': SyncState.MERGING, 'locked': True}
    assert engine.suppress_local_push is False


@pytest.mark.asyncio
async def test_push_is_noop_while_suppressed(engine, remote, clock):
    task = local_task(clock)
    with engine.suppressing_pushes():
        assert engine.suppress_local_push
        assert await engine.push(task) is False
    assert await remote.fetch_all('u1') == {}
    assert await engine.push(task) is True
    assert str(task.id) in await remote.fetch_all('u1')


@pytest.mark.asyncio
async def test_delete_always_propagates(engine, remote, clock):
    task = local_task(clock)
    await engine.push(task)
    with engine.suppressing_pushes():
        await engine.delete(task)
    assert await remote.fetch_all('u1') == {}


@pytest.mark.asyncio
async def test_apply_changes(engine, store, clock):
    existing = local_task(clock, 'old title', updated=clock() - timedelta(days=1))
    doomed = local_task(clock, 'doomed')
    await save(store, existing, doomed)
    new_id = uuid.uuid4()

    batch = ChangeBatch([
        DocumentChange(ChangeType.ADDED, str(new_id), doc(new_id, 'brand new')),
        DocumentChange(ChangeType.MODIFIED, str(existing.id), doc(existing.id, 'new title')),
        DocumentChange(ChangeType.REMOVED, str(doomed.id)),
        DocumentChange(ChangeType.ADDED, 'junk', {'title': 'no id'}),
    ], cursor=4)
    report = await engine.apply_changes(batch)

    assert report.inserted == [new_id]
    assert report.updated == [existing.id]
    assert report.deleted == [doomed.id]
    assert report.skipped == ['junk']
    assert (await store.get(new_id)).title == 'brand new'
    assert (await store.get(existing.id)).title == 'new title'
    assert await store.get(doomed.id) is None


@pytest.mark.asyncio
async def test_removal_ignores_grace_window(engine, store, clock):
    fresh = local_task(clock, age=timedelta(seconds=1))
    await save(store, fresh)
    await engine.apply_changes(ChangeBatch([DocumentChange(ChangeType.REMOVED, str(fresh.id))]))
    assert await store.get(fresh.id) is None


@pytest.mark.asyncio
async def test_listener_applies_batches_in_order(engine, remote, store):
    tid = uuid.uuid4()
    engine.start_listening()
    try:
        assert engine.is_listening
        await remote.upsert('u1', str(tid), doc(tid, 'v1'))

        async def arrived():
            t = await store.get(tid)
            return t is not None and t.title == 'v1'
        await wait_until(arrived)

        await remote.upsert('u1', str(tid), doc(tid, 'v2', updated='2025-01-15T11:00:00Z'))
        await remote.upsert('u1', str(tid), doc(tid, 'v3', updated='2025-01-15T12:00:00Z'))

        async def latest():
            t = await store.get(tid)
            return t is not None and t.title == 'v3'
        await wait_until(latest)

        await remote.delete('u1', str(tid))

        async def gone():
            return await store.get(tid) is None
        await wait_until(gone)
    finally:
        await engine.stop_listening()
    assert not engine.is_listening


@pytest.mark.asyncio
async def test_listener_recovers_after_error(engine, remote, store):
    remote.fail_with = ConnectionError('flaky')
    engine.start_listening()
    try:
        await asyncio.sleep(0.05)
        assert engine.is_listening
        remote.fail_with = None
        tid = uuid.uuid4()
        await remote.upsert('u1', str(tid), doc(tid))

        async def arrived():
            return await store.get(tid) is not None
        await wait_until(arrived)
    finally:
        await engine.stop_listening()


@pytest.mark.asyncio
async def test_merges_drive_notifications(engine, remote, notifier):
    tid = uuid.uuid4()
    timed = doc(tid, 'call', hasSpecificTime=True, scheduledDate='2025-01-15T18:00:00Z')
    await remote.upsert('u1', str(tid), timed)
    await engine.force_fetch()
    assert tid in notifier.pending
    assert notifier.pending[tid].fire_at == datetime(2025, 1, 15, 18, 0, tzinfo=UTC)

    moved = dict(timed, scheduledDate='2025-01-15T19:00:00Z', updatedAt='2025-01-15T10:30:00Z')
    await engine.apply_changes(ChangeBatch([DocumentChange(ChangeType.MODIFIED, str(tid), moved)]))
    assert notifier.pending[tid].fire_at == datetime(2025, 1, 15, 19, 0, tzinfo=UTC)

    await engine.apply_changes(ChangeBatch([DocumentChange(ChangeType.REMOVED, str(tid))]))
    assert tid not in notifier.pending


@pytest.mark.asyncio
async def test_remote_completion_cancels_reminder(engine, remote, notifier):
    tid = uuid.uuid4()
    timed = doc(tid, 'call', hasSpecificTime=True, scheduledDate='2025-01-15T18:00:00Z')
    await remote.upsert('u1', str(tid), timed)
    await engine.force_fetch()
    assert tid in notifier.pending

    done = dict(timed, isCompleted=True, completedAt='2025-01-15T10:20:00Z', updatedAt='2025-01-15T10:20:00Z')
    await engine.apply_changes(ChangeBatch([DocumentChange(ChangeType.MODIFIED, str(tid), done)]))
    assert tid not in notifier.pending


@pytest.mark.asyncio
async def test_cancelled_fetch_returns_to_idle(store, clock):
    engine = SyncEngine(store, SlowRemote(), 'u1', clock=clock, fetch_timeout=10)
    job = asyncio.ensure_future(engine.force_fetch())
    await asyncio.sleep(0.05)
    assert engine.state == SyncState.FETCHING
    job.cancel()
    with pytest.raises(asyncio.CancelledError):
        await job
    assert engine.state == SyncState.IDLE


@pytest.mark.asyncio
async def test_documents_without_embedded_id_are_skipped(engine, remote, store):
    tid = uuid.uuid4()
    bare = doc(tid, 'keyed only')
    del bare['id']
    await remote.upsert('u1', str(tid), bare)
    report = await engine.force_fetch()
    assert report.ok
    assert report.skipped == [str(tid)]
    assert await store.get(tid) is None
