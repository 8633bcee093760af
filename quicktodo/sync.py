"""Reconciliation between the local task store and the remote document store.

The remote side is authoritative for existence; content conflicts are
settled by `updatedAt`, strictly newer remote wins, ties keep local.

`plan_merge` is the pure decision function for a full snapshot.
`SyncEngine` drives it: full fetches, the live change listener, and pushes
of local edits (suppressed while a remote-driven merge is being applied so
remote changes are not echoed back).
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union
import asyncio
import logging
import uuid

from . import config
from .db import TaskRepository, TaskStore
from .documents import (
    DecodedDocument, DocumentDecodeError, apply_document, decode_document,
    task_from_document, task_to_document,
)
from .models import Task
from .notifications import NotificationCenter
from .remote import ChangeBatch, ChangeType, RemoteError, RemoteStore
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    MERGING = 'merging'


@dataclass
class MergePlan:
    inserts: list[DecodedDocument] = field(default_factory=list)
    updates: list[tuple[Task, DecodedDocument]] = field(default_factory=list)
    deletes: list[Task] = field(default_factory=list)
    # local-only tasks still inside the grace window
    pushes: list[Task] = field(default_factory=list)
    # keys of remote documents that failed to decode
    skipped: list[str] = field(default_factory=list)


@dataclass
class SyncReport:
    inserted: list[uuid.UUID] = field(default_factory=list)
    updated: list[uuid.UUID] = field(default_factory=list)
    deleted: list[uuid.UUID] = field(default_factory=list)
    pushed: list[uuid.UUID] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def remote_wins(local: Task, decoded: DecodedDocument) -> bool:
    """Strictly newer remote updatedAt wins; a remote without one never does."""
    if decoded.updated_at is None:
        return False
    return as_utc(decoded.updated_at) > as_utc(local.updated_at)


def plan_merge(
    local_tasks: Iterable[Task],
    remote_documents: dict[str, dict[str, Any]],
    now: datetime,
    grace_seconds: float = config.SYNC_GRACE_SECONDS,
) -> MergePlan:
    """Decide what a full reconciliation against `remote_documents` does.

    Nothing is mutated; the caller applies the plan.
    """
    plan = MergePlan()
    local_by_id = {t.id: t for t in local_tasks}
    remote_ids: set[uuid.UUID] = set()

    for doc_id, data in remote_documents.items():
        try:
            decoded = decode_document(data, doc_id)
        except DocumentDecodeError as e:
            logger.warning('skipping remote document: %s', e)
            plan.skipped.append(doc_id)
            continue
        remote_ids.add(decoded.id)
        local = local_by_id.get(decoded.id)
        if local is None:
            plan.inserts.append(decoded)
        elif remote_wins(local, decoded):
            plan.updates.append((local, decoded))

    grace = timedelta(seconds=grace_seconds)
    now_u = as_utc(now)
    for task_id, task in local_by_id.items():
        if task_id in remote_ids:
            continue
        if now_u - as_utc(task.created_at) < grace:
            plan.pushes.append(task)
        else:
            plan.deletes.append(task)
    return plan


class SyncEngine:
    def __init__(
        self,
        store: TaskStore,
        remote: RemoteStore,
        user_id: str = config.REMOTE_USER_ID,
        notifier: Optional[NotificationCenter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        grace_seconds: float = config.SYNC_GRACE_SECONDS,
        fetch_timeout: float = config.REMOTE_TIMEOUT,
        listener_retry_delay: float = config.REMOTE_POLL_INTERVAL,
    ):
        self.store = store
        self.remote = remote
        self.user_id = user_id
        self.notifier = notifier
        self.clock = clock or now_utc
        self.grace_seconds = grace_seconds
        self.fetch_timeout = fetch_timeout
        self.listener_retry_delay = listener_retry_delay
        self.state = SyncState.IDLE
        self.last_sync_time: Optional[datetime] = None
        self._merge_depth = 0
        self._cycle_lock = asyncio.Lock()
        self._listener: Optional[asyncio.Task] = None

    @property
    def suppress_local_push(self) -> bool:
        return self._merge_depth > 0

    @contextmanager
    def suppressing_pushes(self):
        """Hold push suppression while remote-originated changes are applied."""
        self._merge_depth += 1
        try:
            yield
        finally:
            self._merge_depth -= 1

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    # --- outgoing ---

    async def push(self, task: Task) -> bool:
        """Upsert the task's document remotely. Returns False when suppressed."""
        if self.suppress_local_push:
            logger.debug('push of %s suppressed during remote merge', task.id)
            return False
        await self.remote.upsert(self.user_id, str(task.id), task_to_document(task))
        return True

    async def delete(self, task: Union[Task, uuid.UUID]) -> None:
        """Remove the remote document. Local deletions always propagate."""
        task_id = task.id if isinstance(task, Task) else task
        await self.remote.delete(self.user_id, str(task_id))

    # --- incoming ---

    def _notify(self, report: SyncReport, tasks: dict[uuid.UUID, Task]) -> None:
        if self.notifier is None:
            return
        for tid in report.inserted:
            self.notifier.schedule(tasks[tid])
        for tid in report.updated:
            self.notifier.update(tasks[tid])
        for tid in report.deleted:
            self.notifier.cancel(tid)

    async def _merge_snapshot(self, docs: dict[str, dict[str, Any]]) -> tuple[MergePlan, SyncReport, dict]:
        report = SyncReport()
        touched: dict[uuid.UUID, Task] = {}
        async with self.store.writing() as repo:
            with self.suppressing_pushes():
                self.state = SyncState.MERGING
                local = await repo.all()
                plan = plan_merge(local, docs, self.clock(), self.grace_seconds)
                for decoded in plan.inserts:
                    task = await repo.upsert(task_from_document(decoded))
                    touched[task.id] = task
                    report.inserted.append(task.id)
                for task, decoded in plan.updates:
                    task = await repo.upsert(apply_document(task, decoded))
                    touched[task.id] = task
                    report.updated.append(task.id)
                for task in plan.deletes:
                    await repo.delete(task)
                    report.deleted.append(task.id)
                report.skipped.extend(plan.skipped)
        return plan, report, touched

    async def force_fetch(self) -> SyncReport:
        """Full reconciliation against the remote snapshot.

        Fetch failures leave local state untouched and are reported, not
        raised. Once the merge has started it runs to completion even if the
        caller is cancelled.
        """
        async with self._cycle_lock:
            self.state = SyncState.FETCHING
            try:
                docs = await asyncio.wait_for(self.remote.fetch_all(self.user_id), self.fetch_timeout)
            except asyncio.TimeoutError:
                logger.warning('remote fetch timed out after %.1fs', self.fetch_timeout)
                return SyncReport(error=f'fetch timed out after {self.fetch_timeout}s')
            except RemoteError as e:
                logger.warning('remote fetch failed: %s', e)
                return SyncReport(error=str(e))
            finally:
                self.state = SyncState.IDLE

            merge = asyncio.ensure_future(self._merge_snapshot(docs))
            try:
                plan, report, touched = await asyncio.shield(merge)
            except asyncio.CancelledError:
                # the local commit must not be abandoned halfway
                await merge
                raise
            finally:
                if merge.done():
                    self.state = SyncState.IDLE

            self._notify(report, touched)

            for task in plan.pushes:
                try:
                    if await self.push(task):
                        report.pushed.append(task.id)
                except RemoteError as e:
                    logger.warning('could not push unsynced task %s: %s', task.id, e)
                    report.error = str(e)

            self.last_sync_time = self.clock()
            logger.info(
                'sync done: %d inserted, %d updated, %d deleted, %d pushed, %d skipped',
                len(report.inserted), len(report.updated), len(report.deleted),
                len(report.pushed), len(report.skipped),
            )
            return report

    async def _apply_change(self, repo: TaskRepository, change, report: SyncReport, touched: dict) -> None:
        if change.type == ChangeType.REMOVED:
            try:
                task_id = uuid.UUID(str(change.doc_id))
            except ValueError:
                logger.warning('ignoring removal of non-task document %r', change.doc_id)
                report.skipped.append(change.doc_id)
                return
            existing = await repo.get(task_id)
            if existing is not None:
                await repo.delete(existing)
                report.deleted.append(task_id)
            return

        try:
            decoded = decode_document(change.data or {}, change.doc_id)
        except DocumentDecodeError as e:
            logger.warning('skipping remote change: %s', e)
            report.skipped.append(change.doc_id)
            return
        local = await repo.get(decoded.id)
        if local is None:
            task = await repo.upsert(task_from_document(decoded))
            report.inserted.append(task.id)
        elif remote_wins(local, decoded):
            task = await repo.upsert(apply_document(local, decoded))
            report.updated.append(task.id)
        else:
            return
        touched[task.id] = task

    async def apply_changes(self, batch: ChangeBatch) -> SyncReport:
        """Apply one listener batch in a single transaction."""
        report = SyncReport()
        touched: dict[uuid.UUID, Task] = {}
        async with self.store.writing() as repo:
            with self.suppressing_pushes():
                self.state = SyncState.MERGING
                try:
                    for change in batch.changes:
                        await self._apply_change(repo, change, report, touched)
                finally:
                    self.state = SyncState.IDLE
        self._notify(report, touched)
        if report.inserted or report.updated or report.deleted:
            logger.info(
                'remote changes applied: %d inserted, %d updated, %d deleted',
                len(report.inserted), len(report.updated), len(report.deleted),
            )
        return report

    async def _listen_loop(self) -> None:
        while True:
            try:
                async for batch in self.remote.listen(self.user_id):
                    await self.apply_changes(batch)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('remote listener failed; resubscribing in %.1fs', self.listener_retry_delay)
            await asyncio.sleep(self.listener_retry_delay)

    def start_listening(self) -> None:
        if self.is_listening:
            return
        logger.info('listening for remote changes (user %s)', self.user_id)
        self._listener = asyncio.create_task(self._listen_loop())

    async def stop_listening(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        logger.info('stopped listening for remote changes')
