from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import sys
import uuid

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from . import config
from .db import TaskStore
from .models import Task
from .notifications import NotificationCenter
from .recurrence import RecurrenceRule
from .remote import remote_from_config
from .service import TaskNotFound, TaskService
from .sync import SyncEngine
from .tasks import UNSET, display_date

logger = logging.getLogger(__name__)

# stdout handler for the package loggers unless the host already configured one
_pkg_logger = logging.getLogger('quicktodo')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


class TextIn(BaseModel):
    text: str


class RuleOut(BaseModel):
    rule: RecurrenceRule
    display_name: str
    rrule: str


class ParsedOut(BaseModel):
    title: str
    scheduled_date: Optional[datetime] = None
    has_specific_time: bool = False
    recurrence: Optional[RuleOut] = None


class TaskOut(BaseModel):
    id: uuid.UUID
    title: str
    raw_input: str
    scheduled_date: Optional[datetime] = None
    has_specific_time: bool
    recurrence: Optional[RuleOut] = None
    is_completed: bool
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    sort_order: int
    display_date: Optional[str] = None


class TaskGroupOut(BaseModel):
    title: str
    tasks: list[TaskOut]


class TaskPatch(BaseModel):
    title: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    has_specific_time: Optional[bool] = None
    recurrence: Optional[RecurrenceRule] = None


class ReorderIn(BaseModel):
    source_id: uuid.UUID
    destination_id: uuid.UUID
    visible_ids: Optional[list[uuid.UUID]] = None


def _rule_out(rule: Optional[RecurrenceRule]) -> Optional[RuleOut]:
    if rule is None:
        return None
    return RuleOut(rule=rule, display_name=rule.display_name, rrule=rule.to_rrule_string())


def _task_out(task: Task, now: datetime) -> TaskOut:
    return TaskOut(
        id=task.id,
        title=task.title,
        raw_input=task.raw_input,
        scheduled_date=task.scheduled_date,
        has_specific_time=task.has_specific_time,
        recurrence=_rule_out(task.recurrence_rule),
        is_completed=task.is_completed,
        completed_at=task.completed_at,
        created_at=task.created_at,
        updated_at=task.updated_at,
        sort_order=task.sort_order,
        display_date=display_date(task, now),
    )


def _service(request: Request) -> TaskService:
    return request.app.state.service


def build_service() -> TaskService:
    """Wire a TaskService from config: local store plus optional remote sync."""
    store = TaskStore(config.DATABASE_URL)
    notifier = NotificationCenter()
    remote = remote_from_config()
    sync = None
    if remote is not None:
        sync = SyncEngine(store, remote, config.REMOTE_USER_ID, notifier=notifier)
    return TaskService(store, sync=sync, notifier=notifier)


def create_app(service: Optional[TaskService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = app.state.service
        if svc is None:
            svc = app.state.service = build_service()
        await svc.store.init_db()
        logger.info('starting quicktodo using DATABASE_URL=%s', config.DATABASE_URL)
        if svc.sync is not None:
            report = await svc.sync.force_fetch()
            if not report.ok:
                logger.warning('initial sync failed: %s', report.error)
            svc.sync.start_listening()
        else:
            logger.info('remote sync disabled (set REMOTE_BASE_URL to enable)')
        try:
            yield
        finally:
            if svc.sync is not None:
                await svc.sync.stop_listening()
                await svc.sync.remote.close()
            await svc.store.dispose()

    app = FastAPI(title='quicktodo', lifespan=lifespan)
    app.state.service = service

    @app.post('/parse', response_model=ParsedOut)
    async def parse_text(payload: TextIn, request: Request):
        parsed = _service(request).parse(payload.text)
        return ParsedOut(
            title=parsed.title,
            scheduled_date=parsed.scheduled_date,
            has_specific_time=parsed.has_specific_time,
            recurrence=_rule_out(parsed.recurrence_rule),
        )

    @app.post('/tasks', response_model=TaskOut, status_code=201)
    async def create_task(payload: TextIn, request: Request):
        svc = _service(request)
        try:
            task = await svc.add(payload.text)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _task_out(task, svc.now())

    @app.get('/tasks', response_model=list[TaskOut])
    async def list_tasks(request: Request, order_by: str = 'sort_order', descending: bool = True):
        svc = _service(request)
        try:
            tasks = await svc.list_tasks(order_by, descending)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        now = svc.now()
        return [_task_out(t, now) for t in tasks]

    @app.get('/tasks/today', response_model=list[TaskOut])
    async def list_today(request: Request):
        svc = _service(request)
        now = svc.now()
        return [_task_out(t, now) for t in await svc.today()]

    @app.get('/tasks/upcoming', response_model=list[TaskGroupOut])
    async def list_upcoming(request: Request):
        svc = _service(request)
        now = svc.now()
        return [
            TaskGroupOut(title=name, tasks=[_task_out(t, now) for t in tasks])
            for name, tasks in await svc.upcoming()
        ]

    @app.post('/tasks/reorder', response_model=list[TaskOut])
    async def reorder(payload: ReorderIn, request: Request):
        svc = _service(request)
        try:
            changed = await svc.reorder(payload.source_id, payload.destination_id, payload.visible_ids)
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        now = svc.now()
        return [_task_out(t, now) for t in changed]

    @app.patch('/tasks/{task_id}', response_model=TaskOut)
    async def patch_task(task_id: uuid.UUID, payload: TaskPatch, request: Request):
        svc = _service(request)
        # only fields the client actually sent are applied; explicit null clears
        sent = payload.model_fields_set
        try:
            task = await svc.edit(
                task_id,
                title=payload.title if 'title' in sent else UNSET,
                scheduled_date=payload.scheduled_date if 'scheduled_date' in sent else UNSET,
                has_specific_time=payload.has_specific_time if 'has_specific_time' in sent else UNSET,
                recurrence_rule=payload.recurrence if 'recurrence' in sent else UNSET,
            )
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return _task_out(task, svc.now())

    @app.post('/tasks/{task_id}/toggle', response_model=TaskOut)
    async def toggle(task_id: uuid.UUID, request: Request):
        svc = _service(request)
        try:
            task = await svc.toggle(task_id)
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return _task_out(task, svc.now())

    @app.delete('/tasks/{task_id}')
    async def delete_task(task_id: uuid.UUID, request: Request):
        try:
            await _service(request).delete(task_id)
        except TaskNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {'ok': True, 'id': str(task_id)}

    @app.post('/sync')
    async def sync(request: Request):
        svc = _service(request)
        report = await svc.sync_now()
        if report is None:
            return {'enabled': False}
        return {
            'enabled': True,
            'ok': report.ok,
            'error': report.error,
            'inserted': [str(i) for i in report.inserted],
            'updated': [str(i) for i in report.updated],
            'deleted': [str(i) for i in report.deleted],
            'pushed': [str(i) for i in report.pushed],
            'skipped': report.skipped,
        }

    return app


app = create_app()
