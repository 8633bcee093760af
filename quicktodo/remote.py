"""Remote document store boundary.

A remote store is a per-user collection of JSON documents keyed by task id,
with a full fetch, upsert / delete, and a live change feed. Two
implementations live here: an in-process store (used by tests and as the
backing state of the reference docserver) and an HTTP client for a
docserver-compatible service.
"""
from enum import Enum
from typing import Any, AsyncIterator, NamedTuple, Optional
import asyncio
import copy
import logging

import httpx

from . import config

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """Transport-level failure talking to the remote store."""


class CursorExpired(RemoteError):
    """The change log no longer reaches back to the requested cursor."""


class ChangeType(str, Enum):
    ADDED = 'added'
    MODIFIED = 'modified'
    REMOVED = 'removed'


class DocumentChange(NamedTuple):
    type: ChangeType
    doc_id: str
    # None for removals
    data: Optional[dict[str, Any]] = None


class ChangeBatch(NamedTuple):
    changes: list[DocumentChange]
    # Position in the store's change log after this batch
    cursor: int = 0


class RemoteStore:
    """Interface every remote backend implements."""

    async def fetch_all(self, user_id: str) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    async def upsert(self, user_id: str, doc_id: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, user_id: str, doc_id: str) -> None:
        raise NotImplementedError

    def listen(self, user_id: str) -> AsyncIterator[ChangeBatch]:
        """Yield change batches in delivery order, forever.

        The first batch reports every existing document as added.
        """
        raise NotImplementedError

    async def close(self) -> None:
        pass


class _Collection:
    def __init__(self):
        self.docs: dict[str, dict[str, Any]] = {}
        # (sequence number, change), sequence numbers start at 1
        self.log: list[tuple[int, DocumentChange]] = []
        self.seq = 0
        # highest sequence number trimmed from the log
        self.floor = 0


class InMemoryRemoteStore(RemoteStore):
    """Remote store held in process memory.

    Set `fail_with` to an exception instance to make every call raise it
    wrapped in RemoteError, which is how tests simulate an outage.
    """

    def __init__(self, log_limit: int = config.CHANGE_LOG_LIMIT):
        self.log_limit = log_limit
        self._collections: dict[str, _Collection] = {}
        self._cond = asyncio.Condition()
        self.fail_with: Optional[Exception] = None

    def _col(self, user_id: str) -> _Collection:
        col = self._collections.get(user_id)
        if col is None:
            col = self._collections[user_id] = _Collection()
        return col

    def _check(self) -> None:
        if self.fail_with is not None:
            raise RemoteError(str(self.fail_with)) from self.fail_with

    async def _record(self, col: _Collection, change: DocumentChange) -> int:
        async with self._cond:
            col.seq += 1
            col.log.append((col.seq, change))
            excess = len(col.log) - self.log_limit
            if excess > 0:
                col.floor = col.log[excess - 1][0]
                del col.log[:excess]
            self._cond.notify_all()
            return col.seq

    async def fetch_all(self, user_id: str) -> dict[str, dict[str, Any]]:
        self._check()
        return copy.deepcopy(self._col(user_id).docs)

    async def upsert(self, user_id: str, doc_id: str, data: dict[str, Any]) -> None:
        self._check()
        col = self._col(user_id)
        kind = ChangeType.MODIFIED if doc_id in col.docs else ChangeType.ADDED
        col.docs[doc_id] = copy.deepcopy(data)
        await self._record(col, DocumentChange(kind, doc_id, copy.deepcopy(data)))

    async def delete(self, user_id: str, doc_id: str) -> None:
        self._check()
        col = self._col(user_id)
        if col.docs.pop(doc_id, None) is not None:
            await self._record(col, DocumentChange(ChangeType.REMOVED, doc_id))

    def snapshot(self, user_id: str) -> ChangeBatch:
        col = self._col(user_id)
        changes = [DocumentChange(ChangeType.ADDED, k, copy.deepcopy(v)) for k, v in col.docs.items()]
        return ChangeBatch(changes, col.seq)

    def changes_since(self, user_id: str, since: int) -> ChangeBatch:
        col = self._col(user_id)
        if since < col.floor:
            raise CursorExpired(f'cursor {since} is older than the retained change log (from {col.floor})')
        changes = [copy.deepcopy(c) for seq, c in col.log if seq > since]
        return ChangeBatch(changes, col.seq)

    async def listen(self, user_id: str) -> AsyncIterator[ChangeBatch]:
        self._check()
        first = self.snapshot(user_id)
        cursor = first.cursor
        yield first
        col = self._col(user_id)
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: col.seq > cursor)
            self._check()
            batch = self.changes_since(user_id, cursor)
            cursor = batch.cursor
            if batch.changes:
                yield batch


class HttpRemoteStore(RemoteStore):
    """Client for the reference docserver API (see quicktodo.docserver).

    The live feed is implemented by polling `/changes?since=<cursor>` every
    `poll_interval` seconds.
    """

    def __init__(
        self,
        base_url: str = config.REMOTE_BASE_URL,
        timeout: float = config.REMOTE_TIMEOUT,
        poll_interval: float = config.REMOTE_POLL_INTERVAL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.poll_interval = poll_interval
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteError(f'{method} {path} returned {e.response.status_code}') from e
        except httpx.HTTPError as e:
            raise RemoteError(f'{method} {path} failed: {e}') from e
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteError(f'{resp.request.method} {resp.request.url.path} returned invalid JSON') from e
        if not isinstance(body, dict):
            raise RemoteError(f'{resp.request.method} {resp.request.url.path} returned {type(body).__name__}, expected an object')
        return body

    async def fetch_all(self, user_id: str) -> dict[str, dict[str, Any]]:
        resp = await self._request('GET', f'/users/{user_id}/todos')
        return self._json(resp).get('documents', {})

    async def upsert(self, user_id: str, doc_id: str, data: dict[str, Any]) -> None:
        await self._request('PUT', f'/users/{user_id}/todos/{doc_id}', json=data)

    async def delete(self, user_id: str, doc_id: str) -> None:
        await self._request('DELETE', f'/users/{user_id}/todos/{doc_id}')

    @staticmethod
    def _batch(payload: dict) -> ChangeBatch:
        changes = [
            DocumentChange(ChangeType(c['type']), c['id'], c.get('data'))
            for c in payload.get('changes', [])
        ]
        return ChangeBatch(changes, int(payload.get('cursor', 0)))

    async def listen(self, user_id: str) -> AsyncIterator[ChangeBatch]:
        resp = await self._request('GET', f'/users/{user_id}/todos')
        body = self._json(resp)
        cursor = int(body.get('cursor', 0))
        docs = body.get('documents', {})
        yield ChangeBatch([DocumentChange(ChangeType.ADDED, k, v) for k, v in docs.items()], cursor)
        while True:
            await asyncio.sleep(self.poll_interval)
            resp = await self._request('GET', f'/users/{user_id}/changes', params={'since': cursor})
            batch = self._batch(self._json(resp))
            cursor = batch.cursor
            if batch.changes:
                yield batch


def remote_from_config() -> Optional[RemoteStore]:
    """The configured remote store, or None when sync is disabled."""
    if not config.REMOTE_BASE_URL or not config.ENABLE_SYNC:
        return None
    return HttpRemoteStore(config.REMOTE_BASE_URL, config.REMOTE_TIMEOUT, config.REMOTE_POLL_INTERVAL)
