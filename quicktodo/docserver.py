"""Reference document server.

A tiny FastAPI service exposing the remote-store contract over HTTP so
several quicktodo instances can sync with each other. State lives in an
InMemoryRemoteStore; restart loses it.

    GET    /users/{uid}/todos                  -> {cursor, documents: {id: doc}}
    PUT    /users/{uid}/todos/{doc_id}         body: document
    DELETE /users/{uid}/todos/{doc_id}
    GET    /users/{uid}/changes?since=N        -> {cursor, changes: [{type, id, data}]}
                                               410 once N has been trimmed
"""
from typing import Any, Optional
import logging

from fastapi import Body, FastAPI, HTTPException, Query

from .remote import CursorExpired, InMemoryRemoteStore

logger = logging.getLogger(__name__)


def create_app(store: Optional[InMemoryRemoteStore] = None) -> FastAPI:
    store = store or InMemoryRemoteStore()
    app = FastAPI(title='quicktodo docserver')
    app.state.store = store

    @app.get('/users/{user_id}/todos')
    async def list_todos(user_id: str):
        snap = store.snapshot(user_id)
        return {'cursor': snap.cursor, 'documents': {c.doc_id: c.data for c in snap.changes}}

    @app.put('/users/{user_id}/todos/{doc_id}')
    async def put_todo(user_id: str, doc_id: str, data: dict[str, Any] = Body(...)):
        embedded = data.get('id')
        if embedded is not None and str(embedded).lower() != doc_id.lower():
            raise HTTPException(status_code=400, detail='document id does not match path')
        await store.upsert(user_id, doc_id, data)
        logger.debug('stored %s/%s', user_id, doc_id)
        return {'ok': True, 'id': doc_id}

    @app.delete('/users/{user_id}/todos/{doc_id}')
    async def delete_todo(user_id: str, doc_id: str):
        # deleting a missing document is not an error: deletes are idempotent
        await store.delete(user_id, doc_id)
        return {'ok': True, 'id': doc_id}

    @app.get('/users/{user_id}/changes')
    async def changes(user_id: str, since: int = Query(0, ge=0)):
        try:
            batch = store.changes_since(user_id, since)
        except CursorExpired as e:
            # the client has to start over from GET /todos
            raise HTTPException(status_code=410, detail=str(e))
        return {
            'cursor': batch.cursor,
            'changes': [
                {'type': c.type.value, 'id': c.doc_id, 'data': c.data}
                for c in batch.changes
            ],
        }

    return app


app = create_app()
