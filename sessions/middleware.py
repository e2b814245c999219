"""
sessions/middleware.py -- Attach a server-held Session to every request.

Flow per request:
  1. Read the session id from the cookie and load its mapping from the store
     found on app.state.session_store. Unknown or expired ids are never adopted:
     the client gets a brand-new id instead (session fixation defense).
  2. Hold a per-session asyncio.Lock for the whole request. Overlapping requests
     from one client (double-submit, parallel tabs) are serialized, so the
     read-modify-write of rate-limit counters and CSRF tokens cannot lose updates.
  3. Expose the handle as request.state.session.
  4. After the response: apply regenerate_id()/destroy() to the store, persist
     the data, and set or delete the cookie.

Anonymous requests that never write to their session do not create a row or a
cookie, so health checks and static assets stay stateless.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.config import get_settings
from sessions.models import Session
from sessions.store import SessionStore

logger = logging.getLogger("bankdvwa.sessions")


class _SessionLocks:
    """One asyncio.Lock per live session id, dropped when nobody holds it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: Optional[str]) -> AsyncIterator[None]:
        if not key:
            yield
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]


class SessionMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, cookie_name: Optional[str] = None, secure: Optional[bool] = None) -> None:
        super().__init__(app)
        settings = get_settings()
        self.cookie_name = cookie_name or settings.session_cookie_name
        self.secure = settings.secure_cookies if secure is None else secure
        self._locks = _SessionLocks()

    async def dispatch(self, request: Request, call_next) -> Response:
        store: Optional[SessionStore] = getattr(request.app.state, "session_store", None)
        if store is None:
            # Lifespan has not wired a store (e.g. bare app in a unit test).
            request.state.session = Session()
            return await call_next(request)

        cookie_id = request.cookies.get(self.cookie_name)
        async with self._locks.hold(cookie_id):
            data = store.get(cookie_id) if cookie_id else None
            if data is None:
                session = Session()
            else:
                session = Session(id=cookie_id, data=data, is_new=False)
            request.state.session = session

            response = await call_next(request)
            self._save(store, session, cookie_id, response)
        return response

    def _save(self, store: SessionStore, session: Session, cookie_id: Optional[str], response: Response) -> None:
        if session.destroyed:
            for sid in {*session.previous_ids, session.id}:
                store.destroy(sid)
            if cookie_id:
                response.delete_cookie(self.cookie_name)
            return

        if session.is_new and not session.data:
            if cookie_id:
                # Stale cookie for a session that no longer exists.
                response.delete_cookie(self.cookie_name)
            return

        if session.previous_ids:
            oldest, *rest = session.previous_ids
            for sid in rest:
                store.destroy(sid)
            if session.is_new:
                store.set(session.id, session.data)
            else:
                store.regenerate_id(oldest, session.data, new_id=session.id)
            logger.debug("Session id rotated")
        else:
            store.set(session.id, session.data)

        if session.id != cookie_id:
            response.set_cookie(
                self.cookie_name,
                value=session.id,
                httponly=True,
                samesite="lax",
                secure=self.secure,
            )
