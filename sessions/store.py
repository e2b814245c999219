"""
sessions/store.py -- SQLite-backed server-side session store.

Holds the session mapping for every client, keyed by the opaque session id
carried in the cookie. Rows idle for longer than the TTL are treated as absent
and removed by purge_expired(), which the API lifespan calls periodically.

Security:
  Session ids are never written in clear. Rows are keyed by
  HMAC-SHA256(SECRET_KEY, session_id), so a copy of the database file does not
  yield usable session cookies.

Atomicity:
  Every method runs its statements under one connection lock and commits
  before returning, so each call is atomic per key. regenerate_id() moves the
  data to the new id and deletes the old row in a single transaction.
  Read-modify-write across a whole request is serialized by the per-session
  lock in sessions/middleware.py.

Usage:
    store = SessionStore(secret_key=settings.secret_key)
    sid = store.new_id()
    store.set(sid, {"username": "alice"})
    data = store.get(sid)           # dict or None
    sid = store.regenerate_id(sid, data)
    store.destroy(sid)
    store.purge_expired()
"""

import hashlib
import hmac
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

from sessions.models import new_session_id

_DEFAULT_DB = Path(__file__).parent / "bankdvwa_sessions.db"
_DEFAULT_TTL = 60 * 60 * 24  # 24 hours in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    id_hash     TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    updated_at  REAL NOT NULL
);
"""


class SessionStore:
    def __init__(
        self,
        secret_key: str,
        db_path: Union[Path, str] = _DEFAULT_DB,
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._key = secret_key.encode("utf-8")
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    @staticmethod
    def new_id() -> str:
        return new_session_id()

    def get(self, session_id: str) -> Optional[dict]:
        """Return the stored mapping if it exists and hasn't gone idle past the TTL."""
        if not session_id:
            return None
        key = self._hash(session_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data, updated_at FROM sessions WHERE id_hash = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            data, updated_at = row
            if self._clock() - updated_at > self.ttl:
                self._conn.execute("DELETE FROM sessions WHERE id_hash = ?", (key,))
                self._conn.commit()
                return None
        return json.loads(data)

    def set(self, session_id: str, data: dict) -> None:
        """Store data for session_id, replacing any existing mapping."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sessions (id_hash, data, updated_at) VALUES (?, ?, ?)",
                (self._hash(session_id), json.dumps(data), self._clock()),
            )
            self._conn.commit()

    def regenerate_id(self, old_id: str, data: dict, new_id: Optional[str] = None) -> str:
        """Move data to a new identifier and delete the old row. Returns the new id."""
        new_id = new_id or self.new_id()
        with self._lock:
            try:
                self._conn.execute("DELETE FROM sessions WHERE id_hash = ?", (self._hash(old_id),))
                self._conn.execute(
                    "INSERT OR REPLACE INTO sessions (id_hash, data, updated_at) VALUES (?, ?, ?)",
                    (self._hash(new_id), json.dumps(data), self._clock()),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return new_id

    def destroy(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM sessions WHERE id_hash = ?", (self._hash(session_id),))
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all sessions idle longer than TTL. Returns number of rows removed."""
        cutoff = self._clock() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sessions WHERE updated_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    def _hash(self, session_id: str) -> str:
        return hmac.new(self._key, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def close(self) -> None:
        self._conn.close()
