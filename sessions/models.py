"""
sessions/models.py -- The Session handle passed explicitly to every component.

A Session is the in-request view of one row in the session store. Components
(CSRF manager, rate limiter, auth session manager) read and mutate session.data;
the middleware persists the result after the response. Identifier changes are
recorded on the handle (regenerate_id / destroy) and applied to the store by
the middleware while it still holds the per-session lock.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

# Session attribute keys
USER_ID = "user_id"
USERNAME = "username"
ROLE = "role"
AUTH_TIME = "auth_time"
CSRF = "csrf"
RATE_LIMITS = "rate_limits"
FLASH = "flash"

AUTH_KEYS = (USER_ID, USERNAME, ROLE, AUTH_TIME)


def new_session_id() -> str:
    """Opaque 256-bit identifier, URL-safe so it can travel in a cookie."""
    return secrets.token_urlsafe(32)


@dataclass
class Session:
    id: str = field(default_factory=new_session_id)
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = True
    previous_ids: list[str] = field(default_factory=list)
    destroyed: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def regenerate_id(self) -> str:
        """Move this session to a fresh identifier, keeping its data.

        The old identifier is deleted from the store when the session is saved,
        so a fixated or leaked id stops resolving.
        """
        self.previous_ids.append(self.id)
        self.id = new_session_id()
        return self.id

    def destroy(self) -> None:
        """Drop all data and mark the identifier for deletion."""
        self.data.clear()
        self.destroyed = True

    def clear_keys(self, keys) -> None:
        for key in keys:
            self.data.pop(key, None)


# ---------------------------------------------------------------------------
# Flash messages
# ---------------------------------------------------------------------------


def set_flash(session: Session, kind: str, message: str) -> None:
    """Store a one-shot message (success, error, info, warning) for the next page."""
    session.data[FLASH] = {"type": kind, "message": message}


def pop_flash(session: Optional[Session]) -> Optional[dict]:
    if session is None:
        return None
    return session.data.pop(FLASH, None)
