"""
security/csrf.py -- Per-session anti-forgery tokens.

One active token per session, stored as session.data["csrf"] =
{"token": <hex>, "expires_at": <epoch seconds>}. issue() replaces whatever was
there before. verify() does not consume the token: it stays valid for every
form in the session until it expires or is replaced (login re-issues it).

Verification fails closed and gives the caller a single answer (False) for
every failure mode -- nothing stored, nothing supplied, expired, mismatched.
"""

from __future__ import annotations

import hmac
import secrets
import time
from typing import Callable, Optional

from core.models import CsrfToken
from sessions.models import CSRF, Session

# Form field and header names understood by the gate.
CSRF_FIELD = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


class CsrfTokenManager:
    def __init__(self, token_bytes: int = 32, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time) -> None:
        self.token_bytes = token_bytes
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, session: Session) -> str:
        """Generate a fresh token, store it in the session and return it for the form."""
        value = secrets.token_bytes(self.token_bytes).hex()
        session.data[CSRF] = {"token": value, "expires_at": self._clock() + self.ttl_seconds}
        return value

    def current(self, session: Session) -> Optional[CsrfToken]:
        entry = session.get(CSRF)
        if not isinstance(entry, dict) or "token" not in entry:
            return None
        return CsrfToken(value=str(entry["token"]), expires_at=float(entry.get("expires_at", 0)))

    def get_or_issue(self, session: Session) -> str:
        """Return the active token, issuing a new one if none is valid.

        Used when rendering pages so several open forms share one token.
        """
        token = self.current(session)
        if token is None or self._clock() > token.expires_at:
            return self.issue(session)
        return token.value

    def verify(self, session: Session, supplied: Optional[str]) -> bool:
        token = self.current(session)
        if token is None or not supplied:
            return False
        if self._clock() > token.expires_at:
            return False
        return hmac.compare_digest(token.value.encode("utf-8"), str(supplied).encode("utf-8"))
