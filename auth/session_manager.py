"""
auth/session_manager.py -- Login state kept in the server-side session.

The authenticated identity is four session attributes: user_id, username,
role and auth_time. auth_time is stamped at login and never refreshed, so
session_idle_timeout bounds the lifetime of a login:

    now - auth_time >  idle_timeout  -> EXPIRED
    now - auth_time <= idle_timeout  -> AUTHENTICATED

check_expiry() only reports. expire() is the explicit side effect that drops
the identity; is_logged_in() does both, which is what page handlers want.

Session fixation: login() and logout() both move the session to a fresh id.
The middleware deletes the old row when the response is written.

Layer rule: no imports from api/, web/ or bank/.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from auth.passwords import authenticate_user
from auth.store import UserStore
from core.errors import InvalidCredentials
from core.models import AuthState, Role, SessionPrincipal
from sessions.models import AUTH_KEYS, AUTH_TIME, ROLE, USER_ID, USERNAME, Session

logger = logging.getLogger("bankdvwa.auth")

# Rate limiter key shared by the login routes; cleared on successful login.
LOGIN_RATE_KEY = "login"


class AuthSessionManager:
    def __init__(
        self,
        user_store: UserStore,
        idle_timeout: int = 1800,
        csrf=None,
        rate_limiter=None,
        audit=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_store = user_store
        self.idle_timeout = idle_timeout
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, session: Session, username: str, password: str) -> SessionPrincipal:
        """Verify credentials and bind the user to the session.

        Unknown user, wrong password and disabled account all raise the same
        InvalidCredentials so the response does not reveal which one it was.
        """
        user = authenticate_user(self.user_store, username, password)
        if user is None:
            logger.info("Failed login for %r", username)
            self._record("login_failed", username=username)
            raise InvalidCredentials()

        session.regenerate_id()
        session.clear_keys(AUTH_KEYS)
        auth_time = self._clock()
        session.data[USER_ID] = user.id
        session.data[USERNAME] = user.username
        session.data[ROLE] = user.role
        session.data[AUTH_TIME] = auth_time

        self.user_store.update_last_login(user.id)
        if self.rate_limiter is not None:
            self.rate_limiter.reset(session, LOGIN_RATE_KEY)
        if self.csrf is not None:
            self.csrf.issue(session)
        self._record("login_success", user_id=user.id, username=user.username)
        return SessionPrincipal(user_id=user.id, username=user.username, role=_role(user.role), auth_time=auth_time)

    def logout(self, session: Session) -> None:
        """Drop the identity and rotate the session id. Flash messages survive."""
        user_id = session.get(USER_ID)
        session.clear_keys(AUTH_KEYS)
        session.regenerate_id()
        if self.csrf is not None:
            self.csrf.issue(session)
        if user_id is not None:
            self._record("logout", user_id=user_id)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def check_expiry(self, session: Session) -> AuthState:
        if session.get(USER_ID) is None:
            return AuthState.ANONYMOUS
        auth_time = session.get(AUTH_TIME)
        if not isinstance(auth_time, (int, float)):
            return AuthState.EXPIRED
        if self._clock() - auth_time > self.idle_timeout:
            return AuthState.EXPIRED
        return AuthState.AUTHENTICATED

    def expire(self, session: Session) -> None:
        """Clear the login. A login with an unreadable auth_time tears down the whole session."""
        user_id = session.get(USER_ID)
        if user_id is not None and not isinstance(session.get(AUTH_TIME), (int, float)):
            logger.warning("Session for user %s has a corrupt auth_time; destroying it", user_id)
            session.destroy()
        else:
            session.clear_keys(AUTH_KEYS)
        if user_id is not None:
            logger.info("Session for user %s expired", user_id)
            self._record("session_expired", user_id=user_id)

    def is_logged_in(self, session: Session) -> bool:
        state = self.check_expiry(session)
        if state is AuthState.EXPIRED:
            self.expire(session)
            return False
        return state is AuthState.AUTHENTICATED

    def has_role(self, session: Session, role: Role | str) -> bool:
        try:
            wanted = Role(role)
        except ValueError:
            return False
        return self.is_logged_in(session) and session.get(ROLE) == wanted.value

    def current_principal(self, session: Session) -> Optional[SessionPrincipal]:
        """The logged-in identity, or None. Does not clear an expired login."""
        if self.check_expiry(session) is not AuthState.AUTHENTICATED:
            return None
        return SessionPrincipal(
            user_id=session.get(USER_ID),
            username=session.get(USERNAME, ""),
            role=_role(session.get(ROLE)),
            auth_time=session.get(AUTH_TIME),
        )

    def _record(self, event_name: str, **attributes) -> None:
        if self.audit is not None:
            self.audit.record(event_name, **attributes)


def _role(value) -> Role:
    parsed = Role.__members__.get(str(value).upper())
    return parsed if parsed is not None else Role.GUEST
