"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Every request carries a server-side Session (request.state.session, set by
sessions/middleware.py). Protected routes do not inspect it themselves; they
declare an ActionPolicy and let the access gate on app.state decide:

    @router.post("/admin/security-levels/reset")
    def reset(decision: GateDecision = Depends(guard(ADMIN_WRITE))): ...

The CSRF token is taken from the X-CSRF-Token header (API clients) or the
csrf_token form field (web forms), in that order.

try_get_principal() is the soft variant for pages that render differently for
anonymous visitors. It never raises and never clears an expired login.

Layer rule: this module is the one place in auth/ that imports fastapi and
security/, because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from core.models import STATE_CHANGING_METHODS, Role, SessionPrincipal
from security.csrf import CSRF_FIELD, CSRF_HEADER
from security.gate import ActionPolicy, GateDecision
from sessions.models import Session

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# Policies shared by the API and web routers.
LOGGED_IN_READ = ActionPolicy(name="read", csrf=False)
LOGGED_IN_WRITE = ActionPolicy(name="write")
ADMIN_READ = ActionPolicy(name="admin_read", role=Role.ADMIN, csrf=False)
ADMIN_WRITE = ActionPolicy(name="admin_write", role=Role.ADMIN)


def get_session(request: Request) -> Session:
    session = getattr(request.state, "session", None)
    if session is None:
        # No session middleware in front of this app (bare unit-test app).
        session = Session()
        request.state.session = session
    return session


def try_get_principal(request: Request) -> Optional[SessionPrincipal]:
    """Return the logged-in identity, or None. Never raises."""
    return request.app.state.auth.current_principal(get_session(request))


async def supplied_csrf_token(request: Request) -> Optional[str]:
    token = request.headers.get(CSRF_HEADER)
    if token:
        return token
    if request.method.upper() in STATE_CHANGING_METHODS:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(_FORM_TYPES):
            form = await request.form()
            value = form.get(CSRF_FIELD)
            return value if isinstance(value, str) else None
    return None


async def check_policy(request: Request, policy: ActionPolicy) -> GateDecision:
    """Run the access gate for policy. Raises core.errors.SecurityError subclasses."""
    token = await supplied_csrf_token(request)
    return request.app.state.gate.check(get_session(request), policy, request.method, token)


def guard(policy: ActionPolicy):
    """Build a dependency that enforces policy and returns the GateDecision."""

    async def dependency(request: Request) -> GateDecision:
        return await check_policy(request, policy)

    dependency.__name__ = f"guard_{policy.name}"
    return dependency
