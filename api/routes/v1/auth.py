"""
api/routes/v1/auth.py -- Session authentication REST endpoints.

Routes:
  GET  /api/v1/auth/csrf    -- current session CSRF token (creates the session)
  POST /api/v1/auth/login   -- password login; rotates the session id
  POST /api/v1/auth/logout  -- drops the identity; rotates the session id
  GET  /api/v1/auth/me      -- current identity (requires login)

Clients call GET /auth/csrf first and send the token back in X-CSRF-Token on
every POST/PUT/PATCH/DELETE. Login returns a fresh token, since the session
id and its token both change.

Security:
  Login is throttled twice: per IP by slowapi (LOGIN_RATE_LIMIT) and per
  session by the access gate (RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_PERIOD).
  Unknown user, wrong password and disabled account share one error.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import CsrfResponse, LoginRequest, LoginResponse, MeResponse, MessageResponse
from auth.dependencies import LOGGED_IN_READ, get_session, guard
from auth.session_manager import LOGIN_RATE_KEY
from core.config import get_settings
from security.gate import ActionPolicy, GateDecision, RateLimitRule

LOGIN_POLICY = ActionPolicy(name="login", login_required=False, rate_limit=RateLimitRule(LOGIN_RATE_KEY))
LOGOUT_POLICY = ActionPolicy(name="logout", login_required=False)

router = APIRouter()


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf_token(request: Request, response: Response) -> CsrfResponse:
    session = get_session(request)
    response.headers["Cache-Control"] = "no-store"
    return CsrfResponse(csrf_token=request.app.state.csrf.get_or_issue(session))


@limiter.limit(lambda: get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    decision: GateDecision = Depends(guard(LOGIN_POLICY)),
) -> LoginResponse:
    """Authenticate with username and password and bind the user to the session.

    Raises InvalidCredentials (401 bad_credentials) on any failure; the
    exception handler renders the error envelope.
    """
    session = get_session(request)
    principal = request.app.state.auth.login(session, body.username, body.password)
    response.headers["Cache-Control"] = "no-store"
    return LoginResponse(
        user_id=principal.user_id,
        username=principal.username,
        role=principal.role.value,
        csrf_token=request.app.state.csrf.get_or_issue(session),
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, decision: GateDecision = Depends(guard(LOGOUT_POLICY))) -> MessageResponse:
    request.app.state.auth.logout(get_session(request))
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(decision: GateDecision = Depends(guard(LOGGED_IN_READ))) -> MeResponse:
    principal = decision.principal
    return MeResponse(
        user_id=principal.user_id,
        username=principal.username,
        role=principal.role.value,
        auth_time=principal.auth_time,
    )
