"""
security/gate.py -- Per-request access decision for protected actions.

AccessGate.check() composes the other security components in a fixed order:

  (a) authentication and role    -> AuthenticationRequired / SessionExpired / PermissionDenied
  (b) CSRF on state-changing verbs -> CsrfMismatch
  (c) session rate limit          -> RateLimited(retry_after)
  (d) security level of the demo  -> GateDecision.level / GateDecision.variant

Each failure is raised as a core.errors exception; the api/ and web/ layers
own the conversion into redirects, flash messages and status codes. Denials
are also sent to the audit sink, which never raises.

The gate depends on auth/ only through the SessionAuthenticator protocol so
that security/ stays importable without auth/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from core.errors import (
    AuthenticationRequired,
    CsrfMismatch,
    PermissionDenied,
    RateLimited,
    SecurityError,
    SessionExpired,
)
from core.models import STATE_CHANGING_METHODS, AuthState, Level, Role, SessionPrincipal
from security.csrf import CsrfTokenManager
from security.demos import DemoVariant, has_demo, select_variant
from security.levels import SecurityLevelStore
from security.rate_limit import RateLimiter
from sessions.models import Session

logger = logging.getLogger("bankdvwa.security.gate")


class SessionAuthenticator(Protocol):
    def check_expiry(self, session: Session) -> AuthState: ...

    def expire(self, session: Session) -> None: ...

    def current_principal(self, session: Session) -> Optional[SessionPrincipal]: ...


class AuditSink(Protocol):
    def record(self, event_name: str, **attributes: Any) -> None: ...


# ---------------------------------------------------------------------------
# Policy and decision types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitRule:
    key: str
    max_requests: Optional[int] = None  # None = limiter default
    period_seconds: Optional[int] = None


@dataclass(frozen=True)
class ActionPolicy:
    """What a protected action requires. Defaults describe a logged-in form post."""

    name: str
    login_required: bool = True
    role: Optional[Role] = None
    csrf: bool = True
    rate_limit: Optional[RateLimitRule] = None
    vulnerability: Optional[str] = None


@dataclass
class GateDecision:
    principal: Optional[SessionPrincipal]
    level: Optional[Level] = None
    variant: Optional[DemoVariant] = None


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class AccessGate:
    def __init__(
        self,
        auth: SessionAuthenticator,
        csrf: CsrfTokenManager,
        rate_limiter: RateLimiter,
        levels: SecurityLevelStore,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.auth = auth
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.levels = levels
        self.audit = audit

    def check(
        self,
        session: Session,
        policy: ActionPolicy,
        method: str = "GET",
        csrf_token: Optional[str] = None,
    ) -> GateDecision:
        try:
            principal = self._authorize(session, policy)
            if policy.csrf and method.upper() in STATE_CHANGING_METHODS:
                self._verify_csrf(session, csrf_token)
            if policy.rate_limit is not None:
                self._throttle(session, policy.rate_limit)
        except SecurityError as exc:
            self._record_denial(session, policy, exc)
            raise

        decision = GateDecision(principal=principal)
        if policy.vulnerability is not None:
            decision.level = self.levels.get_level(policy.vulnerability)
            if has_demo(policy.vulnerability):
                decision.variant = select_variant(policy.vulnerability, decision.level)
        return decision

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _authorize(self, session: Session, policy: ActionPolicy) -> Optional[SessionPrincipal]:
        state = self.auth.check_expiry(session)
        if state is AuthState.EXPIRED:
            self.auth.expire(session)
            if policy.login_required or policy.role is not None:
                raise SessionExpired()
            return None
        principal = self.auth.current_principal(session) if state is AuthState.AUTHENTICATED else None
        if principal is None:
            if policy.login_required or policy.role is not None:
                raise AuthenticationRequired()
            return None
        if policy.role is not None and principal.role != policy.role:
            raise PermissionDenied()
        return principal

    def _verify_csrf(self, session: Session, csrf_token: Optional[str]) -> None:
        if not self.csrf.verify(session, csrf_token):
            raise CsrfMismatch()

    def _throttle(self, session: Session, rule: RateLimitRule) -> None:
        if self.rate_limiter.check_and_increment(session, rule.key, rule.max_requests, rule.period_seconds):
            raise RateLimited(retry_after=self.rate_limiter.retry_after(session, rule.key, rule.period_seconds))

    def _record_denial(self, session: Session, policy: ActionPolicy, exc: SecurityError) -> None:
        logger.info("Denied %s: %s", policy.name, exc.code)
        if self.audit is not None:
            self.audit.record(
                "access_denied",
                action=policy.name,
                reason=exc.code,
                user_id=session.get("user_id"),
            )
