"""
security/demos.py -- Behaviour variants for the vulnerability demonstration pages.

Each demo has four variants, one per security level, registered under the key
(vulnerability_id, level). The access gate reads the configured level and
hands back the matching variant; display code only calls variant(request) and
renders the DemoResult. There is no level branching outside this module.

The low variants are vulnerable on purpose. They only ever touch demo state:
an in-memory SQLite database rebuilt per call, and a demo password kept in the
caller's own session. Real users, accounts and transactions are never reachable
from here.

Variants:
  sql_injection  account lookup by id
                 low=string concatenation, medium=quote escaping in a numeric
                 context, high=digit check before concatenation,
                 impossible=bound parameter
  xss_reflected  greeting echo
                 low=raw, medium=strip literal "<script>", high=regex strip of
                 s.c.r.i.p.t patterns, impossible=HTML escape
  csrf           demo password change
                 low=no check, medium=Referer must name this host,
                 high=CSRF token, impossible=CSRF token + current password
  brute_force    demo login (admin / password)
                 low=unlimited, medium=fixed delay after failure,
                 high=session rate limit, impossible=rate limit with a lockout
                 answer identical to bad credentials
"""

from __future__ import annotations

import html
import re
import sqlite3
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from core.models import Level
from security.rate_limit import RateLimiter
from sessions.models import Session

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass
class DemoRequest:
    """Everything a variant may look at. Built by the route handler."""

    params: Mapping[str, str]
    session: Session
    csrf_valid: bool = False
    referer: str = ""
    host: str = ""
    rate_limiter: Optional[RateLimiter] = None
    sleep: Callable[[float], None] = time.sleep

    def param(self, name: str) -> str:
        return str(self.params.get(name, "") or "")


@dataclass
class DemoResult:
    vulnerability_id: str
    level: Level
    # HTML fragment. Variants below "impossible" deliberately leave user input
    # unescaped; the template renders this with |safe.
    html: str = ""
    executed: bool = False
    blocked: bool = False
    detail: str = ""
    query: Optional[str] = None
    rows: list[dict[str, Any]] = field(default_factory=list)


DemoVariant = Callable[[DemoRequest], DemoResult]

_REGISTRY: dict[tuple[str, Level], DemoVariant] = {}

DEMO_TITLES: dict[str, str] = {
    "sql_injection": "SQL Injection",
    "xss_reflected": "Cross-Site Scripting (Reflected)",
    "csrf": "Cross-Site Request Forgery",
    "brute_force": "Brute Force Login",
}


def variant(vulnerability_id: str, level: Level) -> Callable[[DemoVariant], DemoVariant]:
    def register(fn: DemoVariant) -> DemoVariant:
        _REGISTRY[(vulnerability_id, level)] = fn
        return fn

    return register


def select_variant(vulnerability_id: str, level: Level) -> DemoVariant:
    """Return the variant for (vulnerability_id, level). KeyError if none is registered."""
    return _REGISTRY[(vulnerability_id, level)]


def has_demo(vulnerability_id: str) -> bool:
    return all((vulnerability_id, lvl) in _REGISTRY for lvl in Level)


# ---------------------------------------------------------------------------
# SQL injection
# ---------------------------------------------------------------------------

_DEMO_ACCOUNTS = [
    (1, "admin", "ACC-1000001", 25000.00),
    (2, "gordonb", "ACC-1000002", 1200.50),
    (3, "pablo", "ACC-1000003", 310.75),
    (4, "smithy", "ACC-1000004", 98000.00),
]

_SQLI_SELECT = "SELECT id, owner, account_number, balance FROM demo_accounts WHERE id = "


def _demo_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("CREATE TABLE demo_accounts (id INTEGER PRIMARY KEY, owner TEXT, account_number TEXT, balance REAL)")
    conn.execute("CREATE TABLE demo_users (id INTEGER PRIMARY KEY, username TEXT, password TEXT)")
    conn.executemany("INSERT INTO demo_accounts VALUES (?, ?, ?, ?)", _DEMO_ACCOUNTS)
    conn.executemany(
        "INSERT INTO demo_users VALUES (?, ?, ?)",
        [(1, "admin", "5f4dcc3b5aa765d61d8327deb882cf99"), (2, "gordonb", "e99a18c428cb38d5f260853678922e03")],
    )
    return conn


def _run_sql(level: Level, query: str, params: tuple = ()) -> DemoResult:
    conn = _demo_db()
    try:
        rows = [dict(r) for r in conn.execute(query, params).fetchall()]
    except sqlite3.Error as exc:
        # Low/medium surface the database error the way a careless app would.
        return DemoResult("sql_injection", level, html=f"<pre>{html.escape(str(exc))}</pre>", query=query, detail="error")
    finally:
        conn.close()
    body = "".join(
        f"<li>ID: {r.get('id')} | Owner: {r.get('owner')} | Account: {r.get('account_number')}</li>" for r in rows
    )
    return DemoResult(
        "sql_injection",
        level,
        html=f"<ul>{body}</ul>" if rows else "<p>No account found.</p>",
        executed=True,
        query=query,
        rows=rows,
    )


@variant("sql_injection", Level.LOW)
def _sqli_low(req: DemoRequest) -> DemoResult:
    return _run_sql(Level.LOW, f"{_SQLI_SELECT}'{req.param('id')}'")


@variant("sql_injection", Level.MEDIUM)
def _sqli_medium(req: DemoRequest) -> DemoResult:
    escaped = req.param("id").replace("\\", "\\\\").replace("'", "''")
    return _run_sql(Level.MEDIUM, f"{_SQLI_SELECT}{escaped}")


@variant("sql_injection", Level.HIGH)
def _sqli_high(req: DemoRequest) -> DemoResult:
    value = req.param("id").strip()
    if not value.isdigit():
        return DemoResult("sql_injection", Level.HIGH, html="<p>Account id must be numeric.</p>", blocked=True)
    return _run_sql(Level.HIGH, f"{_SQLI_SELECT}{value} LIMIT 1")


@variant("sql_injection", Level.IMPOSSIBLE)
def _sqli_impossible(req: DemoRequest) -> DemoResult:
    value = req.param("id").strip()
    if not value.isdigit():
        return DemoResult("sql_injection", Level.IMPOSSIBLE, html="<p>Account id must be numeric.</p>", blocked=True)
    result = _run_sql(Level.IMPOSSIBLE, f"{_SQLI_SELECT}?", (int(value),))
    if len(result.rows) > 1:
        return DemoResult("sql_injection", Level.IMPOSSIBLE, html="<p>No account found.</p>", blocked=True)
    return result


# ---------------------------------------------------------------------------
# Reflected XSS
# ---------------------------------------------------------------------------

_SCRIPT_PATTERN = re.compile(r"<(.*)s(.*)c(.*)r(.*)i(.*)p(.*)t", re.IGNORECASE)


def _greeting(level: Level, name: str) -> DemoResult:
    if not name:
        return DemoResult("xss_reflected", level)
    return DemoResult("xss_reflected", level, html=f"<p>Hello {name}</p>", executed=True)


@variant("xss_reflected", Level.LOW)
def _xss_low(req: DemoRequest) -> DemoResult:
    return _greeting(Level.LOW, req.param("name"))


@variant("xss_reflected", Level.MEDIUM)
def _xss_medium(req: DemoRequest) -> DemoResult:
    return _greeting(Level.MEDIUM, req.param("name").replace("<script>", ""))


@variant("xss_reflected", Level.HIGH)
def _xss_high(req: DemoRequest) -> DemoResult:
    return _greeting(Level.HIGH, _SCRIPT_PATTERN.sub("", req.param("name")))


@variant("xss_reflected", Level.IMPOSSIBLE)
def _xss_impossible(req: DemoRequest) -> DemoResult:
    return _greeting(Level.IMPOSSIBLE, html.escape(req.param("name"), quote=True))


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------

_DEMO_STATE = "demo"
_DEFAULT_DEMO_PASSWORD = "password"


def _demo_state(session: Session) -> dict:
    return session.data.setdefault(_DEMO_STATE, {})


def demo_password(session: Session) -> str:
    return _demo_state(session).get("csrf_password", _DEFAULT_DEMO_PASSWORD)


def _change_password(level: Level, req: DemoRequest) -> DemoResult:
    new, confirm = req.param("password_new"), req.param("password_conf")
    if not new or new != confirm:
        return DemoResult("csrf", level, html="<p>Passwords did not match.</p>", detail="mismatch")
    _demo_state(req.session)["csrf_password"] = new
    return DemoResult("csrf", level, html="<p>Password changed.</p>", executed=True)


def _refused(level: Level, reason: str) -> DemoResult:
    return DemoResult("csrf", level, html="<p>That request didn't look correct.</p>", blocked=True, detail=reason)


@variant("csrf", Level.LOW)
def _csrf_low(req: DemoRequest) -> DemoResult:
    return _change_password(Level.LOW, req)


@variant("csrf", Level.MEDIUM)
def _csrf_medium(req: DemoRequest) -> DemoResult:
    # Substring match on the Referer, as weak as the pages this demo imitates.
    if not req.host or req.host not in req.referer:
        return _refused(Level.MEDIUM, "referer")
    return _change_password(Level.MEDIUM, req)


@variant("csrf", Level.HIGH)
def _csrf_high(req: DemoRequest) -> DemoResult:
    if not req.csrf_valid:
        return _refused(Level.HIGH, "token")
    return _change_password(Level.HIGH, req)


@variant("csrf", Level.IMPOSSIBLE)
def _csrf_impossible(req: DemoRequest) -> DemoResult:
    if not req.csrf_valid:
        return _refused(Level.IMPOSSIBLE, "token")
    referer_host = urlparse(req.referer).netloc
    if referer_host and referer_host != req.host:
        return _refused(Level.IMPOSSIBLE, "referer")
    if req.param("password_current") != demo_password(req.session):
        return DemoResult("csrf", Level.IMPOSSIBLE, html="<p>Current password incorrect.</p>", detail="current")
    return _change_password(Level.IMPOSSIBLE, req)


# ---------------------------------------------------------------------------
# Brute force
# ---------------------------------------------------------------------------

_BRUTE_USER = "admin"
_BRUTE_PASSWORD = "password"
_BRUTE_KEY = "demo:brute_force"
_BRUTE_MAX = 3
_BRUTE_PERIOD = 60
_BRUTE_DELAY = 2.0
_BAD_LOGIN = "<p>Username and/or password incorrect.</p>"


def _credentials_ok(req: DemoRequest) -> bool:
    return req.param("username") == _BRUTE_USER and req.param("password") == _BRUTE_PASSWORD


def _welcome(level: Level) -> DemoResult:
    return DemoResult("brute_force", level, html=f"<p>Welcome to the password protected area {_BRUTE_USER}</p>", executed=True)


@variant("brute_force", Level.LOW)
def _brute_low(req: DemoRequest) -> DemoResult:
    if _credentials_ok(req):
        return _welcome(Level.LOW)
    return DemoResult("brute_force", Level.LOW, html=_BAD_LOGIN)


@variant("brute_force", Level.MEDIUM)
def _brute_medium(req: DemoRequest) -> DemoResult:
    if _credentials_ok(req):
        return _welcome(Level.MEDIUM)
    req.sleep(_BRUTE_DELAY)
    return DemoResult("brute_force", Level.MEDIUM, html=_BAD_LOGIN, detail="delayed")


def _limited(req: DemoRequest) -> bool:
    limiter = req.rate_limiter or RateLimiter()
    return limiter.check_and_increment(req.session, _BRUTE_KEY, _BRUTE_MAX, _BRUTE_PERIOD)


@variant("brute_force", Level.HIGH)
def _brute_high(req: DemoRequest) -> DemoResult:
    if _limited(req):
        return DemoResult(
            "brute_force", Level.HIGH, html="<p>Too many attempts. Try again later.</p>", blocked=True, detail="limited"
        )
    if _credentials_ok(req):
        return _welcome(Level.HIGH)
    return DemoResult("brute_force", Level.HIGH, html=_BAD_LOGIN)


@variant("brute_force", Level.IMPOSSIBLE)
def _brute_impossible(req: DemoRequest) -> DemoResult:
    if _limited(req):
        # Locked out: same answer as a wrong password, so the lockout itself
        # tells an attacker nothing.
        return DemoResult("brute_force", Level.IMPOSSIBLE, html=_BAD_LOGIN, blocked=True, detail="limited")
    if _credentials_ok(req):
        (req.rate_limiter or RateLimiter()).reset(req.session, _BRUTE_KEY)
        return _welcome(Level.IMPOSSIBLE)
    return DemoResult("brute_force", Level.IMPOSSIBLE, html=_BAD_LOGIN)
