"""
web/routes.py -- Jinja2 template routes for the BankDVWA web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same stores, same access gate) but answer with pages, redirects and
flash messages instead of JSON.

Every protected handler declares an ActionPolicy and runs it through the gate
before doing anything else. Security errors raised by the gate are turned
into redirects or error pages by handle_security_error(), which asgi.py
installs as app.state.web_error_handler.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /transactions/new must be registered before anything under
    /transactions/{...} would capture "new".
  - POST /admin/settings/reset before any /admin/settings/{...} route.

Routes:
  GET  /login, POST /login          -- session login
  POST /logout                      -- end the login, keep the session
  GET  /register, POST /register    -- self-service customer sign-up
  GET  /setup, POST /setup          -- first-run wizard (first admin + sample data)
  GET  /                            -- customer dashboard
  GET  /transactions                -- customer history
  GET  /transactions/new, POST      -- deposit / withdraw / transfer
  GET  /admin                       -- admin dashboard
  GET  /admin/users                 -- user list; POST /admin/users/{id}[/delete]
  GET  /admin/transactions          -- searchable transaction list
  GET  /admin/settings, POST        -- security levels; POST /admin/settings/reset
  GET  /vulnerabilities             -- demo index
  GET  /vulnerabilities/{id}, POST  -- run one demo
"""

import logging
import math
import re
from decimal import Decimal
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from auth.admin import UserChangeRefused, check_user_change
from auth.dependencies import (
    ADMIN_READ,
    ADMIN_WRITE,
    LOGGED_IN_READ,
    LOGGED_IN_WRITE,
    check_policy,
    get_session,
    try_get_principal,
)
from auth.models import User
from auth.passwords import hash_password
from auth.session_manager import LOGIN_RATE_KEY
from bank.models import Account
from bank.sample_data import seed_sample_data
from bank.store import TRANSACTION_FILTERS
from core.config import get_settings
from core.errors import (
    AuthenticationRequired,
    InvalidCredentials,
    RateLimited,
    SecurityError,
    SessionExpired,
)
from core.models import Level
from security.csrf import CSRF_FIELD
from security.demos import DEMO_TITLES, DemoRequest, has_demo
from security.gate import ActionPolicy, GateDecision, RateLimitRule
from sessions.models import pop_flash, set_flash

logger = logging.getLogger("bankdvwa.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

LOGIN_POLICY = ActionPolicy(name="login", login_required=False, rate_limit=RateLimitRule(LOGIN_RATE_KEY))
LOGOUT_POLICY = ActionPolicy(name="logout", login_required=False)
REGISTER_POLICY = ActionPolicy(
    name="register", login_required=False, rate_limit=RateLimitRule("register", max_requests=5, period_seconds=3600)
)
SETUP_POLICY = ActionPolicy(name="setup", login_required=False)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,50}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MIN_PASSWORD = 8

# ---------------------------------------------------------------------------
# Jinja filters
# ---------------------------------------------------------------------------

_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}


def format_currency(value, currency: Optional[str] = None) -> str:
    """Render an amount as e.g. $1,234.50 or -$20.00."""
    code = currency or get_settings().currency
    symbol = _CURRENCY_SYMBOLS.get(code, f"{code} ")
    amount = Decimal(str(value or 0))
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


def format_datetime(value: Optional[str]) -> str:
    """Trim an ISO timestamp to minutes for tables."""
    if not value:
        return "—"
    return value.replace("T", " ")[:16]


templates.env.filters["currency"] = format_currency
templates.env.filters["datetime"] = format_datetime

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones (//host) so a crafted
    login link cannot bounce the user off-site.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


def _check(request: Request, policy: ActionPolicy, csrf_token: Optional[str] = None) -> GateDecision:
    return request.app.state.gate.check(get_session(request), policy, request.method, csrf_token)


def _render(request: Request, name: str, context: Optional[dict] = None, status_code: int = 200) -> HTMLResponse:
    """Render a page with the context every layout needs.

    Adds the current principal, the session CSRF token for forms and any
    pending flash message (consumed here).
    """
    session = get_session(request)
    ctx = {
        "principal": try_get_principal(request),
        "csrf_token": request.app.state.csrf.get_or_issue(session),
        "csrf_field": CSRF_FIELD,
        "flash": pop_flash(session),
        "app_name": "BankDVWA",
    }
    ctx.update(context or {})
    return templates.TemplateResponse(request, name, ctx, status_code=status_code)


def _pagination(total: int, page: int, per_page: int) -> dict:
    pages = max(1, math.ceil(total / per_page)) if per_page else 1
    page = min(max(1, page), pages)
    return {"page": page, "pages": pages, "total": total, "per_page": per_page}


def handle_security_error(request: Request, exc: SecurityError):
    """Web answer for a gate denial: redirect to login, or an error page."""
    session = get_session(request)
    next_path = quote(request.url.path, safe="/")
    if isinstance(exc, SessionExpired):
        set_flash(session, "warning", "Your session has expired. Please log in again.")
        return _redirect(f"/login?next={next_path}&expired=1")
    if isinstance(exc, AuthenticationRequired):
        set_flash(session, "info", "Please log in to continue.")
        return _redirect(f"/login?next={next_path}")
    if isinstance(exc, InvalidCredentials):
        set_flash(session, "error", exc.message)
        return _redirect("/login")
    response = _render(
        request,
        "error.html",
        {"status_code": exc.status_code, "code": exc.code, "message": exc.message},
        status_code=exc.status_code,
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


def handle_http_error(request: Request, exc: HTTPException) -> HTMLResponse:
    """Web answer for HTTPException (unknown demo, setup already done): the error page."""
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", f"http_{exc.status_code}")
        message = exc.detail.get("message", "")
    else:
        code, message = f"http_{exc.status_code}", str(exc.detail)
    response = _render(
        request,
        "error.html",
        {"status_code": exc.status_code, "code": code, "message": message},
        status_code=exc.status_code,
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, next: str = "/") -> HTMLResponse:
    if try_get_principal(request) is not None:
        return _redirect("/")
    return _render(request, "login.html", {"next": _safe_next(next)})


@limiter.limit(lambda: get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    username: str = Form(..., max_length=50),
    password: str = Form(..., max_length=64),
    csrf_token: str = Form(""),
    next: str = Form("/"),
) -> RedirectResponse:
    """Handle the login form. Any credential failure gives one generic message."""
    _check(request, LOGIN_POLICY, csrf_token)
    session = get_session(request)
    try:
        principal = request.app.state.auth.login(session, username.strip(), password)
    except InvalidCredentials as exc:
        set_flash(session, "error", exc.message)
        return _redirect(f"/login?next={quote(_safe_next(next), safe='/')}")
    set_flash(session, "success", f"Welcome back, {principal.username}.")
    resp = _redirect(_safe_next(next))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout")
def logout(request: Request, csrf_token: str = Form("")) -> RedirectResponse:
    _check(request, LOGOUT_POLICY, csrf_token)
    session = get_session(request)
    request.app.state.auth.logout(session)
    set_flash(session, "success", "You have been logged out.")
    return _redirect("/login")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _validate_new_user(store, username: str, email: str, password: str, confirm_password: str) -> Optional[str]:
    """Return an error message for the sign-up and setup forms, or None."""
    if not _USERNAME_RE.match(username):
        return "Username must be 3-50 characters: letters, digits and underscores."
    if email and not _EMAIL_RE.match(email):
        return "Enter a valid email address."
    if len(password) < _MIN_PASSWORD:
        return f"Password must be at least {_MIN_PASSWORD} characters."
    if password != confirm_password:
        return "Passwords do not match."
    if store.username_exists(username):
        return "That username is already taken."
    if email and store.email_exists(email):
        return "That email address is already registered."
    return None


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    if try_get_principal(request) is not None:
        return _redirect("/")
    return _render(request, "register.html", {"form": {}})


@router.post("/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    username: str = Form(..., max_length=50),
    email: str = Form("", max_length=255),
    first_name: str = Form("", max_length=50),
    last_name: str = Form("", max_length=50),
    password: str = Form(..., max_length=64),
    confirm_password: str = Form(..., max_length=64),
    csrf_token: str = Form(""),
) -> HTMLResponse:
    _check(request, REGISTER_POLICY, csrf_token)
    store = request.app.state.user_store
    username, email = username.strip(), email.strip()
    form = {"username": username, "email": email, "first_name": first_name, "last_name": last_name}

    error = _validate_new_user(store, username, email, password, confirm_password)
    if error:
        return _render(request, "register.html", {"form": form, "error_msg": error}, status_code=400)
    try:
        user_id = store.create_user(
            User(
                username=username,
                role="user",
                email=email or None,
                password_hash=hash_password(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
            )
        )
    except IntegrityError:
        return _render(
            request, "register.html", {"form": form, "error_msg": "That username is already taken."}, status_code=400
        )
    request.app.state.bank.create_account(Account(user_id=user_id, username=username, account_number=""))
    request.app.state.audit.record("user_registered", user_id=user_id, username=username)
    set_flash(get_session(request), "success", "Account created. You can now log in.")
    return _redirect("/login")


# ---------------------------------------------------------------------------
# Setup wizard
# ---------------------------------------------------------------------------


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-run setup wizard. 404 once an account exists."""
    if not getattr(request.app.state, "setup_required", True):
        raise HTTPException(status_code=404)
    return _render(request, "setup.html", {"form": {}, "levels": list(Level)})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    username: str = Form(..., max_length=50),
    email: str = Form("", max_length=255),
    password: str = Form(..., max_length=64),
    confirm_password: str = Form(..., max_length=64),
    include_sample_data: str = Form("no"),
    csrf_token: str = Form(""),
) -> HTMLResponse:
    """Create the first admin account and optionally load the sample customers.

    Re-checks has_users() at the DB level: two concurrent requests could both
    pass the setup_required flag before either creates a user.
    """
    _check(request, SETUP_POLICY, csrf_token)
    store = request.app.state.user_store
    session = get_session(request)
    if store.has_users():
        set_flash(session, "info", "Setup already complete. Please log in.")
        return _redirect("/login")

    username, email = username.strip(), email.strip()
    error = _validate_new_user(store, username, email, password, confirm_password)
    if error:
        return _render(
            request,
            "setup.html",
            {"form": {"username": username, "email": email}, "error_msg": error, "levels": list(Level)},
            status_code=400,
        )
    try:
        user_id = store.create_user(
            User(username=username, role="admin", email=email or None, password_hash=hash_password(password))
        )
    except IntegrityError:
        set_flash(session, "info", "Setup already complete. Please log in.")
        return _redirect("/login")
    request.app.state.setup_required = False
    request.app.state.levels.seed_defaults()
    if include_sample_data == "yes":
        seed_sample_data(store, request.app.state.bank)
    request.app.state.audit.record("setup_completed", user_id=user_id, sample_data=include_sample_data == "yes")
    logger.info("Setup complete: admin %r created", username)
    set_flash(session, "success", "Setup complete. Log in with your new admin account.")
    return _redirect("/login")


# ---------------------------------------------------------------------------
# Customer pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def dashboard(request: Request) -> HTMLResponse:
    decision = _check(request, LOGGED_IN_READ)
    bank = request.app.state.bank
    accounts = bank.list_accounts(decision.principal.user_id)
    return _render(
        request,
        "dashboard.html",
        {
            "accounts": accounts,
            "total_balance": sum((a.balance for a in accounts), Decimal("0")),
            "recent": bank.history(decision.principal.user_id, limit=5),
        },
    )


@router.get("/transactions", response_class=HTMLResponse)
def transactions(request: Request) -> HTMLResponse:
    decision = _check(request, LOGGED_IN_READ)
    history = request.app.state.bank.history(decision.principal.user_id, limit=100)
    return _render(request, "transactions.html", {"transactions": history})


@router.get("/transactions/new", response_class=HTMLResponse)
def transaction_form(request: Request) -> HTMLResponse:
    decision = _check(request, LOGGED_IN_READ)
    accounts = request.app.state.bank.list_accounts(decision.principal.user_id)
    return _render(request, "transaction_new.html", {"accounts": accounts})


@router.post("/transactions/new", response_class=HTMLResponse)
def transaction_post(
    request: Request,
    transaction_type: str = Form(...),
    account_id: int = Form(...),
    amount: str = Form(..., max_length=20),
    to_account: str = Form("", max_length=20),
    description: str = Form("", max_length=255),
    csrf_token: str = Form(""),
) -> RedirectResponse:
    decision = _check(request, LOGGED_IN_WRITE, csrf_token)
    session = get_session(request)
    bank = request.app.state.bank
    user_id = decision.principal.user_id

    account = bank.get_account(account_id)
    if account is None or account.user_id != user_id:
        set_flash(session, "error", "Account not found.")
        return _redirect("/transactions/new")

    try:
        if transaction_type == "deposit":
            bank.deposit(account.id, amount, description or "Deposit")
        elif transaction_type == "withdrawal":
            bank.withdraw(account.id, amount, description or "Withdrawal")
        elif transaction_type == "transfer":
            target = bank.get_account_by_number(to_account.strip())
            if target is None:
                raise ValueError("Destination account not found.")
            bank.transfer(account.id, target.id, amount, description)
        else:
            raise ValueError("Unknown transaction type.")
    except ValueError as exc:
        set_flash(session, "error", str(exc))
        return _redirect("/transactions/new")

    request.app.state.audit.record(
        "transaction_created", user_id=user_id, account_id=account.id, transaction_type=transaction_type
    )
    set_flash(session, "success", "Transaction completed.")
    return _redirect("/transactions")


# ---------------------------------------------------------------------------
# Admin pages
# ---------------------------------------------------------------------------


@router.get("/admin", response_class=HTMLResponse)
def admin_dashboard(request: Request) -> HTMLResponse:
    _check(request, ADMIN_READ)
    state = request.app.state
    return _render(
        request,
        "admin/dashboard.html",
        {
            "user_count": state.user_store.count(),
            "account_count": state.bank.count_accounts(),
            "transaction_count": state.bank.count_transactions(),
            "recent_transactions": state.bank.recent_transactions(10),
            "new_users": state.user_store.newest_users(5),
            "levels": state.levels.get_all_settings(),
            "titles": DEMO_TITLES,
            "audit_events": state.audit.recent(10),
        },
    )


@router.get("/admin/users", response_class=HTMLResponse)
def admin_users(request: Request, search: str = "", page: int = 1) -> HTMLResponse:
    decision = _check(request, ADMIN_READ)
    per_page = request.app.state.settings.items_per_page
    users, total = request.app.state.user_store.list_users(search=search[:100], page=page, per_page=per_page)
    return _render(
        request,
        "admin/users.html",
        {
            "users": users,
            "search": search,
            "pagination": _pagination(total, page, per_page),
            "current_user_id": decision.principal.user_id,
        },
    )


@router.post("/admin/users/{user_id}/delete")
def admin_user_delete(request: Request, user_id: int, csrf_token: str = Form("")) -> RedirectResponse:
    decision = _check(request, ADMIN_WRITE, csrf_token)
    session = get_session(request)
    store = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None:
        set_flash(session, "error", "User not found.")
        return _redirect("/admin/users")
    try:
        check_user_change(store, decision.principal.user_id, target, delete=True)
    except UserChangeRefused as exc:
        set_flash(session, "error", exc.message)
        return _redirect("/admin/users")
    store.delete_user(user_id)
    request.app.state.audit.record(
        "user_deleted", user_id=decision.principal.user_id, target_user_id=user_id, username=target.username
    )
    set_flash(session, "success", f"User {target.username} deleted.")
    return _redirect("/admin/users")


@router.post("/admin/users/{user_id}")
def admin_user_update(
    request: Request,
    user_id: int,
    role: str = Form(...),
    status: str = Form(...),
    csrf_token: str = Form(""),
) -> RedirectResponse:
    decision = _check(request, ADMIN_WRITE, csrf_token)
    session = get_session(request)
    store = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None or role not in ("user", "admin") or status not in ("active", "inactive", "locked"):
        set_flash(session, "error", "Invalid user update.")
        return _redirect("/admin/users")
    try:
        check_user_change(store, decision.principal.user_id, target, role=role, status=status)
    except UserChangeRefused as exc:
        set_flash(session, "error", exc.message)
        return _redirect("/admin/users")
    store.update_user(user_id, role=role, status=status)
    request.app.state.audit.record(
        "user_updated", user_id=decision.principal.user_id, target_user_id=user_id, role=role, status=status
    )
    set_flash(session, "success", f"User {target.username} updated.")
    return _redirect("/admin/users")


@router.get("/admin/transactions", response_class=HTMLResponse)
def admin_transactions(request: Request, search: str = "", filter: str = "", page: int = 1) -> HTMLResponse:
    _check(request, ADMIN_READ)
    per_page = request.app.state.settings.items_per_page
    rows, total = request.app.state.bank.list_transactions(
        search=search[:100], filter=filter, page=page, per_page=per_page
    )
    return _render(
        request,
        "admin/transactions.html",
        {
            "transactions": rows,
            "search": search,
            "filter": filter if filter in TRANSACTION_FILTERS else "",
            "filters": TRANSACTION_FILTERS,
            "pagination": _pagination(total, page, per_page),
        },
    )


@router.get("/admin/settings", response_class=HTMLResponse)
def admin_settings(request: Request) -> HTMLResponse:
    _check(request, ADMIN_READ)
    return _render(
        request,
        "admin/settings.html",
        {
            "settings_rows": request.app.state.levels.get_all_settings(),
            "titles": DEMO_TITLES,
            "levels": list(Level),
            "default_level": request.app.state.levels.default_level,
        },
    )


@router.post("/admin/settings/reset")
async def admin_settings_reset(request: Request) -> RedirectResponse:
    decision = await check_policy(request, ADMIN_WRITE)
    user_id = decision.principal.user_id
    count = request.app.state.levels.reset_all(user_id)
    request.app.state.audit.record("security_levels_reset", user_id=user_id, count=count)
    set_flash(get_session(request), "success", f"{count} security levels reset to the default.")
    return _redirect("/admin/settings")


@router.post("/admin/settings")
async def admin_settings_post(request: Request) -> RedirectResponse:
    """Apply every level_<vulnerability_id> field in one transaction.

    An unknown level value raises InvalidLevel, which the error handler renders
    as a 422 page; no level is changed in that case.
    """
    decision = await check_policy(request, ADMIN_WRITE)
    form = await request.form()
    levels_store = request.app.state.levels
    known = set(levels_store.get_all_levels())
    updates = {
        key[len("level_") :]: str(value)
        for key, value in form.items()
        if key.startswith("level_") and key[len("level_") :] in known
    }
    levels_store.set_levels(updates, decision.principal.user_id)
    request.app.state.audit.record("security_levels_updated", user_id=decision.principal.user_id, levels=updates)
    set_flash(get_session(request), "success", "Security levels updated.")
    return _redirect("/admin/settings")


# ---------------------------------------------------------------------------
# Vulnerability demos
# ---------------------------------------------------------------------------


@router.get("/vulnerabilities", response_class=HTMLResponse)
def vulnerabilities(request: Request) -> HTMLResponse:
    _check(request, LOGGED_IN_READ)
    demos = [
        {"id": s.vulnerability_id, "title": DEMO_TITLES.get(s.vulnerability_id, s.vulnerability_id), "level": s.level}
        for s in request.app.state.levels.get_all_settings()
        if has_demo(s.vulnerability_id)
    ]
    return _render(request, "vulnerabilities/index.html", {"demos": demos})


def _demo_policy(vulnerability_id: str) -> ActionPolicy:
    # CSRF is left to the demo itself: the csrf variants decide whether a
    # missing token matters.
    return ActionPolicy(name=f"demo:{vulnerability_id}", csrf=False, vulnerability=vulnerability_id)


async def _run_demo(request: Request, vulnerability_id: str, params: dict, csrf_valid: bool):
    if not has_demo(vulnerability_id):
        await check_policy(request, LOGGED_IN_READ)
        raise HTTPException(status_code=404)
    decision = await check_policy(request, _demo_policy(vulnerability_id))
    result = None
    if params:
        demo_request = DemoRequest(
            params=params,
            session=get_session(request),
            csrf_valid=csrf_valid,
            referer=request.headers.get("referer", ""),
            host=request.headers.get("host", ""),
            rate_limiter=request.app.state.rate_limiter,
        )
        result = await run_in_threadpool(decision.variant, demo_request)
    return _render(
        request,
        "vulnerabilities/demo.html",
        {
            "vulnerability_id": vulnerability_id,
            "title": DEMO_TITLES.get(vulnerability_id, vulnerability_id),
            "level": decision.level,
            "result": result,
            "params": params,
        },
    )


@router.get("/vulnerabilities/{vulnerability_id}", response_class=HTMLResponse)
async def vulnerability_demo(request: Request, vulnerability_id: str) -> HTMLResponse:
    """Demo page. Submitting the GET form (Submit=1) runs the variant."""
    params = {k: v for k, v in request.query_params.items() if k != "Submit"}
    run = "Submit" in request.query_params
    return await _run_demo(request, vulnerability_id, params if run else {}, csrf_valid=False)


@router.post("/vulnerabilities/{vulnerability_id}", response_class=HTMLResponse)
async def vulnerability_demo_post(request: Request, vulnerability_id: str) -> HTMLResponse:
    form = await request.form()
    supplied = form.get(CSRF_FIELD)
    session = get_session(request)
    csrf_valid = isinstance(supplied, str) and request.app.state.csrf.verify(session, supplied)
    params = {k: str(v) for k, v in form.items() if k not in (CSRF_FIELD, "Submit")}
    # Keep the form non-empty so the variant always runs on POST.
    params.setdefault("_submitted", "1")
    return await _run_demo(request, vulnerability_id, params, csrf_valid=csrf_valid)
