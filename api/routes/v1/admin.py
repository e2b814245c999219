"""
api/routes/v1/admin.py -- Administration REST endpoints (admin role only).

Routes:
  GET    /api/v1/admin/security-levels                      -- every demo's level
  PUT    /api/v1/admin/security-levels/{vulnerability_id}   -- set one level
  POST   /api/v1/admin/security-levels/reset                -- reset all to the default
  GET    /api/v1/admin/users                                -- paged, searchable user list
  PATCH  /api/v1/admin/users/{user_id}                      -- role / status / profile
  DELETE /api/v1/admin/users/{user_id}                      -- delete a user
  GET    /api/v1/admin/audit                                -- recent security events

Every route goes through the access gate with the admin policy: 401 when not
logged in, 403 for non-admins, and 403 csrf_failed on writes without a valid
X-CSRF-Token header.

Guards: PATCH and DELETE refuse self-demotion and removing the last active
admin (auth/admin.py).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    AuditEventRow,
    ErrorDetail,
    MessageResponse,
    ResetResponse,
    SecurityLevelRow,
    SecurityLevelUpdate,
    UserListResponse,
    UserPatch,
    UserResponse,
)
from auth.admin import UserChangeRefused, check_user_change
from auth.dependencies import ADMIN_READ, ADMIN_WRITE, guard
from auth.models import User
from core.models import SecurityLevelSetting
from security.gate import GateDecision

router = APIRouter()


def _level_row(setting: SecurityLevelSetting) -> SecurityLevelRow:
    return SecurityLevelRow(
        vulnerability_id=setting.vulnerability_id,
        level=setting.level.value,
        updated_by=setting.updated_by,
        updated_at=setting.updated_at,
    )


def _user_row(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        status=user.status,
        first_name=user.first_name,
        last_name=user.last_name,
        created_at=user.created_at,
        last_login=user.last_login,
    )


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail=ErrorDetail(code="not_found", message=message).model_dump())


# ---------------------------------------------------------------------------
# Security levels
# ---------------------------------------------------------------------------


@router.get("/admin/security-levels", response_model=list[SecurityLevelRow])
def list_levels(request: Request, decision: GateDecision = Depends(guard(ADMIN_READ))) -> list[SecurityLevelRow]:
    return [_level_row(s) for s in request.app.state.levels.get_all_settings()]


# Registered before the {vulnerability_id} route so "reset" is not captured
# as a path parameter.
@router.post("/admin/security-levels/reset", response_model=ResetResponse)
def reset_levels(request: Request, decision: GateDecision = Depends(guard(ADMIN_WRITE))) -> ResetResponse:
    """Reset every known demo to the configured default level (all or nothing)."""
    user_id = decision.principal.user_id
    count = request.app.state.levels.reset_all(user_id)
    request.app.state.audit.record("security_levels_reset", user_id=user_id, count=count)
    return ResetResponse(reset=count)


@router.put("/admin/security-levels/{vulnerability_id}", response_model=SecurityLevelRow)
def set_level(
    vulnerability_id: str,
    body: SecurityLevelUpdate,
    request: Request,
    decision: GateDecision = Depends(guard(ADMIN_WRITE)),
) -> SecurityLevelRow:
    """Set one level. Unknown level values come back as 422 invalid_level."""
    user_id = decision.principal.user_id
    setting = request.app.state.levels.set_level(vulnerability_id, body.level, user_id)
    request.app.state.audit.record(
        "security_level_changed",
        user_id=user_id,
        vulnerability_id=vulnerability_id,
        level=setting.level.value,
    )
    return _level_row(setting)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=UserListResponse)
def list_users(
    request: Request,
    search: str = Query(default="", max_length=100),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=10, ge=1, le=100),
    decision: GateDecision = Depends(guard(ADMIN_READ)),
) -> UserListResponse:
    users, total = request.app.state.user_store.list_users(search=search, page=page, per_page=per_page)
    return UserListResponse(users=[_user_row(u) for u in users], total=total, page=page, per_page=per_page)


@router.patch("/admin/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: int,
    body: UserPatch,
    request: Request,
    decision: GateDecision = Depends(guard(ADMIN_WRITE)),
) -> UserResponse:
    store = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None:
        raise _not_found("User not found.")

    fields = body.model_dump(exclude_none=True, mode="json")
    try:
        check_user_change(
            store,
            decision.principal.user_id,
            target,
            role=fields.get("role"),
            status=fields.get("status"),
        )
    except UserChangeRefused as exc:
        raise HTTPException(status_code=409, detail=ErrorDetail(code=exc.code, message=exc.message).model_dump())

    if fields:
        try:
            store.update_user(user_id, **fields)
        except IntegrityError:
            raise HTTPException(
                status_code=409,
                detail=ErrorDetail(code="email_taken", message="That email address is already in use.").model_dump(),
            )
        request.app.state.audit.record(
            "user_updated", user_id=decision.principal.user_id, target_user_id=user_id, fields=sorted(fields)
        )
    return _user_row(store.get_by_id(user_id))


@router.delete("/admin/users/{user_id}", response_model=MessageResponse)
def delete_user(
    user_id: int,
    request: Request,
    decision: GateDecision = Depends(guard(ADMIN_WRITE)),
) -> MessageResponse:
    store = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None:
        raise _not_found("User not found.")
    try:
        check_user_change(store, decision.principal.user_id, target, delete=True)
    except UserChangeRefused as exc:
        raise HTTPException(status_code=409, detail=ErrorDetail(code=exc.code, message=exc.message).model_dump())
    store.delete_user(user_id)
    request.app.state.audit.record(
        "user_deleted", user_id=decision.principal.user_id, target_user_id=user_id, username=target.username
    )
    return MessageResponse(message=f"User {target.username} deleted.")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@router.get("/admin/audit", response_model=list[AuditEventRow])
def audit_log(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    decision: GateDecision = Depends(guard(ADMIN_READ)),
) -> list[AuditEventRow]:
    return [
        AuditEventRow(
            id=e.id,
            event=e.event,
            user_id=e.user_id,
            attributes=e.attributes,
            created_at=e.created_at,
        )
        for e in request.app.state.audit.recent(limit)
    ]
