"""
API request and response models for BankDVWA REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/, auth/ and bank/,
which own the internal domain representation. Route handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"


class UserStatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    locked = "locked"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class CsrfResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf. Send the token back in X-CSRF-Token."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)
    # Capped well below bcrypt's 72-byte limit.
    password: str = Field(min_length=1, max_length=64)


class LoginResponse(BaseModel):
    """Returned on successful login. csrf_token replaces the pre-login token."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: str
    csrf_token: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: str
    auth_time: float


# ---------------------------------------------------------------------------
# Admin -- security levels
# ---------------------------------------------------------------------------


class SecurityLevelRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    vulnerability_id: str
    level: str
    updated_by: Optional[int] = None
    updated_at: Optional[str] = None


class SecurityLevelUpdate(BaseModel):
    """Body for PUT /api/v1/admin/security-levels/{vulnerability_id}.

    level is a plain string so an unknown value reaches the store and comes
    back as the invalid_level error rather than a generic validation error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    level: str = Field(max_length=20)


class ResetResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    reset: int


# ---------------------------------------------------------------------------
# Admin -- users and audit
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str] = None
    role: str
    status: str
    first_name: str = ""
    last_name: str = ""
    created_at: Optional[str] = None
    last_login: Optional[str] = None


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    total: int
    page: int
    per_page: int


class UserPatch(BaseModel):
    """Body for PATCH /api/v1/admin/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[RoleEnum] = None
    status: Optional[UserStatusEnum] = None
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)


class AuditEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event: str
    user_id: Optional[int] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Vulnerability demos
# ---------------------------------------------------------------------------


class VulnerabilityRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    level: str


class DemoRunRequest(BaseModel):
    """Body for POST /api/v1/vulnerabilities/{vulnerability_id}.

    params are the demo's own form fields (id, name, username, password,
    password_new, password_conf, password_current).
    """

    params: dict[str, str] = Field(default_factory=dict, max_length=10)


class DemoRunResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vulnerability_id: str
    level: str
    html: str
    executed: bool
    blocked: bool
    detail: str = ""
    query: Optional[str] = None
    rows: list[dict[str, Any]] = Field(default_factory=list)
