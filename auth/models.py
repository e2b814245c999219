"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and managers do
the work.

Layer rule: no imports from api/, web/ or bank/.
"""

from __future__ import annotations

from dataclasses import dataclass

USER_STATUSES = ("active", "inactive", "locked")


@dataclass
class User:
    """A registered bank customer or administrator.

    status gates login: only "active" users can authenticate. Admins flip it
    from the user management page; the login path reports a disabled account
    with the same error as a wrong password.
    """

    username: str
    role: str  # "user", "admin"
    id: int | None = None
    email: str | None = None
    password_hash: str | None = None
    status: str = "active"
    first_name: str = ""
    last_name: str = ""
    created_at: str | None = None
    last_login: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.username


@dataclass
class AuditEvent:
    event: str
    attributes: dict
    id: int | None = None
    user_id: int | None = None
    created_at: str | None = None
