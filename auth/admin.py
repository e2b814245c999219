"""
auth/admin.py -- Rules for admin changes to user accounts.

Shared by the admin REST endpoints and the admin web pages so both refuse the
same changes:
  - an admin may not demote, disable or delete their own account
  - the last active admin may not be demoted, disabled or deleted

Layer rule: no imports from api/, web/ or bank/.
"""

from __future__ import annotations

from typing import Optional

from auth.models import User
from auth.store import UserStore


class UserChangeRefused(Exception):
    """Raised when an admin change would lock everyone out of administration."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def check_user_change(
    store: UserStore,
    actor_user_id: int,
    target: User,
    role: Optional[str] = None,
    status: Optional[str] = None,
    delete: bool = False,
) -> None:
    """Raise UserChangeRefused if the change is not allowed. Returns None otherwise."""
    demotes = delete or (role is not None and role != "admin") or (status is not None and status != "active")
    if not demotes:
        return
    if target.id == actor_user_id:
        raise UserChangeRefused("self_modification", "You cannot demote, disable or delete your own account.")
    if target.role == "admin" and target.is_active and store.count_active_admins() <= 1:
        raise UserChangeRefused("last_admin", "Cannot remove the last active administrator.")
