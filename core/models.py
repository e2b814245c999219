"""
core/models.py -- Domain enums and dataclasses shared by every layer.

Pattern: Data class (pure data container, zero logic). Stores and managers do
the work; these types only own the shape of the domain.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Vulnerability demos shipped with the application. reset_all() and the admin
# settings page iterate over these; other identifiers may still be stored.
KNOWN_VULNERABILITIES: tuple[str, ...] = (
    "sql_injection",
    "xss_reflected",
    "csrf",
    "brute_force",
)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Level(str, Enum):
    """How defensively a vulnerability demo behaves."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    IMPOSSIBLE = "impossible"

    @classmethod
    def parse(cls, value: object) -> Optional["Level"]:
        """Return the matching Level, or None for anything unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"


class AuthState(str, Enum):
    """Verdict of AuthSessionManager.check_expiry()."""

    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class SecurityLevelSetting:
    """Persisted level for one vulnerability demo plus its audit trail.

    updated_by is None for rows created at install time by seed_defaults().
    """

    vulnerability_id: str
    level: Level
    updated_by: Optional[int] = None
    updated_at: Optional[str] = None


@dataclass
class CsrfToken:
    value: str  # hex-encoded
    expires_at: float  # epoch seconds


@dataclass
class RateLimitCounter:
    count: int
    window_start: float  # epoch seconds


@dataclass(frozen=True)
class SessionPrincipal:
    """The authenticated identity carried by a session."""

    user_id: int
    username: str
    role: Role
    auth_time: float
