"""
core/errors.py -- Exception taxonomy for the security core.

Every error here is recoverable at the request level. The exception handlers
in api/main.py turn each one into a specific outcome (JSON error envelope for
/api paths, redirect + flash message for web pages) using the code and
status_code attributes below. None of them is fatal to the process.
"""

from __future__ import annotations


class SecurityError(Exception):
    """Base class. code is the stable machine-readable identifier."""

    code = "security_error"
    status_code = 400
    message = "Request rejected."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidCredentials(SecurityError):
    # Same error for unknown user, wrong password and disabled account.
    code = "bad_credentials"
    status_code = 401
    message = "Invalid username or password."


class AuthenticationRequired(SecurityError):
    code = "unauthorized"
    status_code = 401
    message = "Authentication required."


class SessionExpired(AuthenticationRequired):
    code = "session_expired"
    message = "Your session has expired. Please log in again."


class PermissionDenied(SecurityError):
    code = "forbidden"
    status_code = 403
    message = "You do not have permission to perform this action."


class CsrfMismatch(SecurityError):
    # Missing, expired and mismatched tokens are indistinguishable to the caller.
    code = "csrf_failed"
    status_code = 403
    message = "Invalid or expired form token. Please reload the page and try again."


class RateLimited(SecurityError):
    code = "rate_limited"
    status_code = 429
    message = "Too many attempts. Please wait before trying again."

    def __init__(self, retry_after: int = 0, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))


class InvalidLevel(SecurityError, ValueError):
    code = "invalid_level"
    status_code = 422
    message = "Security level must be one of: low, medium, high, impossible."


class StoreWriteFailure(SecurityError):
    code = "store_write_failed"
    status_code = 500
    message = "The change could not be saved. No settings were modified."
