"""
core/errors.py -- Typed failures raised by the auth core.

Every class carries a stable machine-readable code, an HTTP status and a
client-safe message. api/main.py maps them into the ErrorResponse envelope;
the message is the only text that ever reaches a client, so it must stay
generic. Anything diagnostic goes to the log, not into the exception message.

Downgrade rejection is deliberately absent: refusing ORGANIZER -> MEMBER is a
defined outcome of RoleService.set_role(), not an error.
"""

from __future__ import annotations


class AuthCoreError(Exception):
    """Base class for failures surfaced to the calling layer."""

    status_code: int = 400
    code: str = "bad_request"
    message: str = "The request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidRole(AuthCoreError):
    """Requested role is outside {MEMBER, ORGANIZER}. User-correctable."""

    status_code = 400
    code = "invalid_role"
    message = "Invalid role."


class Unauthorized(AuthCoreError):
    """No session claim, or the claim failed verification."""

    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidOrExpiredToken(AuthCoreError):
    # One message for every cause (mismatch, expired, consumed, unknown).
    # Distinguishing them would hand an attacker a token oracle.
    status_code = 400
    code = "invalid_or_expired_token"
    message = "Token expired or invalid."

    def __init__(self) -> None:
        super().__init__()


class WeakPassword(AuthCoreError):
    status_code = 400
    code = "weak_password"
    message = "Password too weak."


class DependencyUnavailable(AuthCoreError):
    """The identity store, mailer or identity provider failed or timed out.

    `dependency` names the collaborator for logging only; it is not part of
    the client-facing message.
    """

    status_code = 503
    code = "dependency_unavailable"
    message = "Service temporarily unavailable."

    def __init__(self, dependency: str) -> None:
        self.dependency = dependency
        super().__init__()


class PasswordTooLong(WeakPassword):
    """Password longer than bcrypt's 72-byte input limit (UTF-8)."""

    code = "password_too_long"
    message = "Password must be at most 72 bytes."


class EmailNotVerified(AuthCoreError):
    """Correct credentials for an account whose email address is not proven yet."""

    status_code = 403
    code = "email_not_verified"
    message = "Verify your email address before signing in."
