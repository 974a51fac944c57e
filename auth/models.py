"""
auth/models.py -- Domain types for identities, roles, sessions and reset tokens.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape.

Role is a closed two-variant type. Every boundary that turns outside input
into a Role (request bodies, cookies, query params, DB rows, JWT claims) goes
through parse_role() or normalize_role(), so no other value can circulate.

Layer rule: may import from core/ only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from core.errors import InvalidRole


class Role(str, Enum):
    MEMBER = "MEMBER"
    ORGANIZER = "ORGANIZER"


def normalize_role(value: object) -> Role | None:
    """Lenient parse: return the Role for value, or None if it is not one.

    Used for low-trust hints such as the pre-login role preference cookie,
    where an unusable value is simply ignored.
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().upper())
    except ValueError:
        return None


def parse_role(value: object) -> Role:
    """Strict parse: return the Role for value or raise InvalidRole."""
    role = normalize_role(value)
    if role is None:
        raise InvalidRole()
    return role


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    """An identity known to Plannr.

    role is None until the first assignment (e.g. an account created before
    the user picked MEMBER or ORGANIZER). After that it only moves upward,
    see auth/roles.py.
    """

    email: str
    id: str | None = None
    role: Role | None = None
    hashed_password: str | None = None
    name: str | None = None
    created_at: str | None = None
    is_active: bool = True
    # ISO 8601 UTC time the address was proven, None until then.
    email_verified_at: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class PasswordResetToken:
    """Persisted half of a password-reset token.

    Only token_hash (the commitment) is stored. The plaintext goes out in the
    reset email and is never written anywhere.
    """

    user_id: str
    token_hash: str
    expires_at: str  # ISO 8601, UTC
    consumed_at: str | None = None
    id: int | None = None
    created_at: str | None = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class EmailVerificationToken:
    """Persisted half of an email-verification token. Same commitment scheme as resets."""

    user_id: str
    token_hash: str
    expires_at: str  # ISO 8601, UTC
    consumed_at: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionClaim:
    """Verified identity + role payload carried by a session token."""

    user_id: str
    role: Role | None
    issued_at: int  # epoch seconds
    expires_at: int  # epoch seconds

    @property
    def is_organizer(self) -> bool:
        return self.role is Role.ORGANIZER
