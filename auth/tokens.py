"""
auth/tokens.py -- Session JWTs, single-use reset tokens, and password hashing.

Security design decisions:
  Sessions: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (identity id), role, iat and exp. The signature covers every claim,
       so the role cannot be edited without invalidating the token.
       verify_session_token() checks the signature first, then expiry against
       an explicit clock, and returns None on any failure -- callers treat
       that as "no session" and never learn why.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. Only
       SHA-256(plaintext) is stored (the commitment). SHA-256 is deterministic,
       so the commitment doubles as the lookup key; verification recomputes it
       and compares with hmac.compare_digest. bcrypt's slowness buys nothing
       for high-entropy secrets.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].
       bcrypt takes at most 72 bytes of input; longer passwords are refused
       by check_password() and hash_password(), never truncated.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Role, SessionClaim, normalize_email, normalize_role
from core.config import get_settings
from core.errors import PasswordTooLong, WeakPassword

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("plannr.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


# bcrypt refuses input past 72 bytes (bcrypt >= 5 raises ValueError).
_BCRYPT_MAX_BYTES = 72


def check_password(plain: str, min_length: int | None = None) -> None:
    """Raise unless plain is acceptable as a new password.

    WeakPassword below min_length characters (default from Settings),
    PasswordTooLong past bcrypt's 72-byte UTF-8 limit.
    """
    if len(plain) < (min_length if min_length is not None else _settings.min_password_length):
        raise WeakPassword()
    if len(plain.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise PasswordTooLong()


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises PasswordTooLong past 72 UTF-8 bytes. New passwords should go
    through check_password() first so the length rule is reported up front.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise PasswordTooLong()
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Input past 72 bytes can never have been hashed here, so it is a mismatch.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("plannr_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization [C1].

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(normalize_email(email))
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Single-use token codec (password reset)
# ---------------------------------------------------------------------------


def hash_reset_token(plaintext: str) -> str:
    """Return the commitment for a reset token: SHA-256 hex digest."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def issue_reset_token() -> tuple[str, str]:
    """Return (plaintext, commitment) for a fresh reset token.

    The plaintext leaves the process exactly once, inside the reset link.
    Only the commitment may be persisted.
    """
    plaintext = secrets.token_hex(32)
    return plaintext, hash_reset_token(plaintext)


def verify_reset_token(candidate: str, commitment: str) -> bool:
    """Constant-time check that candidate hashes to commitment. Never raises."""
    return hmac.compare_digest(hash_reset_token(candidate), commitment)


# ---------------------------------------------------------------------------
# Session tokens (JWT encode / decode)
# ---------------------------------------------------------------------------


def _now_epoch(now: datetime | None) -> int:
    return int((now or datetime.now(timezone.utc)).timestamp())


def mint_session_token(
    user_id: str,
    role: Role | None,
    now: datetime | None = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed session token for user_id with the given role.

    Args:
        user_id:        Opaque identity id, stored as the sub claim.
        role:           Effective role at mint time (None = not chosen yet).
        now:            Issue time; defaults to the current UTC time.
        expire_seconds: Validity window. If 0 (default), uses
                        Settings.session_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    issued_at = _now_epoch(now)
    payload = {
        "sub": user_id,
        "role": role.value if role is not None else None,
        "iat": issued_at,
        "exp": issued_at + duration,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_session_token(token: str, now: datetime | None = None) -> SessionClaim | None:
    """Verify a session token and return its claim, or None on any failure.

    Signature integrity is checked first (jose), expiry second. Expiry is
    evaluated against `now` rather than jose's internal clock so verification
    is a pure function of (token, time).
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None

    user_id = payload.get("sub")
    issued_at = payload.get("iat")
    expires_at = payload.get("exp")
    if not isinstance(user_id, str) or not user_id:
        return None
    if not isinstance(issued_at, int) or not isinstance(expires_at, int):
        return None
    if expires_at <= _now_epoch(now):
        return None

    raw_role = payload.get("role")
    role = normalize_role(raw_role)
    if raw_role is not None and role is None:
        # Signed with our key but carrying a role outside the closed set.
        return None
    return SessionClaim(user_id=user_id, role=role, issued_at=issued_at, expires_at=expires_at)


def extract_session_token(cookies: Mapping[str, str], headers: Mapping[str, str]) -> str | None:
    """Return the bearer session token from the cookie or Authorization header.

    Cookie first (browser sessions), then `Authorization: Bearer <token>`.
    """
    token = cookies.get(_settings.session_cookie_name)
    if token:
        return token
    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None
    return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token validity window so both expire together.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.session_expire_seconds,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        _settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )
