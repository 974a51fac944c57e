"""
auth/reset.py -- Password reset: issue a single-use link, redeem it once.

Lifecycle of a token:

  REQUESTED -> ISSUED -> REDEEMED
  REQUESTED -> ISSUED -> EXPIRED

request() never tells the caller whether the email exists. Both branches
return None, and the API runs request() after the acknowledgement has been
sent so response time does not leak it either.

redeem() has exactly one failure for the client: InvalidOrExpiredToken.
Mismatch, expiry, reuse, and a lost race against a concurrent redemption are
indistinguishable from outside. The winning redemption is decided by the
store's conditional claim (see UserStore.redeem_reset_token).

Plaintext tokens and passwords are never logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from auth.models import PasswordResetToken, normalize_email
from auth.store import UserStore, to_iso
from auth.tokens import check_password, hash_password, hash_reset_token, issue_reset_token, verify_reset_token
from core.config import Settings
from core.errors import DependencyUnavailable, InvalidOrExpiredToken
from core.mailer import Mailer, redact_email, render_password_reset_email

logger = logging.getLogger("plannr.auth.reset")


class ResetState(str, Enum):
    REQUESTED = "requested"
    ISSUED = "issued"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class PasswordResetService:
    def __init__(self, store: UserStore, mailer: Mailer, settings: Settings) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request(self, email: str, base_url: str, now: datetime | None = None) -> None:
        """Issue and email a reset link if email belongs to a user.

        Returns None in every case. Store and mailer failures are logged and
        absorbed here: the caller's acknowledgement must look the same whether
        or not anything was sent.
        """
        address = normalize_email(email)
        if not address:
            return None
        now = now or datetime.now(timezone.utc)
        try:
            user = self.store.get_by_email(address)
            if user is None or not user.is_active:
                logger.info("Reset requested for unknown or inactive account %s", redact_email(address))
                return None
            plaintext, commitment = issue_reset_token()
            expires_at = now + timedelta(seconds=self.settings.reset_token_ttl_seconds)
            self.store.create_reset_token(
                PasswordResetToken(user_id=user.id, token_hash=commitment, expires_at=to_iso(expires_at))
            )
        except SQLAlchemyError:
            logger.exception("Reset request for %s failed at the identity store", redact_email(address))
            return None
        logger.info("Reset token %s for user %s", ResetState.ISSUED.value, user.id)

        reset_url = f"{base_url.rstrip('/')}/reset-password?token={plaintext}"
        subject, html_body, text_body = render_password_reset_email(
            app_name=self.settings.app_name,
            reset_url=reset_url,
            expires_in_minutes=max(1, self.settings.reset_token_ttl_seconds // 60),
            name=user.name,
        )
        if not self.mailer.send(user.email, subject, html_body, text_body):
            logger.warning("Reset email for user %s was not delivered", user.id)
        return None

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    def redeem(self, token: str, new_password: str, now: datetime | None = None) -> str:
        """Spend token and set new_password on its owner. Returns the user id.

        Raises WeakPassword for a password below the configured length,
        PasswordTooLong past bcrypt's 72-byte limit,
        InvalidOrExpiredToken for any token problem, DependencyUnavailable if
        the store fails.
        """
        check_password(new_password, self.settings.min_password_length)
        token = token.strip()
        if not token:
            raise InvalidOrExpiredToken()
        now = now or datetime.now(timezone.utc)

        try:
            record = self.store.get_reset_token(hash_reset_token(token))
        except SQLAlchemyError as exc:
            logger.exception("Reset token lookup failed")
            raise DependencyUnavailable("identity_store") from exc

        if record is None or not verify_reset_token(token, record.token_hash):
            raise InvalidOrExpiredToken()
        if record.is_consumed:
            raise InvalidOrExpiredToken()
        if datetime.fromisoformat(record.expires_at) <= now:
            logger.info("Reset token %s for user %s", ResetState.EXPIRED.value, record.user_id)
            raise InvalidOrExpiredToken()

        # bcrypt outside the transaction; the claim below is what decides.
        new_hash = hash_password(new_password)
        try:
            user_id = self.store.redeem_reset_token(record.token_hash, new_hash, now)
        except SQLAlchemyError as exc:
            logger.exception("Reset redemption failed at the identity store")
            raise DependencyUnavailable("identity_store") from exc
        if user_id is None:
            # Lost the race, or the record changed since the lookup.
            raise InvalidOrExpiredToken()
        logger.info("Reset token %s for user %s", ResetState.REDEEMED.value, user_id)
        return user_id
