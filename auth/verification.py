"""
auth/verification.py -- Email verification: prove the address before sign-in.

A new account starts with email_verified_at unset. send() mails a
single-use link; verify() redeems it and stamps the account. Until then
login refuses the account's credentials with EmailNotVerified, checked
only after the password has matched.

Tokens reuse the reset-token codec: 256-bit plaintext in the link, SHA-256
commitment in the store, one winner under concurrent redemption.

resend() answers the same way for every address, like a reset request, and
refuses to mail again inside the cooldown window.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.models import EmailVerificationToken, User, normalize_email
from auth.store import UserStore, to_iso
from auth.tokens import hash_reset_token, issue_reset_token
from core.config import Settings
from core.errors import DependencyUnavailable, InvalidOrExpiredToken
from core.mailer import Mailer, redact_email, render_verification_email

logger = logging.getLogger("plannr.auth.verification")


class EmailVerificationService:
    def __init__(self, store: UserStore, mailer: Mailer, settings: Settings) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings

    def send(self, user: User, base_url: str, now: datetime | None = None) -> bool:
        """Issue a verification token for user and email the link.

        Returns whether the mailer accepted the message. Store errors
        propagate; background callers go through send_quietly().
        """
        now = now or datetime.now(timezone.utc)
        plaintext, commitment = issue_reset_token()
        expires_at = now + timedelta(seconds=self.settings.email_verification_ttl_seconds)
        self.store.create_verification_token(
            EmailVerificationToken(user_id=user.id, token_hash=commitment, expires_at=to_iso(expires_at))
        )
        logger.info("Verification token issued for user %s", user.id)

        verify_url = f"{base_url.rstrip('/')}/verify-email?token={plaintext}"
        subject, html_body, text_body = render_verification_email(
            app_name=self.settings.app_name,
            verify_url=verify_url,
            expires_in_minutes=max(1, self.settings.email_verification_ttl_seconds // 60),
            name=user.name,
        )
        sent = self.mailer.send(user.email, subject, html_body, text_body)
        if not sent:
            logger.warning("Verification email for user %s was not delivered", user.id)
        return sent

    def send_quietly(self, user: User, base_url: str) -> None:
        """send() for a background task: failures are logged, never raised."""
        try:
            self.send(user, base_url)
        except SQLAlchemyError:
            logger.exception("Verification token for user %s failed at the identity store", user.id)

    def resend(self, email: str, base_url: str, now: datetime | None = None) -> None:
        """Mail a fresh link to an unverified account. Returns None in every case."""
        address = normalize_email(email)
        if not address:
            return None
        now = now or datetime.now(timezone.utc)
        try:
            user = self.store.get_by_email(address)
            if user is None or not user.is_active or user.is_verified:
                logger.info("Verification resend skipped for %s", redact_email(address))
                return None
            latest = self.store.latest_verification_token(user.id)
            if latest is not None and latest.consumed_at is None and latest.created_at:
                issued = datetime.fromisoformat(latest.created_at)
                cooldown = timedelta(seconds=self.settings.verification_resend_cooldown_seconds)
                if now - issued < cooldown and datetime.fromisoformat(latest.expires_at) > now:
                    logger.info("Verification resend for user %s inside cooldown", user.id)
                    return None
            self.send(user, base_url, now)
        except SQLAlchemyError:
            logger.exception("Verification resend for %s failed at the identity store", redact_email(address))
        return None

    def verify(self, token: str | None, now: datetime | None = None) -> str:
        """Spend token and mark its owner verified. Returns the user id.

        Unknown, expired and already-used tokens all raise
        InvalidOrExpiredToken.
        """
        token = (token or "").strip()
        if not token:
            raise InvalidOrExpiredToken()
        now = now or datetime.now(timezone.utc)
        try:
            user_id = self.store.redeem_verification_token(hash_reset_token(token), now)
        except SQLAlchemyError as exc:
            logger.exception("Verification redemption failed at the identity store")
            raise DependencyUnavailable("identity_store") from exc
        if user_id is None:
            raise InvalidOrExpiredToken()
        logger.info("Email verified for user %s", user_id)
        return user_id
