"""
core/mailer.py -- Outbound email capability.

The auth core only needs one verb: send(to, subject, html_body, text_body).
Which implementation backs it is decided once at startup by build_mailer():

  SmtpMailer     -- real delivery over SMTP (STARTTLS or implicit TLS).
  LoggingMailer  -- no-op used when SMTP is not configured. Logs a redacted
                    line and reports the message as not sent.

Call sites receive a Mailer and never check whether email is configured.
Neither implementation raises: a failed send is logged and reported as
False, and the requesting flow carries on.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("plannr.mailer")


def redact_email(email: str) -> str:
    """Redact an email address for logging: 'ada@example.com' -> 'ad***@example.com'."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer(Protocol):
    def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool: ...


class LoggingMailer:
    """Development stand-in: records that an email would have been sent."""

    def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        logger.info("SMTP not configured; skipped email to %s (%s)", redact_email(to), subject)
        return False


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        starttls: bool = True,
        from_email: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.starttls = starttls
        self.from_email = from_email or user
        self.timeout = timeout

    def _build(self, to: str, subject: str, html_body: str, text_body: str | None) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to
        msg.set_content(text_body or "")
        msg.add_alternative(html_body, subtype="html")
        return msg

    def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        """Send one message. Returns True on success, False on any failure."""
        msg = self._build(to, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            if self.starttls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers refused connections and socket timeouts.
            logger.error(
                "Email to %s failed via %s:%d (%s)",
                redact_email(to),
                self.host,
                self.port,
                type(exc).__name__,
            )
            return False
        logger.info("Email sent to %s (%s)", redact_email(to), subject)
        return True


def build_mailer(settings: Settings) -> Mailer:
    """Pick the mailer implementation for this process."""
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- outbound email is disabled (LoggingMailer)")
        return LoggingMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        starttls=settings.smtp_starttls,
        from_email=settings.email_from,
        timeout=settings.mail_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def render_password_reset_email(
    app_name: str,
    reset_url: str,
    expires_in_minutes: int,
    name: str | None = None,
) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for a password reset email."""
    who = name.strip() if name and name.strip() else "there"
    subject = f"Reset your password for {app_name}"
    esc = html.escape
    html_body = f"""
<div style="font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto;line-height:1.5;color:#111;">
  <h2 style="margin:0 0 12px 0;">Reset your password</h2>
  <div style="font-size:14px;color:#111;">
    <p>Hi {esc(who)},</p>
    <p>We received a request to reset your password.</p>
    <p>This link expires in <b>{expires_in_minutes} minutes</b>.</p>
    <p style="margin-top:14px;">
      <a href="{esc(reset_url)}"
         style="display:inline-block;padding:10px 14px;border-radius:12px;background:#111827;color:#fff;text-decoration:none;font-weight:600;">
        Reset password
      </a>
    </p>
    <p style="margin-top:14px;font-size:12px;color:#6b7280;">
      If the button doesn't work, copy and paste this link:<br/>
      <span>{esc(reset_url)}</span>
    </p>
    <p style="margin-top:14px;">If you didn't request this, you can ignore this email.</p>
  </div>
  <div style="margin-top:18px;font-size:12px;color:#666;">Sent by {esc(app_name)}</div>
</div>
"""
    text_body = (
        f"Hi {who},\n\n"
        "We received a request to reset your password.\n\n"
        f"Reset link (expires in {expires_in_minutes} minutes):\n{reset_url}\n\n"
        "If you didn't request this, you can ignore this email.\n"
    )
    return subject, html_body, text_body


def render_verification_email(
    app_name: str,
    verify_url: str,
    expires_in_minutes: int,
    name: str | None = None,
) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for an address-confirmation email."""
    who = name.strip() if name and name.strip() else "there"
    subject = f"Confirm your email for {app_name}"
    esc = html.escape
    html_body = f"""
<div style="font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto;line-height:1.5;color:#111;">
  <h2 style="margin:0 0 12px 0;">Confirm your email</h2>
  <div style="font-size:14px;color:#111;">
    <p>Hi {esc(who)},</p>
    <p>Confirm this address to finish setting up your {esc(app_name)} account.</p>
    <p>This link expires in <b>{expires_in_minutes} minutes</b>.</p>
    <p style="margin-top:14px;">
      <a href="{esc(verify_url)}"
         style="display:inline-block;padding:10px 14px;border-radius:12px;background:#111827;color:#fff;text-decoration:none;font-weight:600;">
        Confirm email
      </a>
    </p>
    <p style="margin-top:14px;font-size:12px;color:#6b7280;">
      If the button doesn't work, copy and paste this link:<br/>
      <span>{esc(verify_url)}</span>
    </p>
    <p style="margin-top:14px;">If you didn't sign up, you can ignore this email.</p>
  </div>
  <div style="margin-top:18px;font-size:12px;color:#666;">Sent by {esc(app_name)}</div>
</div>
"""
    text_body = (
        f"Hi {who},\n\n"
        f"Confirm this address to finish setting up your {app_name} account.\n\n"
        f"Confirmation link (expires in {expires_in_minutes} minutes):\n{verify_url}\n\n"
        "If you didn't sign up, you can ignore this email.\n"
    )
    return subject, html_body, text_body
