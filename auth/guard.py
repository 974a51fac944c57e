"""
auth/guard.py -- Path-based route protection, evaluated ahead of every handler.

evaluate() is the whole decision and is pure: (path, token, settings, now)
in, GuardDecision out. No store lookups, no shared state, so it is safe to
run concurrently on every request and gives the same answer on any worker.

Decision table (P = path matches a protected prefix, O = path matches an
organizer-only prefix, C = token verifies to a claim):

  not P                       -> proceed
  P, no C                     -> redirect /login?next=<path>
  P and O, C role != ORGANIZER -> redirect to default_after_login
  otherwise                   -> proceed (request.state.claim is set)

Open-redirect guard [C2]: next= only ever carries the normalized request
path, and safe_next() is the single validator for incoming next= values.

This is the page-level checkpoint. API handlers still call
auth.dependencies.get_current_claim() because the protected prefixes do not
cover /api.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auth.models import Role, SessionClaim
from auth.tokens import extract_session_token, verify_session_token
from core.config import Settings, get_settings

logger = logging.getLogger("plannr.auth.guard")

_SLASHES = re.compile(r"/{2,}")


@dataclass(frozen=True)
class GuardDecision:
    action: Literal["proceed", "redirect"]
    path: str
    location: str | None = None
    claim: SessionClaim | None = None

    @property
    def proceed(self) -> bool:
        return self.action == "proceed"


def normalize_path(path: str) -> str:
    """Canonical form used for matching: '/a//b/./c/../' -> '/a/b'."""
    collapsed = _SLASHES.sub("/", "/" + (path or "").lstrip("/"))
    normalized = posixpath.normpath(collapsed)
    return normalized if normalized.startswith("/") else "/" + normalized


def matches_prefix(path: str, prefixes: list[str]) -> bool:
    """Segment-aware prefix test: '/app' covers '/app' and '/app/x', not '/apple'."""
    for prefix in prefixes:
        if prefix == "/" or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def safe_next(value: str | None, default: str = "/") -> str:
    """Validate a post-login redirect target. Only accept local paths [C2].

    Rejects absolute URLs (https://evil), protocol-relative URLs (//evil) and
    the backslash variant browsers treat the same way (/\\evil).
    """
    if value and value.startswith("/") and not value.startswith(("//", "/\\")):
        return value
    return default


def login_redirect_url(path: str, login_path: str = "/login") -> str:
    """'/app/dashboard' -> '/login?next=%2Fapp%2Fdashboard'."""
    return f"{login_path}?next={quote(path, safe='')}"


def evaluate(
    path: str,
    token: str | None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> GuardDecision:
    """Decide whether a request for path may proceed with the given token."""
    settings = settings or get_settings()
    resolved = normalize_path(path)
    claim = verify_session_token(token, now=now) if token else None

    if not matches_prefix(resolved, settings.protected_prefixes):
        return GuardDecision(action="proceed", path=resolved, claim=claim)

    if claim is None:
        return GuardDecision(
            action="redirect",
            path=resolved,
            location=login_redirect_url(resolved, settings.login_path),
        )

    if matches_prefix(resolved, settings.organizer_prefixes) and claim.role is not Role.ORGANIZER:
        return GuardDecision(
            action="redirect",
            path=resolved,
            location=settings.default_after_login,
            claim=claim,
        )

    return GuardDecision(action="proceed", path=resolved, claim=claim)


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """Run evaluate() for every request before routing.

    Proceeding requests are annotated with request.state.claim and
    request.state.resolved_path for downstream handlers.
    """

    def __init__(self, app, settings: Settings | None = None) -> None:
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request: Request, call_next):
        settings = self.settings or get_settings()
        token = extract_session_token(request.cookies, request.headers)
        decision = evaluate(request.url.path, token, settings)
        if not decision.proceed:
            logger.debug("Guard redirect %s -> %s", decision.path, decision.location)
            return RedirectResponse(decision.location, status_code=302)
        request.state.claim = decision.claim
        request.state.resolved_path = decision.path
        return await call_next(request)
