"""
api/routes/v1/auth.py -- Session, role and password-reset REST endpoints.

Routes:
  POST /api/v1/auth/signup           -- create account; mails a verification link
                                        (sets the session cookie when verification is off)
  POST /api/v1/auth/login            -- password login; sets session cookie
  POST /api/v1/auth/logout           -- sign-out: clear cookie, then broadcast
  GET  /api/v1/auth/session          -- session re-check for synced tabs (public)
  GET  /api/v1/auth/events           -- SSE stream of auth events for this identity
  GET  /api/v1/auth/me               -- current identity (requires auth)
  POST /api/v1/auth/role             -- set role; returns effective role (requires auth)
  GET  /api/v1/auth/role-intent      -- remember a pre-login role choice, redirect
  GET  /api/v1/auth/apply-role       -- apply a role after login, redirect (requires auth)
  POST /api/v1/auth/forgot-password  -- request reset link; always {"ok": true}
  POST /api/v1/auth/reset-password   -- redeem reset token
  POST /api/v1/auth/verify-email     -- redeem verification token
  POST /api/v1/auth/resend-verification -- mail a fresh link; always {"ok": true}

Security:
  [H2] login, forgot-password and resend-verification are rate-limited per IP.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [C2] Every redirect target from a query param goes through safe_next().
  [M5] Cache-Control: no-store on responses that carry a session token.
  Role writes re-mint the session token immediately, so the role claim a
  client holds is never older than the last successful write.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from sqlalchemy.exc import IntegrityError
from starlette.background import BackgroundTasks as ResponseBackgroundTasks

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    OkResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RoleRequest,
    RoleResponse,
    SessionStatus,
    SignupRequest,
    SignupResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_current_claim, try_get_claim
from auth.guard import login_redirect_url, safe_next
from auth.models import Role, SessionClaim, User, parse_role
from auth.reset import PasswordResetService
from auth.roles import RoleChange, RoleService
from auth.store import UserStore
from auth.sync import AuthEvent, SessionChannel, sign_out
from auth.tokens import (
    authenticate_user,
    check_password,
    clear_session_cookie,
    hash_password,
    mint_session_token,
    set_session_cookie,
)
from auth.verification import EmailVerificationService
from core.config import get_settings
from core.errors import EmailNotVerified, Unauthorized

_settings = get_settings()

# Seconds between SSE keep-alive comments on an idle events stream.
_KEEPALIVE_SECONDS = 15.0

# Auth policy:
# - POST /auth/signup, /auth/login, /auth/logout:     public
# - GET  /auth/session, /auth/role-intent:            public
# - POST /auth/forgot-password, /auth/reset-password: public
# - POST /auth/verify-email, /auth/resend-verification: public
# - GET  /auth/events, /auth/me, /auth/apply-role:    requires session claim
# - POST /auth/role:                                  requires session claim
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _login_response(user_id: str, role: Optional[Role], status_code: int = 200) -> JSONResponse:
    """LoginResponse body plus the same token as an httpOnly cookie."""
    token = mint_session_token(user_id, role)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.session_expire_seconds,
            user_id=user_id,
            role=role,
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, token)
    resp.delete_cookie(_settings.role_intent_cookie_name)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _apply_pending_intent(request: Request, user_id: str) -> Optional[RoleChange]:
    role_service: RoleService = request.app.state.role_service
    return role_service.apply_role_intent(user_id, request.cookies.get(_settings.role_intent_cookie_name))


def _link_base_url(request: Request) -> str:
    """Origin for links in outgoing email.

    APP_URL is mandatory outside debug (see Settings), so the request Host
    header is only trusted on a development server.
    """
    if _settings.app_url:
        return _settings.app_url
    return str(request.base_url).rstrip("/")


# ---------------------------------------------------------------------------
# Sign-up / sign-in / sign-out
# ---------------------------------------------------------------------------


@router.post("/auth/signup", status_code=201, response_model=SignupResponse | LoginResponse)
def signup(request: Request, body: SignupRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    """Create a credentials account.

    The first role assignment comes from the pre-login role preference when
    one is pending, MEMBER otherwise. Both go through RoleService.

    With require_verified_email on, the account is not signed in: a
    verification link is mailed after the response and login stays closed
    until it is redeemed.
    """
    check_password(body.password, _settings.min_password_length)
    user_store: UserStore = request.app.state.user_store
    role_service: RoleService = request.app.state.role_service
    user = User(email=body.email, hashed_password=hash_password(body.password), name=body.name)
    try:
        user.id = user_store.create_user(user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc

    change = _apply_pending_intent(request, user.id) or role_service.set_role(user.id, Role.MEMBER)
    if not _settings.require_verified_email:
        return _login_response(user.id, change.effective, status_code=201)

    verification_service: EmailVerificationService = request.app.state.verification_service
    background_tasks.add_task(verification_service.send_quietly, user, _link_base_url(request))
    resp = JSONResponse(
        status_code=201,
        content=SignupResponse(user_id=user.id, role=change.effective).model_dump(mode="json"),
    )
    resp.delete_cookie(_settings.role_intent_cookie_name)
    return resp


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password produce the same response. Correct
    credentials for an unconfirmed address get 403 email_not_verified.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    if _settings.require_verified_email and not user.is_verified:
        # Password already matched here.
        raise EmailNotVerified()

    change = _apply_pending_intent(request, user.id)
    resp = _login_response(user.id, change.effective if change is not None else user.role)
    channel: SessionChannel = request.app.state.session_channel
    resp.background = ResponseBackgroundTasks()
    resp.background.add_task(channel.publish, user.id, AuthEvent.signin())
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """End the session and tell the identity's other tabs to re-check.

    The broadcast is a response background task, so it fires only after the
    response that deletes the cookie has gone out (invalidate -> broadcast).
    HX-Refresh asks the calling page to reload itself (refresh).
    """
    claim = try_get_claim(request)
    tasks = ResponseBackgroundTasks()
    resp = JSONResponse(content=LogoutResponse().model_dump(), background=tasks)
    channel: SessionChannel = request.app.state.session_channel

    def broadcast() -> None:
        if claim is not None:
            tasks.add_task(channel.publish, claim.user_id, AuthEvent.signout())

    def refresh() -> None:
        resp.headers["HX-Refresh"] = "true"
        resp.headers["Cache-Control"] = "no-store"

    sign_out(invalidate=lambda: clear_session_cookie(resp), broadcast=broadcast, refresh=refresh)
    return resp


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionStatus)
def session_status(request: Request) -> SessionStatus:
    """Report whether the caller's session is valid. Never 401.

    Tabs call this after an auth event instead of trusting the event.
    """
    claim = try_get_claim(request)
    if claim is None:
        return SessionStatus(authenticated=False)
    return SessionStatus(authenticated=True, user_id=claim.user_id, role=claim.role, expires_at=claim.expires_at)


@router.get("/auth/events")
async def auth_events(request: Request, claim: SessionClaim = Depends(get_current_claim)) -> StreamingResponse:
    """Server-sent events: one stream per open tab, keyed by identity."""
    channel: SessionChannel = request.app.state.session_channel

    async def stream():
        async with channel.subscribe(claim.user_id) as sub:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(sub.get(), timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield event.to_sse()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-store", "X-Accel-Buffering": "no"},
    )


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, claim: SessionClaim = Depends(get_current_claim)) -> MeResponse:
    """Return the stored identity behind the current session."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(claim.user_id)
    if user is None or not user.is_active:
        raise Unauthorized()
    return MeResponse(
        user_id=user.id, email=user.email, name=user.name, role=user.role, email_verified=user.is_verified
    )


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.post("/auth/role", response_model=RoleResponse)
def set_role(request: Request, body: RoleRequest, claim: SessionClaim = Depends(get_current_claim)) -> JSONResponse:
    """Set the caller's role. A downgrade from ORGANIZER is answered, not refused.

    The session token is re-minted with the effective role in the same
    response.
    """
    role_service: RoleService = request.app.state.role_service
    change = role_service.set_role(claim.user_id, body.role)
    resp = JSONResponse(
        content=RoleResponse(effective_role=change.effective, changed=change.changed).model_dump(mode="json")
    )
    set_session_cookie(resp, mint_session_token(claim.user_id, change.effective))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/role-intent")
def role_intent(role: str, next_url: Optional[str] = Query(default=None, alias="next")) -> RedirectResponse:
    """Remember which role a visitor picked before they have an account.

    The choice is only a preference: it is applied by signup/login through
    RoleService and expires after role_intent_max_age_seconds.
    """
    chosen = parse_role(role)
    resp = RedirectResponse(safe_next(next_url, "/signup"), status_code=302)
    resp.set_cookie(
        _settings.role_intent_cookie_name,
        value=chosen.value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.role_intent_max_age_seconds,
    )
    return resp


@router.get("/auth/apply-role")
def apply_role(
    request: Request,
    role: str = Role.MEMBER.value,
    next_url: Optional[str] = Query(default=None, alias="next"),
) -> RedirectResponse:
    """Post-login role selection: apply role, reissue the session, redirect to next."""
    target = safe_next(next_url, _settings.default_after_login)
    claim = try_get_claim(request)
    if claim is None:
        return RedirectResponse(login_redirect_url(target, _settings.login_path), status_code=302)

    role_service: RoleService = request.app.state.role_service
    change = role_service.set_role(claim.user_id, role)
    resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, mint_session_token(claim.user_id, change.effective))
    resp.delete_cookie(_settings.role_intent_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.forgot_password_rate_limit)  # [H2] see login()
@router.post("/auth/forgot-password", response_model=OkResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks) -> OkResponse:
    """Acknowledge a reset request. Same answer for every email.

    The lookup, token issue and email run after the response is sent, so
    neither the body nor the latency depends on whether the account exists.
    """
    reset_service: PasswordResetService = request.app.state.reset_service
    background_tasks.add_task(reset_service.request, body.email, _link_base_url(request))
    return OkResponse()


@router.post("/auth/reset-password", response_model=OkResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> OkResponse:
    """Redeem a reset token and set a new password."""
    reset_service: PasswordResetService = request.app.state.reset_service
    reset_service.redeem(body.token, body.password)
    return OkResponse()


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email", response_model=OkResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> OkResponse:
    """Redeem a verification token. The account can sign in afterwards."""
    verification_service: EmailVerificationService = request.app.state.verification_service
    verification_service.verify(body.token)
    return OkResponse()


@limiter.limit(_settings.resend_verification_rate_limit)  # [H2] see login()
@router.post("/auth/resend-verification", response_model=OkResponse)
def resend_verification(
    request: Request, body: ResendVerificationRequest, background_tasks: BackgroundTasks
) -> OkResponse:
    """Acknowledge a resend request. Same answer for every email, like forgot-password."""
    verification_service: EmailVerificationService = request.app.state.verification_service
    background_tasks.add_task(verification_service.resend, body.email, _link_base_url(request))
    return OkResponse()
