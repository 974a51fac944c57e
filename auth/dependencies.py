"""
auth/dependencies.py -- FastAPI Depends() helpers for session claims.

The route guard already verified the token for page requests and left the
result on request.state.claim. API paths are not covered by the protected
prefixes, so these helpers verify the token themselves when the guard did
not -- either way the answer comes from the signed token alone, no store
lookup.

try_get_claim() is the soft variant (returns None on failure).
get_current_claim() wraps it and raises Unauthorized.
require_organizer() wraps get_current_claim() and raises HTTP 403.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import SessionClaim
from auth.tokens import extract_session_token, verify_session_token
from core.errors import Unauthorized


def try_get_claim(request: Request) -> SessionClaim | None:
    """Return the verified claim for this request, or None. Never raises."""
    claim = getattr(request.state, "claim", None)
    if claim is not None:
        return claim
    token = extract_session_token(request.cookies, request.headers)
    if not token:
        return None
    return verify_session_token(token)


def get_current_claim(request: Request) -> SessionClaim:
    """Require a valid session. Raises Unauthorized (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claim: SessionClaim = Depends(get_current_claim)): ...
    """
    claim = try_get_claim(request)
    if claim is None:
        raise Unauthorized()
    return claim


def require_organizer(request: Request) -> SessionClaim:
    """Require an ORGANIZER session. 401 if unauthenticated, 403 otherwise."""
    claim = get_current_claim(request)
    if not claim.is_organizer:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Organizer access required."},
        )
    return claim
