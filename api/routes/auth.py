"""
api/routes/auth.py -- Signup, login, logout and credential endpoints.

Routes:
  POST /signup    -- create a user account; 201
  POST /login     -- password login; returns a bearer token
  POST /logout    -- revoke the presented bearer token; 204
  POST /password  -- change own password (requires auth); 204
  GET  /me        -- identity carried by the caller's token (requires auth)

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit) on top
  of the per-identifier failed-attempt throttle inside AuthenticationGate.
  Cache-Control: no-store on every response that carries a token.
  Failures are raised as AuthError subclasses; api/main.py maps them to
  status codes in one place.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import AccountResponse, LoginRequest, LoginResponse, MeResponse, PasswordChangeRequest, SignupRequest
from auth.dependencies import bearer_token, require_user
from auth.errors import MalformedToken
from auth.gate import AuthenticationGate
from auth.models import Principal
from core.config import get_settings

# Auth policy:
# - POST /signup:    public
# - POST /login:     public, IP rate limited
# - POST /logout:    bearer token required in the header, but not authorized --
#                    an expired token can still be "logged out" (no-op)
# - POST /password:  requires user role (require_user)
# - GET  /me:        requires user role (require_user)
router = APIRouter()

_settings = get_settings()


def _gate(request: Request) -> AuthenticationGate:
    return request.app.state.gate


@router.post("/signup", response_model=AccountResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> AccountResponse:
    """Create a ``user`` account.

    400 weak_password / invalid_phone_format, 409 duplicate.
    """
    account = _gate(request).signup(body.identifier, body.password, body.phone, body.nickname)
    return AccountResponse.from_account(account)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identifier and password; return a bearer token.

    Unknown identifier and wrong password produce the same 401
    invalid_credentials so the response does not leak account existence.
    """
    issued = _gate(request).login(body.identifier, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=issued.token,
            expires_at=issued.claims.expires_at,
            identifier=issued.claims.subject,
            role=issued.claims.role,
        ).model_dump(mode="json", by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout", status_code=204)
def logout(request: Request) -> Response:
    """Revoke the presented token until its natural expiry. Idempotent.

    204 whether or not anything was revoked; 400 if no bearer token is
    present or the token is not a well-formed JWT.
    """
    token = bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise MalformedToken("A bearer token is required.")
    _gate(request).logout(token)
    return Response(status_code=204, headers={"Cache-Control": "no-store"})


@router.post("/password", status_code=204)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(require_user),
) -> Response:
    """Change the caller's password. Every outstanding token, including this one, is revoked."""
    _gate(request).change_password(principal.subject, body.old_password, body.new_password)
    return Response(status_code=204)


@router.get("/me", response_model=MeResponse)
def me(principal: Principal = Depends(require_user)) -> MeResponse:
    """Return identity information for the caller, as carried by the token."""
    return MeResponse(
        identifier=principal.subject,
        role=principal.role,
        issued_at=principal.issued_at,
        expires_at=principal.expires_at,
    )
