"""
auth/dependencies.py -- Per-request authorization and its FastAPI Depends() helpers.

Every protected request walks one state machine:

  Unauthenticated -> TokenPresent -> Verified -> RoleChecked -> Admitted

and is Rejected at the first failing step:
  1. no "Authorization: Bearer <token>" header     -> Unauthenticated (401)
  2. TokenCodec.verify raises                       -> InvalidToken(reason) (401)
  3. jti revoked, or subject watermark above ver    -> Revoked (401)
  4. role does not satisfy the route's minimum      -> Forbidden (403)

The hot path never touches the credential store: the token is
self-contained and the revocation registry is an in-memory lookup. Handlers
receive a Principal, never the raw token.

require_role() builds the dependency for a minimum role:
    @router.get("/api/admin/stats")
    def stats(principal: Principal = Depends(require_admin)): ...

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import Forbidden, InvalidToken, Revoked, TokenError, Unauthenticated
from auth.models import Principal, Role
from auth.revocation import RevocationRegistry
from auth.tokens import TokenCodec

logger = logging.getLogger("rolegate.auth")


def bearer_token(authorization: str | None) -> str | None:
    """Extract the credentials from an ``Authorization: Bearer`` header value."""
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    credentials = credentials.strip()
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials


class AuthorizationMiddleware:
    def __init__(self, codec: TokenCodec, registry: RevocationRegistry) -> None:
        self.codec = codec
        self.registry = registry

    def authorize(self, authorization: str | None, required: Role) -> Principal:
        """Run the full check for one request and return the admitted Principal.

        Raises Unauthenticated, InvalidToken, Revoked or Forbidden.
        """
        token = bearer_token(authorization)
        if token is None:
            raise Unauthenticated()

        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            logger.info("Rejected token: %s", exc.code)
            raise InvalidToken(exc.code) from exc

        if self.registry.is_revoked(claims.jti) or self.registry.is_subject_revoked(claims.subject, claims.version):
            logger.info("Rejected revoked token for identifier=%s", claims.subject)
            raise Revoked()

        if not claims.role.satisfies(required):
            logger.info(
                "Forbidden: identifier=%s role=%s required=%s",
                claims.subject,
                claims.role.value,
                required.value,
            )
            raise Forbidden()

        return Principal(
            subject=claims.subject,
            role=claims.role,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )


def require_role(required: Role):
    """Return a FastAPI dependency admitting tokens whose role satisfies ``required``."""

    def dependency(request: Request) -> Principal:
        authorizer: AuthorizationMiddleware = request.app.state.authorizer
        principal = authorizer.authorize(request.headers.get("Authorization"), required)
        request.state.principal = principal
        return principal

    dependency.__name__ = f"require_{required.value}"
    return dependency


require_user = require_role(Role.user)
require_admin = require_role(Role.admin)
