"""
auth/errors.py -- Exception taxonomy for the auth package.

Every failure the auth layer can report is an AuthError subclass with a
stable machine-readable ``code``. The HTTP layer maps classes to status codes
in one table (api/main.py); nothing in auth/ knows about HTTP.

Messages are safe to show to callers: they never contain hashes, tokens,
key material, or whether an identifier exists.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth failures."""

    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class DuplicateAccount(AuthError):
    code = "duplicate"
    message = "An account with that identifier or phone number already exists."

    def __init__(self, field: str = "identifier") -> None:
        super().__init__(f"An account with that {field.replace('_', ' ')} already exists.")
        self.field = field


class AccountNotFound(AuthError):
    code = "not_found"
    message = "Account not found."


class StoreUnavailable(AuthError):
    """Storage did not answer within the configured timeout after all retries."""

    code = "unavailable"
    message = "Credential store is temporarily unavailable."
    retry_after = 1


# ---------------------------------------------------------------------------
# Signup validation
# ---------------------------------------------------------------------------


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password does not meet the minimum length."


class InvalidPhoneFormat(AuthError):
    code = "invalid_phone_format"
    message = "Phone number must look like 010-1234-5678."


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """Unknown identifier, wrong password and disabled account all look alike."""

    code = "invalid_credentials"
    message = "Invalid identifier or password."


class Throttled(AuthError):
    code = "throttled"
    message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after: int) -> None:
        super().__init__()
        self.retry_after = max(1, int(retry_after))


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "invalid_token"
    message = "Invalid token."


class MalformedToken(TokenError):
    code = "malformed"
    message = "Token is malformed."


class BadSignature(TokenError):
    code = "bad_signature"
    message = "Token signature is invalid."


class TokenExpired(TokenError):
    code = "expired"
    message = "Token has expired."


# ---------------------------------------------------------------------------
# Authorization verdicts
# ---------------------------------------------------------------------------


class AccessDenied(AuthError):
    """Rejection produced by the authorization check of a protected route."""

    code = "access_denied"
    message = "Access denied."


class Unauthenticated(AccessDenied):
    code = "unauthenticated"
    message = "Authentication required."


class InvalidToken(AccessDenied):
    """Token failed verification. ``reason`` is the TokenError code."""

    code = "invalid_token"
    message = "Invalid token."

    def __init__(self, reason: str) -> None:
        super().__init__()
        self.reason = reason


class Revoked(AccessDenied):
    code = "revoked"
    message = "Token has been revoked."


class Forbidden(AccessDenied):
    code = "forbidden"
    message = "Insufficient role for this resource."
