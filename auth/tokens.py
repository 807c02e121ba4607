"""
auth/tokens.py -- Session token codec and password hashing.

Security design decisions:
  JWT: python-jose, HMAC (HS256 by default). Tokens are standard compact JWS
       strings (base64url header . payload . signature) carrying sub, role,
       jti, iat, exp and ver, so any off-the-shelf JWT library holding the
       same key can verify them. TokenCodec is pure: no I/O, no shared
       mutable state, safe to call from any thread.

       verify() runs three independent gates in a fixed order -- structure,
       signature, expiry -- and raises a distinct error for each, so callers
       can tell "replayed old token" (TokenExpired) from "tampering"
       (BadSignature). The signature comparison is python-jose's HMAC key
       verify, which uses hmac.compare_digest.

  Passwords: bcrypt directly, no passlib wrapper. Bcrypt is the right choice
       for low-entropy secrets because its cost factor makes brute force
       expensive. The _DUMMY_HASH constant lets the login path run bcrypt even
       for unknown identifiers so response time does not reveal whether an
       account exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable

import bcrypt
from jose import jws, jwt
from jose.exceptions import JWSError
from jose.utils import base64url_decode

from auth.errors import BadSignature, MalformedToken, TokenExpired
from auth.models import Claims, IssuedToken, Role
from core.config import Settings, get_settings

logger = logging.getLogger("rolegate.auth")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------

# bcrypt only consumes the first 72 bytes of a password. Recent releases raise
# instead of truncating, so truncate explicitly and identically on both paths.
_BCRYPT_MAX_BYTES = 72


def _password_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in storage
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("rolegate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called when there is no real hash to compare against (unknown or disabled
    identifier) so that path costs the same as a wrong password.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


def new_token_id() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


class TokenCodec:
    """Issue and verify signed session tokens.

    Usage:
        codec = TokenCodec.from_settings(get_settings())
        issued = codec.issue("alice@example.com", Role.user)
        claims = codec.verify(issued.token)
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        default_ttl: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key = secret_key
        self.algorithm = algorithm
        self.default_ttl = default_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.time) -> TokenCodec:
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.jwt_algorithm,
            default_ttl=settings.token_expire_seconds,
            clock=clock,
        )

    def now(self) -> int:
        return int(self._clock())

    def issue(self, subject: str, role: Role, ttl: int | None = None, version: int = 1) -> IssuedToken:
        """Build, sign and encode a fresh claim set.

        Args:
            subject: Account identifier stored as the ``sub`` claim.
            role:    Role the account holds at issue time.
            ttl:     Lifetime in seconds. Defaults to Settings.token_expire_seconds.
            version: Account credential version (``ver`` claim).
        """
        lifetime = ttl if ttl is not None else self.default_ttl
        if lifetime <= 0:
            raise ValueError("Token lifetime must be positive.")
        issued_at = self.now()
        claims = Claims(
            subject=subject,
            role=Role(role),
            jti=new_token_id(),
            issued_at=issued_at,
            expires_at=issued_at + lifetime,
            version=version,
        )
        token = jwt.encode(claims.to_payload(), self._key, algorithm=self.algorithm)
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> Claims:
        """Verify a token and return its claims.

        Raises:
            MalformedToken: not three base64url segments, header or payload is
                            not the expected JSON, or required claims missing.
            BadSignature:   signature does not match, or the header names an
                            algorithm other than the configured one.
            TokenExpired:   correctly signed, but ``exp <= now``.
        """
        header = _decode_header(token)
        if header["alg"] != self.algorithm:
            raise BadSignature()
        try:
            payload_bytes = jws.verify(token, self._key, algorithms=[self.algorithm])
        except JWSError as exc:
            raise BadSignature() from exc

        claims = _claims_from_payload(payload_bytes)
        if claims.expires_at <= self.now():
            raise TokenExpired()
        return claims


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _decode_segment(segment: str) -> bytes:
    try:
        return base64url_decode(segment.encode("ascii"))
    except (ValueError, TypeError) as exc:
        raise MalformedToken() from exc


def _decode_header(token: str) -> dict:
    """Check the compact structure and return the decoded header."""
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedToken()
    header_seg, payload_seg, signature_seg = token.split(".")
    if not header_seg or not payload_seg:
        raise MalformedToken()
    try:
        header = json.loads(_decode_segment(header_seg))
    except ValueError as exc:
        raise MalformedToken() from exc
    if not isinstance(header, dict) or not isinstance(header.get("alg"), str):
        raise MalformedToken()
    _decode_segment(payload_seg)
    _decode_segment(signature_seg)
    return header


def _int_claim(payload: dict, name: str, default: int | None = None) -> int:
    value = payload.get(name, default)
    # Whole seconds only. bool is an int subclass, and json.loads turns 1.5,
    # Infinity and NaN into floats.
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedToken()
    return value


def _claims_from_payload(payload_bytes: bytes) -> Claims:
    try:
        payload = json.loads(payload_bytes)
    except ValueError as exc:
        raise MalformedToken() from exc
    if not isinstance(payload, dict):
        raise MalformedToken()

    subject = payload.get("sub")
    jti = payload.get("jti")
    if not isinstance(subject, str) or not subject or not isinstance(jti, str) or not jti:
        raise MalformedToken()
    try:
        role = Role(payload.get("role"))
    except ValueError as exc:
        raise MalformedToken() from exc

    return Claims(
        subject=subject,
        role=role,
        jti=jti,
        issued_at=_int_claim(payload, "iat"),
        expires_at=_int_claim(payload, "exp"),
        version=_int_claim(payload, "ver", default=1),
    )
