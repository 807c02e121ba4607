"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; stores, the gate and routes do the work. The one piece of logic
here is the role lattice, kept next to the Role enum so adding a role only
touches one table.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, required: Role) -> bool:
        """True if this role meets or exceeds ``required``."""
        return self.rank >= required.rank


# Role lattice. A role satisfies every role whose rank is <= its own.
_ROLE_RANK: dict[Role, int] = {
    Role.user: 10,
    Role.admin: 100,
}


@dataclass
class Account:
    """A locally registered identity.

    hashed_password is a bcrypt hash; the plaintext never reaches this object.
    credential_version starts at 1 and is bumped whenever the trust decision
    encoded in outstanding tokens goes stale (password change, role change,
    disable). Tokens carry the version they were issued at.

    Accounts are soft-disabled (is_active=False), never deleted.
    """

    identifier: str
    hashed_password: str
    phone: str
    role: Role = Role.user
    nickname: str | None = None
    id: int | None = None
    created_at: str | None = None
    is_active: bool = True
    credential_version: int = 1


@dataclass(frozen=True)
class Claims:
    """Verified contents of a session token. Timestamps are epoch seconds."""

    subject: str
    role: Role
    jti: str
    issued_at: int
    expires_at: int
    version: int = 1

    def to_payload(self) -> dict:
        return {
            "sub": self.subject,
            "role": self.role.value,
            "jti": self.jti,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "ver": self.version,
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: Claims


@dataclass(frozen=True)
class Principal:
    """What an admitted request hands to route handlers -- never the raw token."""

    subject: str
    role: Role
    issued_at: int
    expires_at: int
