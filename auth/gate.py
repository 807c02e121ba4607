"""
auth/gate.py -- Credential checks, token issuance and credential lifecycle.

AuthenticationGate is the only place that turns a password into a token.
Routes call it; it calls the store, the codec, the revocation registry and
the throttle, and raises AuthError subclasses that the HTTP layer maps to
status codes.

Enumeration resistance:
  Unknown identifier, disabled account and wrong password all raise the same
  InvalidCredentials, and all three paths run exactly one bcrypt comparison
  (against _DUMMY_HASH when there is no real hash), so neither the response
  nor its timing reveals whether an account exists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import AccountNotFound, BadSignature, InvalidCredentials, StoreUnavailable, TokenExpired
from auth.models import Account, IssuedToken, Role
from auth.revocation import RevocationRegistry
from auth.store import CredentialStore
from auth.throttle import FailedAttemptThrottle
from auth.tokens import TokenCodec, burn_password_check, hash_password, verify_password
from auth.validation import SignupValidator

logger = logging.getLogger("rolegate.auth")


class AuthenticationGate:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        registry: RevocationRegistry,
        throttle: FailedAttemptThrottle,
        validator: SignupValidator | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.registry = registry
        self.throttle = throttle
        self.validator = validator or SignupValidator()

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def signup(self, identifier: str, password: str, phone: str, nickname: str | None = None) -> Account:
        """Validate and persist a new ``user`` account.

        Raises WeakPassword, InvalidPhoneFormat, DuplicateAccount.
        """
        normalized_phone = self.validator.validate(password, phone)
        account = self.store.create(
            Account(
                identifier=identifier,
                hashed_password=hash_password(password),
                phone=normalized_phone,
                nickname=nickname,
                role=Role.user,
            )
        )
        logger.info("Account created identifier=%s", account.identifier)
        return account

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def authenticate(self, identifier: str, password: str) -> Account:
        """Return the account if the password is right, else raise.

        The attempt is reserved with the throttle before the store is
        consulted, so a locked-out identifier is refused with Throttled and
        concurrent guesses cannot overrun the limit. Success resets the count.
        """
        attempts = self.throttle.acquire(identifier)

        try:
            account: Account | None = self.store.find(identifier)
        except AccountNotFound:
            account = None
        except StoreUnavailable:
            # Nothing was checked; the attempt does not count against the account
            self.throttle.refund(identifier)
            raise

        if account is None or not account.is_active:
            # Equalize timing -- do NOT return before running bcrypt
            burn_password_check(password)
            verified = False
        else:
            verified = verify_password(password, account.hashed_password)

        if not verified:
            logger.info("Login failed identifier=%s attempts=%d", identifier, attempts)
            raise InvalidCredentials()

        self.throttle.reset(identifier)
        return account

    def login(self, identifier: str, password: str) -> IssuedToken:
        """Authenticate and mint a token carrying the account's current role.

        Raises InvalidCredentials or Throttled.
        """
        account = self.authenticate(identifier, password)
        issued = self.codec.issue(account.identifier, account.role, version=account.credential_version)
        logger.info("Login succeeded identifier=%s role=%s", account.identifier, account.role.value)
        return issued

    def logout(self, token: str) -> bool:
        """Revoke the token until its original expiry. Idempotent.

        Returns True if the token was (or already is) revoked, False if there
        was nothing to revoke: an expired token is already dead, and a token
        with a bad signature carries a jti nobody issued. MalformedToken
        propagates to the caller.
        """
        try:
            claims = self.codec.verify(token)
        except (TokenExpired, BadSignature) as exc:
            logger.info("Logout ignored: %s", exc.code)
            return False
        self.registry.revoke(claims.jti, claims.expires_at)
        logger.info("Logout identifier=%s", claims.subject)
        return True

    # ------------------------------------------------------------------
    # Credential lifecycle
    # ------------------------------------------------------------------

    def change_password(self, identifier: str, old_password: str, new_password: str) -> Account:
        """Re-authenticate, store the new hash and revoke all outstanding tokens.

        Raises InvalidCredentials, Throttled, WeakPassword.
        """
        self.authenticate(identifier, old_password)
        self.validator.validate_password(new_password)
        account = self.store.update_password(identifier, hash_password(new_password))
        self._revoke_outstanding(account)
        logger.info("Password changed identifier=%s", identifier)
        return account

    def change_role(self, identifier: str, role: Role) -> Account:
        """Assign a new role. Tokens minted under the old role stop working."""
        account = self.store.update_role(identifier, Role(role))
        self._revoke_outstanding(account)
        logger.info("Role changed identifier=%s role=%s", identifier, account.role.value)
        return account

    def disable(self, identifier: str) -> Account:
        """Soft-disable an account and revoke its outstanding tokens."""
        account = self.store.disable(identifier)
        self._revoke_outstanding(account)
        logger.info("Account disabled identifier=%s", identifier)
        return account

    def enable(self, identifier: str) -> Account:
        account = self.store.enable(identifier)
        logger.info("Account enabled identifier=%s", identifier)
        return account

    def _revoke_outstanding(self, account: Account) -> None:
        # Every token issued before this change carries a lower version and
        # expires within one default lifetime from now.
        horizon = self.codec.now() + self.codec.default_ttl
        self.registry.revoke_subject(account.identifier, account.credential_version, horizon)
