"""Unit tests for auth/gate.py -- AuthenticationGate.

Covers:
- signup stores a bcrypt hash, normalized phone, role user
- signup validation order and duplicate handling
- login: success issues a token with the account's role and version
- login failures are indistinguishable for unknown / wrong password / disabled
- throttling: the Nth failure locks the identifier, even the right password
  is refused, and the store is not consulted while locked
- logout revokes until original expiry; expired and bad-signature tokens are no-ops
- password change, role change and disable revoke every outstanding token
"""

import threading
import time

import pytest

from auth.errors import (
    DuplicateAccount,
    InvalidCredentials,
    InvalidPhoneFormat,
    MalformedToken,
    StoreUnavailable,
    Throttled,
    WeakPassword,
)
from auth.gate import AuthenticationGate
from auth.models import Role
from auth.revocation import RevocationRegistry
from auth.store import CredentialStore
from auth.throttle import FailedAttemptThrottle
from auth.tokens import TokenCodec, verify_password

PASSWORD = "secret-pass"


@pytest.fixture
def gate(clock):
    store = CredentialStore("sqlite:///:memory:")
    registry = RevocationRegistry(backend=store, clock=clock)
    g = AuthenticationGate(
        store=store,
        codec=TokenCodec(secret_key="s" * 48, default_ttl=3600, clock=clock),
        registry=registry,
        throttle=FailedAttemptThrottle(max_failures=3, window_seconds=300, clock=clock),
    )
    yield g
    store.close()


@pytest.fixture
def alice(gate):
    return gate.signup("alice@example.com", PASSWORD, " 010-1111-2222 ", nickname="Alice")


def _is_rejected(gate, token: str) -> bool:
    claims = gate.codec.verify(token)
    return gate.registry.is_revoked(claims.jti) or gate.registry.is_subject_revoked(claims.subject, claims.version)


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


class TestSignup:
    def test_creates_user_with_hashed_password(self, gate, alice):
        stored = gate.store.find("alice@example.com")
        assert stored.role is Role.user
        assert stored.phone == "010-1111-2222"
        assert stored.nickname == "Alice"
        assert stored.hashed_password != PASSWORD
        assert verify_password(PASSWORD, stored.hashed_password)

    def test_weak_password(self, gate):
        with pytest.raises(WeakPassword):
            gate.signup("bob@example.com", "123", "010-3333-4444")
        assert not gate.store.exists("bob@example.com")

    def test_bad_phone(self, gate):
        with pytest.raises(InvalidPhoneFormat):
            gate.signup("bob@example.com", PASSWORD, "01033334444")
        assert not gate.store.exists("bob@example.com")

    def test_duplicate_identifier(self, gate, alice):
        with pytest.raises(DuplicateAccount):
            gate.signup("alice@example.com", "other-pass", "010-5555-6666")
        assert verify_password(PASSWORD, gate.store.find("alice@example.com").hashed_password)

    def test_duplicate_phone(self, gate, alice):
        with pytest.raises(DuplicateAccount) as exc_info:
            gate.signup("bob@example.com", PASSWORD, "010-1111-2222")
        assert exc_info.value.field == "phone"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success(self, gate, alice, clock):
        issued = gate.login("alice@example.com", PASSWORD)
        claims = gate.codec.verify(issued.token)
        assert claims.subject == "alice@example.com"
        assert claims.role is Role.user
        assert claims.version == 1
        assert claims.expires_at == int(clock.now) + 3600

    def test_unknown_and_wrong_password_look_alike(self, gate, alice):
        with pytest.raises(InvalidCredentials) as unknown:
            gate.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            gate.login("alice@example.com", "wrong-pass")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message

    def test_disabled_account_refused(self, gate, alice):
        gate.disable("alice@example.com")
        with pytest.raises(InvalidCredentials):
            gate.login("alice@example.com", PASSWORD)

    def test_identifier_is_case_sensitive(self, gate, alice):
        with pytest.raises(InvalidCredentials):
            gate.login("Alice@example.com", PASSWORD)

    def test_throttle_after_max_failures(self, gate, alice):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                gate.login("alice@example.com", "wrong-pass")
        with pytest.raises(Throttled):
            gate.login("alice@example.com", PASSWORD)

    def test_throttled_login_skips_store(self, gate, alice, monkeypatch):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                gate.login("alice@example.com", "wrong-pass")

        def fail_find(identifier):
            raise AssertionError("store consulted while throttled")

        monkeypatch.setattr(gate.store, "find", fail_find)
        with pytest.raises(Throttled):
            gate.login("alice@example.com", PASSWORD)

    def test_throttle_lifts_after_window(self, gate, alice, clock):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                gate.login("alice@example.com", "wrong-pass")
        clock.advance(300)
        assert gate.login("alice@example.com", PASSWORD).token

    def test_success_resets_failures(self, gate, alice):
        for _ in range(2):
            with pytest.raises(InvalidCredentials):
                gate.login("alice@example.com", "wrong-pass")
        gate.login("alice@example.com", PASSWORD)
        assert gate.throttle.failures("alice@example.com") == 0

    def test_concurrent_guesses_capped_at_threshold(self, gate, alice, monkeypatch):
        """Simultaneous wrong-password logins evaluate at most max_failures passwords."""
        account = gate.store.find("alice@example.com")
        lookups = []

        def slow_find(identifier):
            lookups.append(identifier)
            time.sleep(0.05)
            return account

        monkeypatch.setattr(gate.store, "find", slow_find)
        start = threading.Barrier(20)
        outcomes = []

        def guess():
            start.wait()
            try:
                gate.login("alice@example.com", "wrong-pass")
            except (InvalidCredentials, Throttled) as exc:
                outcomes.append(type(exc))

        threads = [threading.Thread(target=guess) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(lookups) == 3
        assert outcomes.count(InvalidCredentials) == 3
        assert outcomes.count(Throttled) == 17

    def test_store_outage_does_not_count_as_failure(self, gate, alice, monkeypatch):
        def down(identifier):
            raise StoreUnavailable()

        monkeypatch.setattr(gate.store, "find", down)
        for _ in range(5):
            with pytest.raises(StoreUnavailable):
                gate.login("alice@example.com", PASSWORD)
        assert gate.throttle.failures("alice@example.com") == 0


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_until_expiry(self, gate, alice):
        issued = gate.login("alice@example.com", PASSWORD)
        assert gate.logout(issued.token) is True
        assert gate.registry.is_revoked(issued.claims.jti)
        assert gate.store.load_revoked_tokens(now=0) == {issued.claims.jti: issued.claims.expires_at}

    def test_logout_idempotent(self, gate, alice):
        issued = gate.login("alice@example.com", PASSWORD)
        assert gate.logout(issued.token) is True
        assert gate.logout(issued.token) is True
        assert len(gate.registry) == 1

    def test_logout_leaves_other_sessions(self, gate, alice):
        first = gate.login("alice@example.com", PASSWORD)
        second = gate.login("alice@example.com", PASSWORD)
        gate.logout(first.token)
        assert not _is_rejected(gate, second.token)

    def test_logout_expired_is_noop(self, gate, alice, clock):
        issued = gate.login("alice@example.com", PASSWORD)
        clock.advance(3600)
        assert gate.logout(issued.token) is False
        assert len(gate.registry) == 0

    def test_logout_foreign_token_is_noop(self, gate, alice, clock):
        foreign = TokenCodec(secret_key="x" * 48, clock=clock).issue("alice@example.com", Role.admin)
        assert gate.logout(foreign.token) is False
        assert len(gate.registry) == 0

    def test_logout_malformed_raises(self, gate):
        with pytest.raises(MalformedToken):
            gate.logout("garbage")


# ---------------------------------------------------------------------------
# Credential lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_password_change_revokes_all_tokens(self, gate, alice):
        tokens = [gate.login("alice@example.com", PASSWORD).token for _ in range(3)]
        gate.change_password("alice@example.com", PASSWORD, "new-secret")
        assert all(_is_rejected(gate, t) for t in tokens)

        fresh = gate.login("alice@example.com", "new-secret")
        assert not _is_rejected(gate, fresh.token)
        with pytest.raises(InvalidCredentials):
            gate.login("alice@example.com", PASSWORD)

    def test_password_change_requires_old_password(self, gate, alice):
        with pytest.raises(InvalidCredentials):
            gate.change_password("alice@example.com", "wrong-pass", "new-secret")

    def test_password_change_enforces_rules(self, gate, alice):
        with pytest.raises(WeakPassword):
            gate.change_password("alice@example.com", PASSWORD, "123")

    def test_role_change_revokes_and_new_token_carries_role(self, gate, alice):
        old = gate.login("alice@example.com", PASSWORD)
        gate.change_role("alice@example.com", Role.admin)
        assert _is_rejected(gate, old.token)

        new = gate.login("alice@example.com", PASSWORD)
        assert new.claims.role is Role.admin
        assert not _is_rejected(gate, new.token)

    def test_disable_revokes(self, gate, alice):
        issued = gate.login("alice@example.com", PASSWORD)
        gate.disable("alice@example.com")
        assert _is_rejected(gate, issued.token)

    def test_enable_allows_login_again(self, gate, alice):
        gate.disable("alice@example.com")
        gate.enable("alice@example.com")
        issued = gate.login("alice@example.com", PASSWORD)
        assert not _is_rejected(gate, issued.token)
