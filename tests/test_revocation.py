"""Unit tests for auth/revocation.py -- RevocationRegistry.

Covers:
- revoke() / is_revoked(), idempotence
- subject watermarks: tokens below the version are revoked, at/above are not
- sweep() drops only entries past their expiry / horizon
- write-through to a backend store and load() after a simulated restart
- refresh() merges entries written by another registry on the same store
- concurrent revokes from many threads all land
"""

import threading

from auth.revocation import RevocationRegistry
from auth.store import CredentialStore


class TestTokens:
    def test_revoke_and_check(self, clock):
        registry = RevocationRegistry(clock=clock)
        assert not registry.is_revoked("jti-1")
        registry.revoke("jti-1", 2_000_000_000)
        assert registry.is_revoked("jti-1")
        assert not registry.is_revoked("jti-2")

    def test_revoke_idempotent(self, clock):
        registry = RevocationRegistry(clock=clock)
        registry.revoke("jti-1", 2_000_000_000)
        registry.revoke("jti-1", 2_000_000_000)
        assert len(registry) == 1
        assert registry.is_revoked("jti-1")


class TestWatermarks:
    def test_versions_below_watermark_revoked(self, clock):
        registry = RevocationRegistry(clock=clock)
        registry.revoke_subject("alice", min_version=3, horizon=2_000_000_000)
        assert registry.is_subject_revoked("alice", 1)
        assert registry.is_subject_revoked("alice", 2)
        assert not registry.is_subject_revoked("alice", 3)
        assert not registry.is_subject_revoked("bob", 1)

    def test_watermark_never_moves_backwards(self, clock):
        registry = RevocationRegistry(clock=clock)
        registry.revoke_subject("alice", min_version=3, horizon=2_000_000_000)
        registry.revoke_subject("alice", min_version=2, horizon=1_900_000_000)
        assert registry.is_subject_revoked("alice", 2)
        assert registry.watermark_count == 1


class TestSweep:
    def test_sweep_drops_only_dead_entries(self, clock):
        now = int(clock.now)
        registry = RevocationRegistry(clock=clock)
        registry.revoke("dead", now - 1)
        registry.revoke("boundary", now)
        registry.revoke("live", now + 60)
        registry.revoke_subject("old", 2, now - 1)
        registry.revoke_subject("fresh", 2, now + 60)

        assert registry.sweep() == 3
        assert registry.is_revoked("live")
        assert not registry.is_revoked("dead")
        assert not registry.is_revoked("boundary")
        assert registry.is_subject_revoked("fresh", 1)
        assert not registry.is_subject_revoked("old", 1)

    def test_sweep_after_time_passes(self, clock):
        registry = RevocationRegistry(clock=clock)
        registry.revoke("jti", int(clock.now) + 30)
        assert registry.sweep() == 0
        clock.advance(30)
        assert registry.sweep() == 1
        assert len(registry) == 0


class TestPersistence:
    def test_revocations_survive_restart(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        now = int(clock.now)
        first = RevocationRegistry(backend=store, clock=clock)
        first.revoke("jti-1", now + 600)
        first.revoke_subject("alice", 2, now + 600)

        restarted = RevocationRegistry(backend=store, clock=clock)
        restarted.load()
        assert restarted.is_revoked("jti-1")
        assert restarted.is_subject_revoked("alice", 1)
        store.close()

    def test_load_skips_expired(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        registry = RevocationRegistry(backend=store, clock=clock)
        registry.revoke("short", int(clock.now) + 5)
        clock.advance(10)

        restarted = RevocationRegistry(backend=store, clock=clock)
        restarted.load()
        assert len(restarted) == 0
        store.close()

    def test_sweep_deletes_from_backend(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        registry = RevocationRegistry(backend=store, clock=clock)
        registry.revoke("jti", int(clock.now) + 5)
        clock.advance(10)
        registry.sweep()
        assert store.load_revoked_tokens(now=0) == {}
        store.close()


class TestRefresh:
    """Two registries over one store, as two API workers or an API and the CLI."""

    def test_sees_other_workers_revocations(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        now = int(clock.now)
        serving = RevocationRegistry(backend=store, clock=clock)
        serving.load()
        other = RevocationRegistry(backend=store, clock=clock)
        other.revoke("jti-elsewhere", now + 600)
        other.revoke_subject("alice", 2, now + 600)

        assert not serving.is_revoked("jti-elsewhere")
        assert serving.refresh() == 2
        assert serving.is_revoked("jti-elsewhere")
        assert serving.is_subject_revoked("alice", 1)
        assert not serving.is_subject_revoked("alice", 2)
        store.close()

    def test_keeps_local_entries(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        now = int(clock.now)
        serving = RevocationRegistry(backend=store, clock=clock)
        serving.revoke("local", now + 600)
        serving.revoke_subject("bob", 5, now + 600)
        store.delete_revoked_before(now + 601)
        store.delete_watermarks_before(now + 601)

        other = RevocationRegistry(backend=store, clock=clock)
        other.revoke("remote", now + 3600)
        other.revoke_subject("bob", 3, now + 3600)

        serving.refresh()
        assert serving.is_revoked("local")
        assert serving.is_revoked("remote")
        # Higher local version kept, later remote horizon adopted
        assert serving.is_subject_revoked("bob", 4)
        assert serving._watermarks["bob"] == (5, now + 3600)
        store.close()

    def test_nothing_new_returns_zero(self, clock):
        store = CredentialStore("sqlite:///:memory:")
        registry = RevocationRegistry(backend=store, clock=clock)
        registry.revoke("jti", int(clock.now) + 600)
        assert registry.refresh() == 0
        store.close()

    def test_without_backend_is_noop(self, clock):
        assert RevocationRegistry(clock=clock).refresh() == 0


def test_concurrent_revokes(clock):
    registry = RevocationRegistry(clock=clock)
    expiry = int(clock.now) + 600

    def worker(offset: int) -> None:
        for i in range(200):
            registry.revoke(f"jti-{offset}-{i}", expiry)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(registry) == 1600
    assert all(registry.is_revoked(f"jti-{n}-199") for n in range(8))
