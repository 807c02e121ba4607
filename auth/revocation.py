"""
auth/revocation.py -- Registry of tokens invalidated before their natural expiry.

Two kinds of entry:
  jti entries        one token, killed by logout. Kept until the token's
                     original exp; after that expiry alone rejects it.
  subject watermarks every token of one account issued below a credential
                     version, killed by a password change, role change or
                     disable. Kept until ``horizon`` (change time + the
                     longest token lifetime), after which every affected
                     token has expired anyway.

This is the only mutable state on the authorization hot path. Reads are
plain dict lookups and never take the lock; writes (logout, password change,
sweep) are serialized by one threading.Lock and replace whole values, so a
reader sees either the old or the new entry. When a backend store is
attached, writes go through to it and load() repopulates memory on startup,
so revocations survive a restart. refresh() merges entries written by other
workers or the CLI while this process is running.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("rolegate.auth")


class RevocationRegistry:
    def __init__(
        self,
        backend: CredentialStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._revoked: dict[str, int] = {}  # jti -> original exp
        self._watermarks: dict[str, tuple[int, int]] = {}  # subject -> (min_version, horizon)
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._revoked)

    @property
    def watermark_count(self) -> int:
        return len(self._watermarks)

    def load(self) -> None:
        """Replace in-memory state with the entries still in force in the backend."""
        if self._backend is None:
            return
        now = int(self._clock())
        revoked = self._backend.load_revoked_tokens(now)
        watermarks = self._backend.load_watermarks(now)
        with self._write_lock:
            self._revoked = revoked
            self._watermarks = watermarks
        logger.info("Revocation registry loaded (%d tokens, %d watermarks)", len(revoked), len(watermarks))

    def refresh(self) -> int:
        """Merge entries written by other processes into memory. Returns the number added or raised.

        Unlike load(), nothing already in memory is dropped: the backend only
        ever adds to the revocation set, and sweep() handles removal. Workers
        and the CLI share the store, so a logout or disable anywhere takes
        effect here on the next refresh.
        """
        if self._backend is None:
            return 0
        now = int(self._clock())
        revoked = self._backend.load_revoked_tokens(now)
        watermarks = self._backend.load_watermarks(now)
        changed = 0
        with self._write_lock:
            merged_tokens = dict(self._revoked)
            for jti, exp in revoked.items():
                if jti not in merged_tokens:
                    merged_tokens[jti] = exp
                    changed += 1
            merged_marks = dict(self._watermarks)
            for subject, mark in watermarks.items():
                current = merged_marks.get(subject)
                merged = mark if current is None else (max(mark[0], current[0]), max(mark[1], current[1]))
                if merged != current:
                    merged_marks[subject] = merged
                    changed += 1
            self._revoked = merged_tokens
            self._watermarks = merged_marks
        if changed:
            logger.info("Revocation registry refreshed (%d new entries)", changed)
        return changed

    # ------------------------------------------------------------------
    # Single tokens
    # ------------------------------------------------------------------

    def revoke(self, jti: str, original_expiry: int) -> None:
        """Mark a token as revoked until its original expiry. Idempotent."""
        with self._write_lock:
            if self._revoked.get(jti) == original_expiry:
                return
            self._revoked[jti] = original_expiry
        if self._backend is not None:
            self._backend.save_revoked_token(jti, original_expiry)

    def is_revoked(self, jti: str) -> bool:
        return jti in self._revoked

    # ------------------------------------------------------------------
    # Whole subjects
    # ------------------------------------------------------------------

    def revoke_subject(self, subject: str, min_version: int, horizon: int) -> None:
        """Revoke every token for ``subject`` whose version is below ``min_version``."""
        with self._write_lock:
            current = self._watermarks.get(subject)
            if current is not None:
                min_version = max(min_version, current[0])
                horizon = max(horizon, current[1])
            self._watermarks[subject] = (min_version, horizon)
        if self._backend is not None:
            self._backend.save_watermark(subject, min_version, horizon)

    def is_subject_revoked(self, subject: str, version: int) -> bool:
        watermark = self._watermarks.get(subject)
        return watermark is not None and version < watermark[0]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self, now: int | None = None) -> int:
        """Drop entries that can no longer matter. Returns the number removed.

        Safe at any time: a jti entry past its original expiry belongs to a
        token that verification already rejects as expired.
        """
        if now is None:
            now = int(self._clock())
        with self._write_lock:
            live_tokens = {jti: exp for jti, exp in self._revoked.items() if exp > now}
            live_marks = {subject: mark for subject, mark in self._watermarks.items() if mark[1] > now}
            removed = (len(self._revoked) - len(live_tokens)) + (len(self._watermarks) - len(live_marks))
            self._revoked = live_tokens
            self._watermarks = live_marks
        if self._backend is not None:
            self._backend.delete_revoked_before(now)
            self._backend.delete_watermarks_before(now)
        return removed
