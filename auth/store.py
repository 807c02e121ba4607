"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_account is the mapper. The gate,
the revocation registry and the CLI never touch SQL directly.

Tables:
  accounts            one row per identity; identifier and phone are UNIQUE
  revoked_tokens      jti -> original exp, durable copy of the revocation set
  subject_watermarks  identifier -> minimum valid credential version

Consistency:
  Every write runs inside engine.begin(), a single transaction, so a reader
  never sees a half-written account. UNIQUE constraints are the
  authoritative duplicate check: two concurrent signups for the same
  identifier cannot both commit, whatever the validator saw.

Availability:
  Storage access is bounded. SQLite gets a busy timeout, other backends a
  pool timeout. OperationalError / pool TimeoutError is retried with
  exponential backoff up to store_max_retries times, then surfaces as
  StoreUnavailable. No other error is retried.

Security:
  All queries use bound parameters. No f-strings in SQL. Password hashes
  are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import AccountNotFound, DuplicateAccount, StoreUnavailable
from auth.models import Account, Role
from core.config import Settings

logger = logging.getLogger("rolegate.store")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("phone", String(13), nullable=False, unique=True),  # NNN-NNNN-NNNN
    Column("nickname", String(100)),
    Column("role", String(30), nullable=False, server_default=Role.user.value),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("credential_version", Integer, nullable=False, server_default="1"),
)

_revoked_tokens = Table(
    "revoked_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("expires_at", Integer, nullable=False, index=True),  # epoch seconds
)

_subject_watermarks = Table(
    "subject_watermarks",
    _metadata,
    Column("identifier", String(255), primary_key=True),
    Column("min_version", Integer, nullable=False),
    Column("horizon", Integer, nullable=False, index=True),  # epoch seconds
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a write is in flight.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _duplicate_field(exc: IntegrityError) -> str:
    # SQLite: "UNIQUE constraint failed: accounts.phone"; Postgres: "accounts_phone_key"
    return "phone" if "phone" in str(exc.orig) else "identifier"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account records plus durable revocation state.

    Usage:
        store = CredentialStore()
        store.create(Account(identifier="a@example.com", hashed_password=..., phone="010-1234-5678"))
        account = store.find("a@example.com")
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        timeout: float = 5.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.05,
    ) -> None:
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # sqlite3 busy timeout: how long a connection waits on a lock
            connect_args["timeout"] = timeout
        else:
            engine_args["pool_timeout"] = timeout
            engine_args["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._run("create_schema", lambda: _metadata.create_all(self.engine))

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialStore:
        return cls(
            db_url=settings.database_url,
            timeout=settings.store_timeout_seconds,
            max_retries=settings.store_max_retries,
            retry_base_delay=settings.store_retry_base_delay,
        )

    # ------------------------------------------------------------------
    # Bounded retry
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        """Call fn, retrying transient storage failures with exponential backoff.

        Only OperationalError (locked database, dropped connection) and pool
        timeouts are retried. Exhaustion raises StoreUnavailable; the
        original exception is chained but never shown to callers.
        """
        attempt = 0
        while True:
            try:
                return fn()
            except (OperationalError, PoolTimeoutError) as exc:
                if attempt >= self.max_retries:
                    logger.error(
                        "Credential store %s failed after %d attempt(s): %s",
                        operation,
                        attempt + 1,
                        type(exc).__name__,
                    )
                    raise StoreUnavailable() from exc
                delay = self.retry_base_delay * (2**attempt)
                logger.warning(
                    "Credential store %s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation,
                    attempt + 1,
                    self.max_retries + 1,
                    type(exc).__name__,
                    delay,
                )
                time.sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create(self, account: Account) -> Account:
        """Insert a new account and return it with id and created_at filled in.

        Raises DuplicateAccount if the identifier or phone is already taken.
        """

        def _insert() -> Account:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        identifier=account.identifier,
                        hashed_password=account.hashed_password,
                        phone=account.phone,
                        nickname=account.nickname,
                        role=Role(account.role).value,
                        created_at=_now_iso(),
                        is_active=1 if account.is_active else 0,
                        credential_version=account.credential_version,
                    )
                )
                row = conn.execute(
                    _accounts.select().where(_accounts.c.id == result.inserted_primary_key[0])
                ).fetchone()
            return _row_to_account(row)

        try:
            return self._run("create", _insert)
        except IntegrityError as exc:
            raise DuplicateAccount(_duplicate_field(exc)) from exc

    def find(self, identifier: str) -> Account:
        """Look up an account by exact identifier (case-sensitive).

        Disabled accounts are returned too; callers decide what is_active means.
        Raises AccountNotFound.
        """

        def _select():
            with self.engine.connect() as conn:
                return conn.execute(_accounts.select().where(_accounts.c.identifier == identifier)).fetchone()

        row = self._run("find", _select)
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    def exists(self, identifier: str) -> bool:
        try:
            self.find(identifier)
        except AccountNotFound:
            return False
        return True

    def update_password(self, identifier: str, new_hash: str) -> Account:
        """Replace the password hash and bump the credential version.

        Returns the updated account. Raises AccountNotFound.
        """
        return self._update(
            "update_password",
            identifier,
            hashed_password=new_hash,
            credential_version=_accounts.c.credential_version + 1,
        )

    def update_role(self, identifier: str, role: Role) -> Account:
        """Change the role and bump the credential version. Raises AccountNotFound."""
        return self._update(
            "update_role",
            identifier,
            role=Role(role).value,
            credential_version=_accounts.c.credential_version + 1,
        )

    def disable(self, identifier: str) -> Account:
        """Soft-disable an account. Rows are never deleted. Raises AccountNotFound."""
        return self._update(
            "disable",
            identifier,
            is_active=0,
            credential_version=_accounts.c.credential_version + 1,
        )

    def enable(self, identifier: str) -> Account:
        return self._update("enable", identifier, is_active=1)

    def _update(self, operation: str, identifier: str, **values) -> Account:
        values["updated_at"] = _now_iso()

        def _write():
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.update().where(_accounts.c.identifier == identifier).values(**values)
                )
                if result.rowcount == 0:
                    return None
                return conn.execute(_accounts.select().where(_accounts.c.identifier == identifier)).fetchone()

        row = self._run(operation, _write)
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by identifier. Admin-only operation."""

        def _select():
            with self.engine.connect() as conn:
                return conn.execute(_accounts.select().order_by(_accounts.c.identifier)).fetchall()

        return [_row_to_account(r) for r in self._run("list_accounts", _select)]

    def count_by_role(self, active_only: bool = False) -> dict[str, int]:
        """Return {role: count}. Every known role is present, zero if unused."""

        def _select():
            query = select(_accounts.c.role, func.count()).group_by(_accounts.c.role)
            if active_only:
                query = query.where(_accounts.c.is_active == 1)
            with self.engine.connect() as conn:
                return conn.execute(query).fetchall()

        counts = {role.value: 0 for role in Role}
        for role, count in self._run("count_by_role", _select):
            counts[role] = count
        return counts

    # ------------------------------------------------------------------
    # Revocation persistence
    # ------------------------------------------------------------------

    def save_revoked_token(self, jti: str, expires_at: int) -> None:
        """Persist a revoked jti. Inserting the same jti twice is a no-op."""

        def _insert() -> None:
            with self.engine.begin() as conn:
                exists = conn.execute(select(_revoked_tokens.c.jti).where(_revoked_tokens.c.jti == jti)).first()
                if exists is None:
                    conn.execute(_revoked_tokens.insert().values(jti=jti, expires_at=expires_at))

        try:
            self._run("save_revoked_token", _insert)
        except IntegrityError:
            # A concurrent logout of the same token committed first
            logger.debug("Revoked token already persisted")

    def load_revoked_tokens(self, now: int) -> dict[str, int]:
        """Return {jti: expires_at} for entries still in force at ``now``."""

        def _select():
            with self.engine.connect() as conn:
                return conn.execute(
                    select(_revoked_tokens.c.jti, _revoked_tokens.c.expires_at).where(
                        _revoked_tokens.c.expires_at > now
                    )
                ).fetchall()

        return {row.jti: row.expires_at for row in self._run("load_revoked_tokens", _select)}

    def delete_revoked_before(self, now: int) -> int:
        def _delete() -> int:
            with self.engine.begin() as conn:
                return conn.execute(_revoked_tokens.delete().where(_revoked_tokens.c.expires_at <= now)).rowcount

        return self._run("delete_revoked_before", _delete)

    def save_watermark(self, identifier: str, min_version: int, horizon: int) -> None:
        """Upsert a subject watermark, keeping the larger version and horizon."""

        def _upsert() -> None:
            with self.engine.begin() as conn:
                row = conn.execute(
                    _subject_watermarks.select().where(_subject_watermarks.c.identifier == identifier)
                ).fetchone()
                if row is None:
                    conn.execute(
                        _subject_watermarks.insert().values(
                            identifier=identifier, min_version=min_version, horizon=horizon
                        )
                    )
                else:
                    conn.execute(
                        _subject_watermarks.update()
                        .where(_subject_watermarks.c.identifier == identifier)
                        .values(min_version=max(row.min_version, min_version), horizon=max(row.horizon, horizon))
                    )

        self._run("save_watermark", _upsert)

    def load_watermarks(self, now: int) -> dict[str, tuple[int, int]]:
        """Return {identifier: (min_version, horizon)} for watermarks still in force."""

        def _select():
            with self.engine.connect() as conn:
                return conn.execute(
                    _subject_watermarks.select().where(_subject_watermarks.c.horizon > now)
                ).fetchall()

        return {row.identifier: (row.min_version, row.horizon) for row in self._run("load_watermarks", _select)}

    def delete_watermarks_before(self, now: int) -> int:
        def _delete() -> int:
            with self.engine.begin() as conn:
                return conn.execute(
                    _subject_watermarks.delete().where(_subject_watermarks.c.horizon <= now)
                ).rowcount

        return self._run("delete_watermarks_before", _delete)

    def ping(self) -> bool:
        """Cheap liveness probe used by the health endpoint."""

        def _select():
            with self.engine.connect() as conn:
                return conn.execute(select(1)).scalar()

        try:
            return self._run("ping", _select) == 1
        except StoreUnavailable:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        identifier=row.identifier,
        hashed_password=row.hashed_password,
        phone=row.phone,
        nickname=row.nickname,
        role=Role(row.role),
        created_at=row.created_at,
        is_active=bool(row.is_active),
        credential_version=row.credential_version,
    )
