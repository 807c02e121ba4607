#!/usr/bin/env python3
"""
RoleGate -- operator CLI for the credential store.

POST /signup only ever creates ``user`` accounts, so the first admin has to
be bootstrapped from here.

Usage:
  python main.py create-admin root@example.com --phone 010-0000-0000
  echo "s3cret-pass" | python main.py create-admin root@example.com --phone 010-0000-0000 --password-stdin
  python main.py set-role alice@example.com admin
  python main.py disable alice@example.com
  python main.py enable alice@example.com
  python main.py sweep

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: ./rolegate.db)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py for the rest.

Revocations written here (set-role, disable) are persisted; a running API
merges them into its registry every REVOCATION_REFRESH_SECONDS.
"""

import argparse
import getpass
import sys
import time

from auth.errors import AuthError
from auth.gate import AuthenticationGate
from auth.models import Account, Role
from auth.revocation import RevocationRegistry
from auth.store import CredentialStore
from auth.throttle import FailedAttemptThrottle
from auth.tokens import TokenCodec, hash_password
from auth.validation import SignupValidator
from core.config import get_settings


def _read_password(from_stdin: bool) -> str:
    """Read a password from stdin (one line) or prompt twice on the terminal."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\r\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _build_gate(store: CredentialStore) -> AuthenticationGate:
    settings = get_settings()
    registry = RevocationRegistry(backend=store)
    registry.load()
    return AuthenticationGate(
        store=store,
        codec=TokenCodec.from_settings(settings),
        registry=registry,
        throttle=FailedAttemptThrottle(settings.login_max_failures, settings.login_window_seconds),
        validator=SignupValidator(settings.password_min_length),
    )


def create_admin(store: CredentialStore, identifier: str, phone: str, password: str, nickname=None) -> Account:
    """Validate and insert an ``admin`` account directly."""
    validator = SignupValidator(get_settings().password_min_length)
    normalized_phone = validator.validate(password, phone)
    return store.create(
        Account(
            identifier=identifier,
            hashed_password=hash_password(password),
            phone=normalized_phone,
            nickname=nickname,
            role=Role.admin,
        )
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="rolegate",
        description="Manage RoleGate accounts from the command line.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_admin = sub.add_parser("create-admin", help="Create an admin account")
    p_admin.add_argument("identifier", help="Login identifier for the new admin")
    p_admin.add_argument("--phone", required=True, help="Phone number, e.g. 010-1234-5678")
    p_admin.add_argument("--nickname", default=None, help="Optional display name")
    p_admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )

    p_role = sub.add_parser("set-role", help="Change an account's role and revoke its tokens")
    p_role.add_argument("identifier")
    p_role.add_argument("role", choices=[r.value for r in Role])

    p_disable = sub.add_parser("disable", help="Disable an account and revoke its tokens")
    p_disable.add_argument("identifier")

    p_enable = sub.add_parser("enable", help="Re-enable a disabled account")
    p_enable.add_argument("identifier")

    sub.add_parser("sweep", help="Delete revocation entries past their expiry")

    args = parser.parse_args(argv)

    store = CredentialStore.from_settings(get_settings())
    try:
        if args.command == "create-admin":
            password = _read_password(args.password_stdin)
            account = create_admin(store, args.identifier, args.phone, password, args.nickname)
            print(f"  Created admin '{account.identifier}'.")
        elif args.command == "set-role":
            account = _build_gate(store).change_role(args.identifier, Role(args.role))
            print(f"  '{account.identifier}' is now {account.role.value}; outstanding tokens revoked.")
        elif args.command == "disable":
            account = _build_gate(store).disable(args.identifier)
            print(f"  '{account.identifier}' disabled; outstanding tokens revoked.")
        elif args.command == "enable":
            account = _build_gate(store).enable(args.identifier)
            print(f"  '{account.identifier}' enabled.")
        elif args.command == "sweep":
            now = int(time.time())
            removed = store.delete_revoked_before(now) + store.delete_watermarks_before(now)
            print(f"  Removed {removed} expired revocation entr{'y' if removed == 1 else 'ies'}.")
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
