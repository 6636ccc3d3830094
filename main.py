"""Command-line interface for the authorized-user credential store."""

from __future__ import annotations

import argparse
import logging
import sys
from getpass import getpass
from typing import Callable, Dict, Optional, Sequence

from credstore import (
    AuthorizedUser,
    CredentialStore,
    CredentialStoreError,
    MigrationError,
    NotFoundError,
    StoreConnectionError,
    resolve_store_config,
)

logger = logging.getLogger("credstore.main")

EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_UNAVAILABLE = 2
EXIT_MIGRATION_FAILED = 3


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authorized-user credential store utilities")
    parser.add_argument(
        "--db-dir",
        dest="db_dir",
        default=None,
        help="Directory holding the SQLite database (defaults to CREDSTORE_DB_DIR or the project db/ directory)",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="YAML configuration file (defaults to CREDSTORE_CONFIG)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database and apply pending migrations")
    subparsers.add_parser("schema-version", help="Print the stored and latest schema versions")

    add_parser = subparsers.add_parser("add-user", help="Register a new authorized user")
    add_parser.add_argument("name", help="Unique, case-sensitive user name")
    add_parser.add_argument("email", help="Contact email address")

    remove_parser = subparsers.add_parser("remove-user", help="Delete an authorized user")
    remove_parser.add_argument("name")

    show_parser = subparsers.add_parser("show-user", help="Display a stored user")
    lookup = show_parser.add_mutually_exclusive_group(required=True)
    lookup.add_argument("--name", default=None)
    lookup.add_argument("--email", default=None)

    password_parser = subparsers.add_parser("set-password", help="Replace a user's password")
    password_parser.add_argument("name")

    check_parser = subparsers.add_parser("check-password", help="Verify a password against the stored hash")
    check_parser.add_argument("name")

    return parser.parse_args(list(argv) if argv is not None else None)


def _prompt_for_password(min_length: int) -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {min_length} characters): ")
        if len(password) < min_length:
            print("Password is too short. Please try again.", file=sys.stderr)
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.", file=sys.stderr)
            continue
        return password
    return None


def _format_timestamp(value) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def _print_user(user: AuthorizedUser) -> None:
    print(f"Name:              {user.name}")
    print(f"Email:             {user.email or '<no email>'}")
    print(f"Active:            {'yes' if user.active else 'no'}")
    print(f"Hash:              {user.hash_algorithm} x{user.hash_iterations}")
    print(f"Locked until:      {_format_timestamp(user.locked_until)}")
    print(f"Chat locked until: {_format_timestamp(user.chat_locked_until)}")
    print(f"Last connection:   {_format_timestamp(user.last_connection)}")


def _init_db(store: CredentialStore, args: argparse.Namespace) -> int:
    if store.degraded:
        return EXIT_MIGRATION_FAILED
    print(f"Database initialisation complete ({store.path}, schema version {store.schema_version}).")
    return EXIT_OK


def _schema_version(store: CredentialStore, args: argparse.Namespace) -> int:
    print(f"Stored schema version: {store.schema_version}")
    print(f"Latest schema version: {store.latest_schema_version}")
    return EXIT_MIGRATION_FAILED if store.degraded else EXIT_OK


def _add_user(store: CredentialStore, args: argparse.Namespace) -> int:
    password = _prompt_for_password(store.config.min_password_length)
    if password is None:
        print("Failed to set password after three attempts.", file=sys.stderr)
        return EXIT_USER_ERROR

    try:
        user = store.add(args.name, password, args.email)
    except ValueError as exc:  # duplicates, empty names
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USER_ERROR

    print(f"Created authorized user {user.name} <{user.email or 'no email set'}>")
    return EXIT_OK


def _remove_user(store: CredentialStore, args: argparse.Namespace) -> int:
    if store.remove(args.name):
        print(f"Removed authorized user {args.name}.")
    else:
        print(f"No authorized user named {args.name}; nothing to remove.")
    return EXIT_OK


def _show_user(store: CredentialStore, args: argparse.Namespace) -> int:
    if args.name is not None:
        user = store.get_by_name(args.name)
    else:
        user = store.get_by_email(args.email)

    if user is None:
        print("No matching authorized user.", file=sys.stderr)
        return EXIT_USER_ERROR
    _print_user(user)
    return EXIT_OK


def _set_password(store: CredentialStore, args: argparse.Namespace) -> int:
    if store.get_by_name(args.name) is None:
        print(f"Error: no authorized user named {args.name!r}", file=sys.stderr)
        return EXIT_USER_ERROR

    password = _prompt_for_password(store.config.min_password_length)
    if password is None:
        print("Failed to set password after three attempts.", file=sys.stderr)
        return EXIT_USER_ERROR

    store.set_password(args.name, password)
    print(f"Password updated for {args.name}.")
    return EXIT_OK


def _check_password(store: CredentialStore, args: argparse.Namespace) -> int:
    password = getpass("Password: ")
    if store.verify_credentials(args.name, password) is None:
        print("Password does not match.")
        return EXIT_USER_ERROR
    print("Password matches.")
    return EXIT_OK


_COMMANDS: Dict[str, Callable[[CredentialStore, argparse.Namespace], int]] = {
    "init-db": _init_db,
    "schema-version": _schema_version,
    "add-user": _add_user,
    "remove-user": _remove_user,
    "show-user": _show_user,
    "set-password": _set_password,
    "check-password": _check_password,
}


def _open_store(args: argparse.Namespace) -> Optional[CredentialStore]:
    try:
        config = resolve_store_config(args.config_path, args.db_dir)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return None

    store = CredentialStore(config)
    try:
        store.initialize()
    except MigrationError as exc:
        print(f"Warning: {exc}", file=sys.stderr)
    return store


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        store = _open_store(args)
    except StoreConnectionError as exc:
        print(f"Credential store unavailable: {exc}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    if store is None:
        return EXIT_USER_ERROR

    try:
        return _COMMANDS[args.command](store, args)
    except NotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USER_ERROR
    except StoreConnectionError as exc:
        print(f"Credential store unavailable: {exc}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    except CredentialStoreError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USER_ERROR
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
