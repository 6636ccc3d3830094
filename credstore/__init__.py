"""Persistent store of authorized-user credentials."""

from __future__ import annotations

from .config import StoreConfig, load_store_config, resolve_store_config
from .database import CredentialStore
from .errors import (
    AmbiguousResultError,
    CredentialStoreError,
    DuplicateNameError,
    MigrationError,
    NotFoundError,
    StoreClosedError,
    StoreConnectionError,
    StoreNotReadyError,
)
from .hashing import PasswordHasher, SecureRandom
from .ledger import VersionLedger
from .migrations import AUTHORIZED_USER_MIGRATIONS, ColumnAddition, MigrationEngine, MigrationStep
from .models import AuthorizedUser, HashedPassword


def open_store(config_path: str | None = None, directory: str | None = None) -> CredentialStore:
    """Build a store from the effective configuration and initialise it."""

    store = CredentialStore(resolve_store_config(config_path, directory))
    store.initialize()
    return store


__all__ = [
    "AUTHORIZED_USER_MIGRATIONS",
    "AmbiguousResultError",
    "AuthorizedUser",
    "ColumnAddition",
    "CredentialStore",
    "CredentialStoreError",
    "DuplicateNameError",
    "HashedPassword",
    "MigrationEngine",
    "MigrationError",
    "MigrationStep",
    "NotFoundError",
    "PasswordHasher",
    "SecureRandom",
    "StoreClosedError",
    "StoreConfig",
    "StoreConnectionError",
    "StoreNotReadyError",
    "VersionLedger",
    "load_store_config",
    "open_store",
    "resolve_store_config",
]
