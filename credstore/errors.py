"""Exceptions raised by the credential store."""
from __future__ import annotations

from typing import Optional


class CredentialStoreError(RuntimeError):
    """Base class for every failure surfaced by :mod:`credstore`."""


class StoreConnectionError(CredentialStoreError):
    """The backing database could not be opened or queried.

    Callers should treat this as "credentials store unavailable" and may retry.
    """


class StoreNotReadyError(StoreConnectionError):
    """Raised when an operation is attempted before ``initialize()`` finished."""


class StoreClosedError(StoreConnectionError):
    """Raised when an operation is attempted after ``close()``."""


class DuplicateNameError(CredentialStoreError, ValueError):
    """An authorized user with the requested name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"An authorized user named {name!r} already exists")
        self.name = name


class NotFoundError(CredentialStoreError, LookupError):
    """A mutation targeted a user that does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No authorized user named {name!r}")
        self.name = name


class AmbiguousResultError(CredentialStoreError):
    """A lookup that must match at most one row matched several."""

    def __init__(self, column: str, value: str, count: int) -> None:
        super().__init__(f"{count} authorized users match {column}={value!r}; expected at most one")
        self.column = column
        self.value = value
        self.count = count


class MigrationError(CredentialStoreError):
    """A schema migration step failed or the stored schema is unusable.

    ``current_version`` is the last version known to be fully applied.
    """

    def __init__(
        self,
        message: str,
        *,
        entity: str,
        current_version: int,
        target_version: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.current_version = current_version
        self.target_version = target_version


__all__ = [
    "AmbiguousResultError",
    "CredentialStoreError",
    "DuplicateNameError",
    "MigrationError",
    "NotFoundError",
    "StoreClosedError",
    "StoreConnectionError",
    "StoreNotReadyError",
]
