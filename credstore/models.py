"""Domain models for the authorized-user credential store."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class HashedPassword:
    """A password digest together with everything needed to recompute it."""

    digest: bytes
    salt: bytes
    algorithm: str
    iterations: int


@dataclass(frozen=True)
class AuthorizedUser:
    """Represents one row of the ``authorized_user`` table."""

    name: str
    password_hash: bytes
    password_salt: bytes
    hash_algorithm: str
    hash_iterations: int
    email: Optional[str]
    active: bool = True
    locked_until: Optional[datetime] = None
    chat_locked_until: Optional[datetime] = None
    last_connection: Optional[datetime] = None

    @property
    def hashed_password(self) -> HashedPassword:
        return HashedPassword(
            digest=self.password_hash,
            salt=self.password_salt,
            algorithm=self.hash_algorithm,
            iterations=self.hash_iterations,
        )

    def with_password(self, hashed: HashedPassword) -> "AuthorizedUser":
        """Return a copy carrying a freshly hashed password."""

        return replace(
            self,
            password_hash=hashed.digest,
            password_salt=hashed.salt,
            hash_algorithm=hashed.algorithm,
            hash_iterations=hashed.iterations,
        )


__all__ = ["AuthorizedUser", "HashedPassword"]
