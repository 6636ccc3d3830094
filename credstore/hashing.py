"""Salted, iterated password hashing."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Callable, Dict

from passlib.crypto.digest import pbkdf2_hmac

from .models import HashedPassword

DEFAULT_ALGORITHM = "sha256"
DEFAULT_ITERATIONS = 1024
DEFAULT_SALT_BYTES = 16


class SecureRandom:
    """Source of salt bytes backed by the operating system CSPRNG."""

    def next_bytes(self, size: int = DEFAULT_SALT_BYTES) -> bytes:
        if size <= 0:
            raise ValueError("Requested byte count must be positive")
        return secrets.token_bytes(size)


def _iterated_digest(name: str) -> Callable[[bytes, bytes, int], bytes]:
    # Round one digests salt || password, every later round re-digests the output.
    def _hash(secret: bytes, salt: bytes, rounds: int) -> bytes:
        digest = hashlib.new(name, salt + secret).digest()
        for _ in range(rounds - 1):
            digest = hashlib.new(name, digest).digest()
        return digest

    return _hash


def _pbkdf2(name: str) -> Callable[[bytes, bytes, int], bytes]:
    def _hash(secret: bytes, salt: bytes, rounds: int) -> bytes:
        return pbkdf2_hmac(name, secret, salt, rounds)

    return _hash


_ALGORITHMS: Dict[str, Callable[[bytes, bytes, int], bytes]] = {
    "sha256": _iterated_digest("sha256"),
    "sha384": _iterated_digest("sha384"),
    "sha512": _iterated_digest("sha512"),
    "pbkdf2-sha256": _pbkdf2("sha256"),
    "pbkdf2-sha512": _pbkdf2("sha512"),
}


def supported_algorithms() -> tuple[str, ...]:
    return tuple(sorted(_ALGORITHMS))


def _resolve_algorithm(algorithm: str) -> Callable[[bytes, bytes, int], bytes]:
    try:
        return _ALGORITHMS[algorithm.lower()]
    except KeyError as exc:
        raise ValueError(
            f"Unsupported hash algorithm {algorithm!r}; expected one of {', '.join(supported_algorithms())}"
        ) from exc


class PasswordHasher:
    """Hash and verify passwords with a fixed algorithm and round count."""

    def __init__(
        self,
        algorithm: str = DEFAULT_ALGORITHM,
        iterations: int = DEFAULT_ITERATIONS,
        *,
        salt_bytes: int = DEFAULT_SALT_BYTES,
        random: SecureRandom | None = None,
    ) -> None:
        _resolve_algorithm(algorithm)
        if iterations <= 0:
            raise ValueError("Hash iterations must be positive")
        if salt_bytes <= 0:
            raise ValueError("Salt size must be positive")
        self._algorithm = algorithm.lower()
        self._iterations = iterations
        self._salt_bytes = salt_bytes
        self._random = random or SecureRandom()

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def iterations(self) -> int:
        return self._iterations

    def hash(self, password: str, salt: bytes) -> bytes:
        """Return the digest of ``password`` under ``salt`` using this hasher's settings."""

        return self._digest(password, salt, self._algorithm, self._iterations)

    def hash_new(self, password: str) -> HashedPassword:
        """Hash ``password`` with a freshly generated salt."""

        if not password:
            raise ValueError("Password must not be empty")
        salt = self._random.next_bytes(self._salt_bytes)
        return HashedPassword(
            digest=self.hash(password, salt),
            salt=salt,
            algorithm=self._algorithm,
            iterations=self._iterations,
        )

    def verify(self, password: str, hashed: HashedPassword) -> bool:
        """Return ``True`` when ``password`` reproduces the stored digest.

        The algorithm and round count recorded with the hash are used, not the
        hasher's current defaults, so older records remain verifiable.
        """

        try:
            calculated = self._digest(password, hashed.salt, hashed.algorithm, hashed.iterations)
        except ValueError:
            return False
        return hmac.compare_digest(hashed.digest, calculated)

    @staticmethod
    def _digest(password: str, salt: bytes, algorithm: str, iterations: int) -> bytes:
        if iterations <= 0:
            raise ValueError("Hash iterations must be positive")
        return _resolve_algorithm(algorithm)(password.encode("utf-8"), salt, iterations)


__all__ = [
    "DEFAULT_ALGORITHM",
    "DEFAULT_ITERATIONS",
    "DEFAULT_SALT_BYTES",
    "PasswordHasher",
    "SecureRandom",
    "supported_algorithms",
]
