"""SQLite-backed persistence for authorized users."""
from __future__ import annotations

import base64
import binascii
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .config import StoreConfig
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
from .hashing import PasswordHasher
from .ledger import VersionLedger
from .migrations import (
    AUTHORIZED_USER_ENTITY,
    AUTHORIZED_USER_TABLE,
    MigrationStep,
    authorized_user_engine,
    run_in_transaction,
    table_columns,
)
from .models import AuthorizedUser

logger = logging.getLogger("credstore.database")

_TABLE = AUTHORIZED_USER_TABLE

# Columns in table order. Columns added by migrations are only read and
# written when present in the live schema.
_COLUMNS = (
    "name",
    "password",
    "salt",
    "hashAlgorithm",
    "hashIterations",
    "email",
    "active",
    "lockedUntil",
    "chatLockedUntil",
    "lastConnection",
)


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.fromisoformat(str(value))


def _parse_bool(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(value: Any) -> bytes:
    try:
        return base64.b64decode(str(value), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialStoreError("Stored password material is not valid base64") from exc


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


class CredentialStore:
    """Durable store of authorized users and their password hashes.

    The store is constructed explicitly and handed to its callers. Nothing is
    accepted until :meth:`initialize` has created and migrated the schema.
    Each operation uses its own short-lived connection.
    """

    def __init__(
        self,
        config: StoreConfig,
        *,
        hasher: Optional[PasswordHasher] = None,
        migrations: Optional[Iterable[MigrationStep]] = None,
        ledger: Optional[VersionLedger] = None,
    ) -> None:
        self._config = config
        self._path = config.database_path
        self._hasher = hasher or PasswordHasher(
            config.hash_algorithm,
            config.hash_iterations,
            salt_bytes=config.salt_bytes,
        )
        self._ledger = ledger or VersionLedger()
        self._engine = authorized_user_engine(migrations, ledger=self._ledger)
        self._state_lock = threading.Lock()
        self._ready = threading.Event()
        self._initializing = False
        self._closed = False
        self._degraded = False
        self._schema_version = 0
        self._columns: Set[str] = set()

    def __enter__(self) -> "CredentialStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def hasher(self) -> PasswordHasher:
        return self._hasher

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def degraded(self) -> bool:
        """``True`` when a migration failed and the schema is below the latest version."""

        return self._degraded

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def latest_schema_version(self) -> int:
        return self._engine.latest_version

    def initialize(self) -> None:
        """Create the database, bring its schema up to date and open the store.

        If a migration step fails the store still opens, in degraded mode at
        the last good schema version, and the :class:`MigrationError` is
        re-raised so startup code can decide whether to continue.
        """

        with self._state_lock:
            if self._closed:
                raise StoreClosedError("Credential store has been closed")
            if self._ready.is_set():
                return
            self._initializing = True
            try:
                self._initialize_locked()
            finally:
                self._initializing = False

    def _initialize_locked(self) -> None:
        try:
            _ensure_directory(self._path)
        except OSError as exc:
            raise StoreConnectionError(f"Cannot create database directory {self._path.parent}: {exc}") from exc

        logger.info("Authorized users database: %s", self._path)

        conn = self._open(autocommit=True)
        try:
            conn.execute(f"PRAGMA journal_mode={self._config.journal_mode.upper()}")
            self._create_baseline(conn)
            try:
                version = self._engine.migrate(conn)
            except MigrationError as exc:
                self._schema_version = exc.current_version
                self._degraded = True
                self._columns = table_columns(conn, _TABLE)
                self._ready.set()
                logger.error(
                    "Authorized users schema stuck at version %s (latest %s); running degraded",
                    exc.current_version,
                    self._engine.latest_version,
                )
                raise
            self._schema_version = version
            self._degraded = False
            self._columns = table_columns(conn, _TABLE)
        except sqlite3.Error as exc:
            logger.error("Error creating / opening authorized users database: %s", exc)
            raise StoreConnectionError(f"Cannot initialise authorized users database: {exc}") from exc
        finally:
            conn.close()

        self._ready.set()
        logger.info("Authorized users schema at version %s", self._schema_version)

    def _create_baseline(self, conn: sqlite3.Connection) -> None:
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (_TABLE,),
        ).fetchone()
        if exists is not None:
            return

        def _create() -> None:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_TABLE} (
                    name TEXT PRIMARY KEY NOT NULL,
                    password TEXT NOT NULL,
                    salt TEXT NOT NULL,
                    hashAlgorithm TEXT NOT NULL,
                    hashIterations INTEGER NOT NULL,
                    email TEXT
                )
                """
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{_TABLE}_email ON {_TABLE}(email)")
            self._ledger.ensure_table(conn)
            self._ledger.set_version(conn, AUTHORIZED_USER_ENTITY, self._engine.baseline_version)

        run_in_transaction(conn, _create)
        logger.info("Created %s table at schema version %s", _TABLE, self._engine.baseline_version)

    def close(self) -> None:
        """Close the store. Calling it again is a no-op."""

        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            was_ready = self._ready.is_set()
            self._ready.clear()

        if not was_ready or self._config.journal_mode.lower() != "wal":
            logger.info("Authorized users database closed")
            return

        try:
            conn = self._open()
            try:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreConnectionError(f"Error closing authorized users database: {exc}") from exc
        logger.info("Authorized users database closed")

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def add(self, name: str, password: str, email: Optional[str]) -> AuthorizedUser:
        """Create a user with a freshly salted password hash."""

        self._require_ready()
        normalized_name = self._validate_name(name)
        hashed = self._hasher.hash_new(password)
        user = AuthorizedUser(
            name=normalized_name,
            password_hash=hashed.digest,
            password_salt=hashed.salt,
            hash_algorithm=hashed.algorithm,
            hash_iterations=hashed.iterations,
            email=_normalize_email(email),
        )
        values = self._row_values(user)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)

        with self._connection() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {_TABLE} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateNameError(normalized_name) from exc

        logger.info("Added authorized user %s", normalized_name)
        return user

    def remove(self, name: str) -> bool:
        """Delete the user called ``name``; returns ``False`` if there was none."""

        with self._connection() as conn:
            cursor = conn.execute(f"DELETE FROM {_TABLE} WHERE name = ?", (name,))
            removed = cursor.rowcount > 0

        if removed:
            logger.info("Removed authorized user %s", name)
        return removed

    def get_by_name(self, name: str) -> Optional[AuthorizedUser]:
        return self._fetch_unique("name", name)

    def get_by_email(self, email: str) -> Optional[AuthorizedUser]:
        """Look a user up by email address.

        Matching ignores case, so rows written with mixed-case addresses are
        found too. Email addresses are not unique in storage. When several users
        share one, :class:`AmbiguousResultError` is raised instead of picking a
        row.
        """

        normalized = _normalize_email(email)
        if normalized is None:
            raise ValueError("Email must not be empty")
        return self._fetch_unique("email", normalized, match="lower(email)")

    def update(self, user: AuthorizedUser) -> AuthorizedUser:
        """Replace every stored field of ``user``, matched by name."""

        self._require_ready()
        if not user.password_hash or not user.password_salt:
            raise ValueError("Password hash and salt must both be set")

        values = self._row_values(replace(user, email=_normalize_email(user.email)))
        name = values.pop("name")
        assignments = ", ".join(f"{column} = ?" for column in values)

        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {_TABLE} SET {assignments} WHERE name = ?",
                (*values.values(), name),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(user.name)

        refreshed = self.get_by_name(user.name)
        if refreshed is None:
            raise NotFoundError(user.name)
        return refreshed

    def set_password(self, name: str, password: str) -> AuthorizedUser:
        """Re-hash ``password`` with a new salt and store it for ``name``."""

        self._require_ready()
        hashed = self._hasher.hash_new(password)
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {_TABLE}
                   SET password = ?, salt = ?, hashAlgorithm = ?, hashIterations = ?
                 WHERE name = ?
                """,
                (
                    _encode_bytes(hashed.digest),
                    _encode_bytes(hashed.salt),
                    hashed.algorithm,
                    hashed.iterations,
                    name,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(name)

        refreshed = self.get_by_name(name)
        if refreshed is None:
            raise NotFoundError(name)
        return refreshed

    def verify_credentials(self, name: str, password: str) -> Optional[AuthorizedUser]:
        """Return the user when ``password`` matches its stored hash."""

        user = self.get_by_name(name)
        if user is None:
            return None
        if not self._hasher.verify(password, user.hashed_password):
            logger.debug("Password mismatch for authorized user %s", name)
            return None
        return user

    def record_connection(self, name: str, when: Optional[datetime] = None) -> AuthorizedUser:
        """Store ``when`` (default: now) as the user's last successful login."""

        self._require_ready()
        if "lastConnection" not in self._columns:
            raise MigrationError(
                f"Schema version {self._schema_version} has no lastConnection column",
                entity=AUTHORIZED_USER_ENTITY,
                current_version=self._schema_version,
                target_version=self._engine.latest_version,
            )
        timestamp = when or _current_timestamp()
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {_TABLE} SET lastConnection = ? WHERE name = ?",
                (_serialize_datetime(timestamp), name),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(name)

        refreshed = self.get_by_name(name)
        if refreshed is None:
            raise NotFoundError(name)
        return refreshed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _open(self, *, autocommit: bool = False) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._config.timeout,
                check_same_thread=False,
                isolation_level=None if autocommit else "IMMEDIATE",
            )
        except sqlite3.Error as exc:
            logger.error("Cannot open authorized users database %s: %s", self._path, exc)
            raise StoreConnectionError(f"Cannot open authorized users database {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def _require_ready(self) -> None:
        if self._closed:
            raise StoreClosedError("Credential store has been closed")
        if self._ready.is_set():
            return
        if self._initializing and self._ready.wait(self._config.timeout):
            return
        raise StoreNotReadyError("Credential store has not been initialised")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        self._require_ready()
        conn = self._open()
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            logger.error("Authorized users database error: %s", exc)
            raise StoreConnectionError(f"Authorized users database error: {exc}") from exc
        finally:
            conn.close()

    def _fetch_unique(self, column: str, value: str, *, match: Optional[str] = None) -> Optional[AuthorizedUser]:
        match = match or column
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_TABLE} WHERE {match} = ? LIMIT 2",
                (value,),
            ).fetchall()

        if not rows:
            return None
        if len(rows) > 1:
            with self._connection() as conn:
                count = conn.execute(
                    f"SELECT COUNT(*) FROM {_TABLE} WHERE {match} = ?",
                    (value,),
                ).fetchone()[0]
            logger.error("%s authorized users share %s=%r", count, column, value)
            raise AmbiguousResultError(column, value, int(count))
        return self._row_to_user(rows[0])

    @staticmethod
    def _validate_name(name: str) -> str:
        if not name or not name.strip():
            raise ValueError("Name must not be empty")
        return name

    def _row_values(self, user: AuthorizedUser) -> Dict[str, Any]:
        raw: Dict[str, Any] = {
            "name": user.name,
            "password": _encode_bytes(user.password_hash),
            "salt": _encode_bytes(user.password_salt),
            "hashAlgorithm": user.hash_algorithm,
            "hashIterations": int(user.hash_iterations),
            "email": user.email,
            "active": int(bool(user.active)),
            "lockedUntil": _serialize_datetime(user.locked_until),
            "chatLockedUntil": _serialize_datetime(user.chat_locked_until),
            "lastConnection": _serialize_datetime(user.last_connection),
        }
        return {column: raw[column] for column in _COLUMNS if column in self._columns}

    def _row_to_user(self, row: sqlite3.Row) -> AuthorizedUser:
        keys: List[str] = list(row.keys())

        def _get(column: str) -> Any:
            return row[column] if column in keys else None

        return AuthorizedUser(
            name=str(row["name"]),
            password_hash=_decode_bytes(row["password"]),
            password_salt=_decode_bytes(row["salt"]),
            hash_algorithm=str(row["hashAlgorithm"]),
            hash_iterations=int(row["hashIterations"]),
            email=row["email"],
            active=_parse_bool(_get("active")),
            locked_until=_parse_datetime(_get("lockedUntil")),
            chat_locked_until=_parse_datetime(_get("chatLockedUntil")),
            last_connection=_parse_datetime(_get("lastConnection")),
        )


__all__ = ["CredentialStore"]
