"""Forward-only schema migrations for the credential store.

Each migration is described as data (the version it produces and the columns
it adds) and rendered to ``ALTER TABLE`` statements when applied. A step and
the ledger update recording it commit together or not at all.
"""
from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import MigrationError
from .ledger import VersionLedger

logger = logging.getLogger("credstore.migrations")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SQL_TYPE = re.compile(r"^[A-Z]+( ?\(\d+(, ?\d+)?\))?$")
_LITERAL = re.compile(r"^(true|false|null|-?\d+(\.\d+)?|'[^']*')$", re.IGNORECASE)


@dataclass(frozen=True)
class ColumnAddition:
    """A single column added by a migration step."""

    name: str
    sql_type: str
    default: Optional[str] = None
    nullable: bool = True

    def __post_init__(self) -> None:
        if not _IDENTIFIER.match(self.name):
            raise ValueError(f"Invalid column name {self.name!r}")
        if not _SQL_TYPE.match(self.sql_type):
            raise ValueError(f"Invalid SQL type {self.sql_type!r} for column {self.name}")
        if self.default is not None and not _LITERAL.match(self.default):
            raise ValueError(f"Column {self.name} default must be a constant literal, got {self.default!r}")

    def to_sql(self, table: str) -> str:
        clause = f"ALTER TABLE {table} ADD COLUMN {self.name} {self.sql_type}"
        if not self.nullable:
            clause += " NOT NULL"
        if self.default is not None:
            clause += f" DEFAULT {self.default}"
        return clause


@dataclass(frozen=True)
class MigrationStep:
    """Schema change that moves ``table`` to ``version``."""

    version: int
    description: str
    table: str
    columns: Tuple[ColumnAddition, ...]

    def __post_init__(self) -> None:
        if not _IDENTIFIER.match(self.table):
            raise ValueError(f"Invalid table name {self.table!r}")
        if not self.columns:
            raise ValueError(f"Migration to version {self.version} adds no columns")
        names = [column.name.lower() for column in self.columns]
        if len(set(names)) != len(names):
            raise ValueError(f"Migration to version {self.version} adds the same column twice")

    def statements(self) -> List[str]:
        return [column.to_sql(self.table) for column in self.columns]


AUTHORIZED_USER_ENTITY = "authorized_user"
AUTHORIZED_USER_TABLE = "authorized_user"
BASELINE_VERSION = 1

AUTHORIZED_USER_MIGRATIONS: Tuple[MigrationStep, ...] = (
    MigrationStep(
        version=2,
        description="Add account state and lock columns",
        table=AUTHORIZED_USER_TABLE,
        columns=(
            ColumnAddition("active", "BOOLEAN", default="true"),
            ColumnAddition("lockedUntil", "DATETIME"),
            ColumnAddition("chatLockedUntil", "DATETIME"),
            ColumnAddition("lastConnection", "DATETIME"),
        ),
    ),
)


def table_columns(conn: sqlite3.Connection, table: str) -> Set[str]:
    return {str(row[1]) for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def run_in_transaction(conn: sqlite3.Connection, work: Callable[[], None]) -> None:
    """Run ``work`` inside ``BEGIN IMMEDIATE`` on an autocommit connection."""

    conn.execute("BEGIN IMMEDIATE")
    try:
        work()
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


class MigrationEngine:
    """Walks the stored schema version of one entity up to the latest step.

    The connection handed to :meth:`migrate` must be in autocommit mode
    (``isolation_level=None``); the engine issues its own ``BEGIN``/``COMMIT``.
    """

    def __init__(
        self,
        entity: str,
        table: str,
        steps: Iterable[MigrationStep],
        *,
        baseline_version: int = BASELINE_VERSION,
        ledger: Optional[VersionLedger] = None,
    ) -> None:
        self._entity = entity
        self._table = table
        self._baseline = baseline_version
        self._steps: Tuple[MigrationStep, ...] = tuple(sorted(steps, key=lambda step: step.version))
        self._ledger = ledger or VersionLedger()
        self._validate_chain()

    @property
    def entity(self) -> str:
        return self._entity

    @property
    def baseline_version(self) -> int:
        return self._baseline

    @property
    def latest_version(self) -> int:
        if not self._steps:
            return self._baseline
        return self._steps[-1].version

    @property
    def steps(self) -> Sequence[MigrationStep]:
        return self._steps

    def _validate_chain(self) -> None:
        if self._baseline < 1:
            raise ValueError("Baseline schema version must be at least 1")
        expected = self._baseline + 1
        for step in self._steps:
            if step.version != expected:
                raise ValueError(
                    f"Migration chain for {self._entity} is not contiguous: expected version {expected}, "
                    f"found {step.version}"
                )
            if step.table != self._table:
                raise ValueError(f"Migration to version {step.version} targets {step.table}, not {self._table}")
            expected += 1

    def current_version(self, conn: sqlite3.Connection) -> int:
        self._ledger.ensure_table(conn)
        return self._ledger.get_version(conn, self._entity)

    def migrate(self, conn: sqlite3.Connection) -> int:
        """Apply every pending step and return the resulting schema version."""

        current = self.current_version(conn)
        if current == 0:
            current = self._adopt_unversioned(conn)

        latest = self.latest_version
        if current > latest:
            raise MigrationError(
                f"Database schema version {current} for {self._entity} is newer than supported {latest}. "
                "Update the application.",
                entity=self._entity,
                current_version=current,
                target_version=latest,
            )
        if current < self._baseline:
            raise MigrationError(
                f"Unknown schema version {current} recorded for {self._entity}",
                entity=self._entity,
                current_version=current,
                target_version=latest,
            )

        for step in self._steps:
            if step.version <= current:
                continue
            self._apply(conn, step, current)
            current = step.version
        return current

    def _adopt_unversioned(self, conn: sqlite3.Connection) -> int:
        """Record a version for a table that exists but was never stamped."""

        columns = {name.lower() for name in table_columns(conn, self._table)}
        if not columns:
            raise MigrationError(
                f"Table {self._table} does not exist; cannot determine its schema version",
                entity=self._entity,
                current_version=0,
                target_version=self.latest_version,
            )

        version = self._baseline
        for step in self._steps:
            if not all(column.name.lower() in columns for column in step.columns):
                break
            version = step.version

        logger.warning(
            "No schema version recorded for %s; inferred version %s from existing columns",
            self._entity,
            version,
        )
        run_in_transaction(conn, lambda: self._ledger.set_version(conn, self._entity, version))
        return version

    def _apply(self, conn: sqlite3.Connection, step: MigrationStep, current: int) -> None:
        logger.info(
            "Starting %s DB migration from version %s to version %s (%s)",
            self._entity,
            current,
            step.version,
            step.description,
        )

        def _run() -> None:
            for statement in step.statements():
                conn.execute(statement)
            self._ledger.set_version(conn, self._entity, step.version)

        try:
            run_in_transaction(conn, _run)
        except sqlite3.Error as exc:
            logger.error(
                "Error while migrating %s from version %s to version %s: %s",
                self._entity,
                current,
                step.version,
                exc,
            )
            raise MigrationError(
                f"Migration of {self._entity} from version {current} to {step.version} failed: {exc}",
                entity=self._entity,
                current_version=current,
                target_version=step.version,
            ) from exc
        logger.info("Migration of %s to version %s finished", self._entity, step.version)


def authorized_user_engine(
    steps: Optional[Iterable[MigrationStep]] = None,
    *,
    ledger: Optional[VersionLedger] = None,
) -> MigrationEngine:
    """Return the engine for the ``authorized_user`` table."""

    return MigrationEngine(
        AUTHORIZED_USER_ENTITY,
        AUTHORIZED_USER_TABLE,
        AUTHORIZED_USER_MIGRATIONS if steps is None else steps,
        ledger=ledger,
    )


__all__ = [
    "AUTHORIZED_USER_ENTITY",
    "AUTHORIZED_USER_MIGRATIONS",
    "AUTHORIZED_USER_TABLE",
    "BASELINE_VERSION",
    "ColumnAddition",
    "MigrationEngine",
    "MigrationStep",
    "authorized_user_engine",
    "run_in_transaction",
    "table_columns",
]
