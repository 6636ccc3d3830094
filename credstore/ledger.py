"""Per-entity schema version bookkeeping stored alongside the data."""
from __future__ import annotations

import sqlite3

from .errors import MigrationError

LEDGER_TABLE = "db_version"


class VersionLedger:
    """Reads and writes ``entity -> version`` rows in the ``db_version`` table.

    Every method runs on the connection it is given so that a version bump can
    share a transaction with the schema change it records.
    """

    def __init__(self, table: str = LEDGER_TABLE) -> None:
        self._table = table

    def ensure_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                entity TEXT PRIMARY KEY,
                version INTEGER NOT NULL
            )
            """
        )

    def get_version(self, conn: sqlite3.Connection, entity: str) -> int:
        row = conn.execute(
            f"SELECT version FROM {self._table} WHERE entity = ?",
            (entity,),
        ).fetchone()
        if row is None:
            return 0
        return int(row[0])

    def set_version(self, conn: sqlite3.Connection, entity: str, version: int) -> None:
        current = self.get_version(conn, entity)
        if version < current:
            raise MigrationError(
                f"Refusing to move {entity} schema version back from {current} to {version}",
                entity=entity,
                current_version=current,
                target_version=version,
            )
        conn.execute(
            f"""
            INSERT INTO {self._table} (entity, version) VALUES (?, ?)
            ON CONFLICT(entity) DO UPDATE SET version = excluded.version
            """,
            (entity, version),
        )


__all__ = ["LEDGER_TABLE", "VersionLedger"]
