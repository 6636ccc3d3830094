from __future__ import annotations

import base64
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from credstore import open_store
from credstore.config import StoreConfig
from credstore.database import CredentialStore
from credstore.errors import (
    AmbiguousResultError,
    CredentialStoreError,
    DuplicateNameError,
    MigrationError,
    NotFoundError,
    StoreClosedError,
    StoreConnectionError,
    StoreNotReadyError,
)
from credstore.hashing import PasswordHasher
from credstore.ledger import VersionLedger
from credstore.migrations import ColumnAddition, MigrationStep, table_columns
from credstore.models import AuthorizedUser


@pytest.fixture()
def config(tmp_path: Path) -> StoreConfig:
    return StoreConfig(directory=tmp_path / "db")


@pytest.fixture()
def store(config: StoreConfig):
    credential_store = CredentialStore(config)
    credential_store.initialize()
    yield credential_store
    credential_store.close()


def _ledger_version(path: Path) -> int:
    conn = sqlite3.connect(path)
    try:
        return VersionLedger().get_version(conn, "authorized_user")
    finally:
        conn.close()


def _columns(path: Path) -> set:
    conn = sqlite3.connect(path)
    try:
        return table_columns(conn, "authorized_user")
    finally:
        conn.close()


def _execute(path: Path, sql: str, *params: object) -> None:
    conn = sqlite3.connect(path)
    try:
        with conn:
            conn.execute(sql, params)
    finally:
        conn.close()


def _unsaved_user(name: str) -> AuthorizedUser:
    hashed = PasswordHasher().hash_new("p@ssword")
    return AuthorizedUser(
        name=name,
        password_hash=hashed.digest,
        password_salt=hashed.salt,
        hash_algorithm=hashed.algorithm,
        hash_iterations=hashed.iterations,
        email=None,
    )


def test_initialize_creates_directory_and_latest_schema(store: CredentialStore, config: StoreConfig) -> None:
    assert config.directory.is_dir()
    assert store.path.exists()
    assert store.schema_version == 2
    assert not store.degraded
    assert _ledger_version(store.path) == 2
    assert {"active", "lockedUntil", "chatLockedUntil", "lastConnection"} <= _columns(store.path)


def test_add_and_get_by_name_round_trip(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")

    user = store.get_by_name("alice")
    assert user is not None
    assert user.name == "alice"
    assert user.email == "a@x.com"
    assert user.active is True
    assert user.locked_until is None
    assert user.hash_algorithm == "sha256"
    assert user.hash_iterations == 1024
    assert store.hasher.verify("p@ss", user.hashed_password)
    assert not store.hasher.verify("p@ss!", user.hashed_password)
    assert not store.hasher.verify("wrong", user.hashed_password)


def test_password_is_never_stored_in_plaintext(store: CredentialStore) -> None:
    store.add("alice", "plain-text-secret", "a@x.com")

    conn = sqlite3.connect(store.path)
    try:
        row = conn.execute("SELECT password, salt FROM authorized_user WHERE name = 'alice'").fetchone()
    finally:
        conn.close()
    assert "plain-text-secret" not in row[0]
    assert row[1]


def test_duplicate_name_is_rejected(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")

    with pytest.raises(DuplicateNameError) as excinfo:
        store.add("alice", "other", "other@x.com")

    assert isinstance(excinfo.value, ValueError)
    assert store.get_by_name("alice").email == "a@x.com"


def test_names_are_case_sensitive(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")
    store.add("Alice", "p@ss", "b@x.com")

    assert store.get_by_name("alice").email == "a@x.com"
    assert store.get_by_name("Alice").email == "b@x.com"
    assert store.get_by_name("ALICE") is None


def test_same_password_gets_distinct_salts(store: CredentialStore) -> None:
    first = store.add("alice", "shared", "a@x.com")
    second = store.add("bob", "shared", "b@x.com")

    assert first.password_salt != second.password_salt
    assert first.password_hash != second.password_hash


def test_empty_name_or_password_rejected(store: CredentialStore) -> None:
    with pytest.raises(ValueError):
        store.add("  ", "p@ss", "a@x.com")
    with pytest.raises(ValueError):
        store.add("alice", "", "a@x.com")


def test_remove_missing_user_is_a_no_op(store: CredentialStore) -> None:
    assert store.remove("bob") is False


def test_remove_existing_user(store: CredentialStore) -> None:
    store.add("bob", "p@ss", "b@x.com")

    assert store.remove("bob") is True
    assert store.get_by_name("bob") is None
    assert store.remove("bob") is False


def test_get_by_email_is_case_insensitive(store: CredentialStore) -> None:
    store.add("alice", "p@ss", " Alice@Example.com ")

    user = store.get_by_email("alice@example.com")
    assert user is not None
    assert user.name == "alice"
    assert store.get_by_email("ALICE@EXAMPLE.COM").name == "alice"
    assert store.get_by_email("nobody@example.com") is None


def test_shared_email_lookup_is_ambiguous(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "team@x.com")
    store.add("bob", "p@ss", "team@x.com")
    store.add("carol", "p@ss", "team@x.com")

    with pytest.raises(AmbiguousResultError) as excinfo:
        store.get_by_email("team@x.com")

    assert excinfo.value.column == "email"
    assert excinfo.value.count == 3


def test_mixed_case_email_written_outside_the_store_is_found(store: CredentialStore) -> None:
    store.add("bob", "p@ss", "bob@x.com")
    _execute(store.path, "UPDATE authorized_user SET email = ? WHERE name = ?", "Bob@X.com", "bob")

    assert store.get_by_email("Bob@X.com").name == "bob"
    assert store.get_by_email("bob@x.com").name == "bob"

    store.add("robert", "p@ss", "BOB@x.com")
    with pytest.raises(AmbiguousResultError) as excinfo:
        store.get_by_email("bob@X.com")
    assert excinfo.value.count == 2


def test_adopted_legacy_table_keeps_email_lookups(config: StoreConfig) -> None:
    config.directory.mkdir(parents=True)
    legacy = _unsaved_user("carol")
    conn = sqlite3.connect(config.database_path)
    try:
        with conn:
            conn.execute(
                """
                CREATE TABLE authorized_user (
                    name TEXT PRIMARY KEY NOT NULL,
                    password TEXT NOT NULL,
                    salt TEXT NOT NULL,
                    hashAlgorithm TEXT NOT NULL,
                    hashIterations INTEGER NOT NULL,
                    email TEXT
                )
                """
            )
            conn.execute(
                "INSERT INTO authorized_user VALUES (?, ?, ?, ?, ?, ?)",
                (
                    "carol",
                    base64.b64encode(legacy.password_hash).decode("ascii"),
                    base64.b64encode(legacy.password_salt).decode("ascii"),
                    legacy.hash_algorithm,
                    legacy.hash_iterations,
                    "Carol.Smith@Example.COM",
                ),
            )
    finally:
        conn.close()

    with CredentialStore(config) as adopted:
        assert adopted.schema_version == 2
        carol = adopted.get_by_email("Carol.Smith@Example.COM")
        assert carol is not None
        assert carol.email == "Carol.Smith@Example.COM"
        assert adopted.get_by_email("carol.smith@example.com") == carol
        assert adopted.verify_credentials("carol", "p@ssword") == carol


def test_corrupt_password_material_is_not_reported_as_unavailable(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")
    _execute(store.path, "UPDATE authorized_user SET salt = '!!not base64!!' WHERE name = 'alice'")

    with pytest.raises(CredentialStoreError) as excinfo:
        store.get_by_name("alice")

    assert not isinstance(excinfo.value, StoreConnectionError)


def test_open_store_resolves_configuration_and_initializes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("CREDSTORE_CONFIG", raising=False)
    monkeypatch.delenv("CREDSTORE_DB_DIR", raising=False)

    opened = open_store(directory=str(tmp_path / "opened"))
    try:
        assert opened.is_ready
        assert opened.path == (tmp_path / "opened").resolve() / "authorized_users.sqlite3"
        opened.add("alice", "p@ss", "a@x.com")
        assert opened.get_by_name("alice") is not None
    finally:
        opened.close()


def test_get_by_email_requires_value(store: CredentialStore) -> None:
    with pytest.raises(ValueError):
        store.get_by_email("   ")


def test_update_replaces_every_field(store: CredentialStore) -> None:
    user = store.add("alice", "p@ss", "a@x.com")
    locked = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    chat_locked = locked + timedelta(hours=1)
    seen = locked - timedelta(days=3)

    updated = store.update(
        replace(
            user,
            email="new@x.com",
            active=False,
            locked_until=locked,
            chat_locked_until=chat_locked,
            last_connection=seen,
        )
    )

    assert updated.email == "new@x.com"
    assert updated.active is False
    assert updated.locked_until == locked
    assert updated.chat_locked_until == chat_locked
    assert updated.last_connection == seen
    assert store.get_by_name("alice") == updated
    assert store.hasher.verify("p@ss", updated.hashed_password)


def test_update_with_rehashed_password(store: CredentialStore) -> None:
    user = store.add("alice", "old-pass", "a@x.com")

    updated = store.update(user.with_password(store.hasher.hash_new("new-pass")))

    assert store.verify_credentials("alice", "new-pass") == updated
    assert store.verify_credentials("alice", "old-pass") is None


def test_update_missing_user_raises(store: CredentialStore) -> None:
    with pytest.raises(NotFoundError):
        store.update(_unsaved_user("ghost"))
    assert store.get_by_name("ghost") is None


def test_set_password_uses_fresh_salt(store: CredentialStore) -> None:
    before = store.add("alice", "old-pass", "a@x.com")

    after = store.set_password("alice", "new-pass")

    assert after.password_salt != before.password_salt
    assert store.verify_credentials("alice", "new-pass") is not None
    assert store.verify_credentials("alice", "old-pass") is None


def test_set_password_for_missing_user(store: CredentialStore) -> None:
    with pytest.raises(NotFoundError):
        store.set_password("ghost", "whatever")


def test_verify_credentials_for_unknown_user(store: CredentialStore) -> None:
    assert store.verify_credentials("ghost", "p@ss") is None


def test_record_connection(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")
    when = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)

    user = store.record_connection("alice", when)

    assert user.last_connection == when
    with pytest.raises(NotFoundError):
        store.record_connection("ghost")


def test_records_survive_reopening(config: StoreConfig) -> None:
    with CredentialStore(config) as first:
        first.add("alice", "p@ss", "a@x.com")

    with CredentialStore(config) as second:
        assert second.schema_version == 2
        assert second.verify_credentials("alice", "p@ss") is not None


def test_operations_before_initialize_are_refused(config: StoreConfig) -> None:
    credential_store = CredentialStore(config)

    with pytest.raises(StoreNotReadyError):
        credential_store.get_by_name("alice")
    with pytest.raises(StoreNotReadyError):
        credential_store.add("alice", "p@ss", "a@x.com")
    with pytest.raises(StoreNotReadyError):
        credential_store.update(_unsaved_user("alice"))
    with pytest.raises(StoreNotReadyError):
        credential_store.record_connection("alice")
    with pytest.raises(StoreNotReadyError):
        credential_store.set_password("alice", "p@ssword")
    assert isinstance(StoreNotReadyError("x"), StoreConnectionError)


def test_close_is_idempotent_and_blocks_further_use(config: StoreConfig) -> None:
    credential_store = CredentialStore(config)
    credential_store.initialize()

    credential_store.close()
    credential_store.close()

    with pytest.raises(StoreClosedError):
        credential_store.get_by_name("alice")
    with pytest.raises(StoreClosedError):
        credential_store.initialize()


def test_initialize_twice_is_a_no_op(store: CredentialStore) -> None:
    store.add("alice", "p@ss", "a@x.com")
    store.initialize()
    assert store.get_by_name("alice") is not None


def test_unusable_directory_raises_connection_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    credential_store = CredentialStore(StoreConfig(directory=blocker / "db"))

    with pytest.raises(StoreConnectionError):
        credential_store.initialize()
    assert not credential_store.is_ready


def test_upgrade_from_version_one_keeps_existing_users(config: StoreConfig) -> None:
    with CredentialStore(config, migrations=()) as legacy:
        assert legacy.schema_version == 1
        legacy.add("bob", "hunter2", "b@x.com")

    assert _ledger_version(config.database_path) == 1

    with CredentialStore(config) as upgraded:
        assert upgraded.schema_version == 2
        bob = upgraded.get_by_name("bob")
        assert bob is not None
        assert bob.active is True
        assert bob.last_connection is None
        assert upgraded.verify_credentials("bob", "hunter2") is not None

    assert _ledger_version(config.database_path) == 2


def test_failed_migration_leaves_store_usable_in_degraded_mode(config: StoreConfig) -> None:
    with CredentialStore(config, migrations=()) as legacy:
        legacy.add("bob", "hunter2", "b@x.com")

    broken = MigrationStep(
        version=2,
        description="second statement fails",
        table="authorized_user",
        columns=(
            ColumnAddition("active", "BOOLEAN", default="true"),
            ColumnAddition("broken", "INTEGER", nullable=False),
        ),
    )
    degraded = CredentialStore(config, migrations=[broken])
    with pytest.raises(MigrationError) as excinfo:
        degraded.initialize()

    try:
        assert excinfo.value.current_version == 1
        assert degraded.degraded
        assert degraded.is_ready
        assert degraded.schema_version == 1
        assert _ledger_version(config.database_path) == 1
        assert "active" not in _columns(config.database_path)

        bob = degraded.get_by_name("bob")
        assert bob is not None and bob.active is True
        degraded.add("carol", "p@ss", "c@x.com")
        assert degraded.verify_credentials("carol", "p@ss") is not None
        with pytest.raises(MigrationError):
            degraded.record_connection("bob")
    finally:
        degraded.close()


def test_concurrent_adds_of_distinct_users(store: CredentialStore) -> None:
    errors: List[BaseException] = []

    def _worker(index: int) -> None:
        try:
            for offset in range(5):
                store.add(f"user-{index}-{offset}", "p@ss", f"u{index}{offset}@x.com")
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    for index in range(8):
        for offset in range(5):
            assert store.get_by_name(f"user-{index}-{offset}") is not None


def test_concurrent_adds_of_same_name_allow_exactly_one(store: CredentialStore) -> None:
    outcomes: List[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def _worker() -> None:
        barrier.wait()
        try:
            store.add("alice", "p@ss", "a@x.com")
            result = "ok"
        except DuplicateNameError:
            result = "duplicate"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["duplicate"] * 5 + ["ok"]
