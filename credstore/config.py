"""Configuration management for the credential store."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

import yaml

from .hashing import DEFAULT_ALGORITHM, DEFAULT_ITERATIONS, DEFAULT_SALT_BYTES, supported_algorithms

CONFIG_ENV = "CREDSTORE_CONFIG"
DB_DIR_ENV = "CREDSTORE_DB_DIR"
DEFAULT_DB_FILENAME = "authorized_users.sqlite3"
_JOURNAL_MODES = {"delete", "truncate", "persist", "memory", "wal", "off"}


def _default_directory() -> Path:
    return (Path(__file__).resolve().parent.parent / "db").resolve(strict=False)


def _resolve_path(raw: object, base_path: Optional[Path]) -> Path:
    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


@dataclass(frozen=True)
class StoreConfig:
    """Settings for opening the credential database and hashing passwords."""

    directory: Path
    filename: str = DEFAULT_DB_FILENAME
    timeout: float = 5.0
    journal_mode: str = "wal"
    hash_algorithm: str = DEFAULT_ALGORITHM
    hash_iterations: int = DEFAULT_ITERATIONS
    salt_bytes: int = DEFAULT_SALT_BYTES
    min_password_length: int = 8

    def __post_init__(self) -> None:
        if not self.filename or Path(self.filename).name != self.filename:
            raise ValueError(f"Database filename must be a bare file name, got {self.filename!r}")
        if self.timeout < 0:
            raise ValueError("Database timeout must not be negative")
        if self.journal_mode.lower() not in _JOURNAL_MODES:
            raise ValueError(f"Unsupported SQLite journal mode {self.journal_mode!r}")
        if self.hash_algorithm.lower() not in supported_algorithms():
            raise ValueError(f"Unsupported hash algorithm {self.hash_algorithm!r}")
        if self.hash_iterations <= 0:
            raise ValueError("Hash iterations must be positive")
        if self.salt_bytes <= 0:
            raise ValueError("Salt size must be positive")
        if self.min_password_length < 1:
            raise ValueError("Minimum password length must be at least 1")

    @property
    def database_path(self) -> Path:
        return self.directory / self.filename

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "StoreConfig":
        """Create a :class:`StoreConfig` from raw dictionary data."""

        known = {
            "directory",
            "filename",
            "timeout",
            "journal_mode",
            "hash_algorithm",
            "hash_iterations",
            "salt_bytes",
            "min_password_length",
        }
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown credential store settings: {', '.join(sorted(unknown))}")

        raw_directory = data.get("directory")
        directory = _resolve_path(raw_directory, base_path) if raw_directory else _default_directory()

        try:
            return StoreConfig(
                directory=directory,
                filename=str(data.get("filename", DEFAULT_DB_FILENAME)),
                timeout=float(data.get("timeout", 5.0)),  # type: ignore[arg-type]
                journal_mode=str(data.get("journal_mode", "wal")),
                hash_algorithm=str(data.get("hash_algorithm", DEFAULT_ALGORITHM)),
                hash_iterations=int(data.get("hash_iterations", DEFAULT_ITERATIONS)),  # type: ignore[arg-type]
                salt_bytes=int(data.get("salt_bytes", DEFAULT_SALT_BYTES)),  # type: ignore[arg-type]
                min_password_length=int(data.get("min_password_length", 8)),  # type: ignore[arg-type]
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid credential store configuration: {exc}") from exc


def load_store_config(config_path: Path) -> StoreConfig:
    """Load store settings from the ``credential_store`` section of a YAML file."""

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    section = raw.get("credential_store") or {}
    if not isinstance(section, dict):
        raise ValueError("The 'credential_store' key must hold a mapping")
    return StoreConfig.from_dict(section, base_path=config_path.parent)


def resolve_store_config(
    config_path: Optional[str] = None,
    directory: Optional[str] = None,
) -> StoreConfig:
    """Build the effective configuration.

    Explicit arguments win over ``CREDSTORE_CONFIG``/``CREDSTORE_DB_DIR``, which
    win over the built-in defaults.
    """

    config_value = config_path or os.getenv(CONFIG_ENV)
    if config_value:
        config = load_store_config(Path(config_value).expanduser().resolve(strict=False))
    else:
        config = StoreConfig(directory=_default_directory())

    directory_value = directory or os.getenv(DB_DIR_ENV)
    if directory_value:
        config = replace(config, directory=_resolve_path(directory_value, None))
    return config


__all__ = [
    "CONFIG_ENV",
    "DB_DIR_ENV",
    "DEFAULT_DB_FILENAME",
    "StoreConfig",
    "load_store_config",
    "resolve_store_config",
]
