"""SQLite backend module."""

from flake_quarantine.backends.sqlite.backend import SqliteBackend
from flake_quarantine.backends.sqlite.config import SqliteConfig
from flake_quarantine.backends.sqlite.manifest import sqlite_manifest

__all__ = ["SqliteBackend", "SqliteConfig", "sqlite_manifest"]
