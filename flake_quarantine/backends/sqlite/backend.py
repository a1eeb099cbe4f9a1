"""SQLite key-value backend implementation."""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncGenerator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field

from pydantic import ValidationError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from flake_quarantine.backends.base import StorageBackend
from flake_quarantine.backends.sqlite.config import SqliteConfig
from flake_quarantine.errors import NotFoundError, StorageConnectionError
from flake_quarantine.models.record import TestRecord

log = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Quote a table name for use in SQL statements."""
    return '"' + name.replace('"', '""') + '"'


def is_locked(exc: BaseException) -> bool:
    """Whether the error is transient lock contention from another writer."""
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc)


@contextmanager
def translate_errors(table_name: str) -> Iterator[None]:
    """Translate sqlite3 errors to storage errors."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        if "no such table" in str(exc):
            raise NotFoundError(f"Table '{table_name}' does not exist") from exc
        raise StorageConnectionError(f"SQLite error on '{table_name}': {exc}") from exc
    except sqlite3.Error as exc:
        raise StorageConnectionError(f"SQLite error on '{table_name}': {exc}") from exc


@dataclass(frozen=True, kw_only=True)
class SqliteBackend(StorageBackend):
    """SQLite storage backend.

    Each table maps test ids to the JSON document of their record. Writes are
    keyed upserts performed in a single transaction; lock contention with
    other writers is retried with exponential backoff.
    """

    config: SqliteConfig
    connection: sqlite3.Connection = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: SqliteConfig
    ) -> AsyncGenerator["SqliteBackend", None]:
        """Create backend with managed connection lifecycle."""
        with translate_errors(str(config.path)):
            connection = await asyncio.to_thread(
                sqlite3.connect,
                config.path,
                timeout=config.busy_timeout,
                check_same_thread=False,
            )
        try:
            yield cls(config=config, connection=connection)
        finally:
            connection.close()

    def retrying(self) -> Retrying:
        """Retry policy for lock contention."""
        return Retrying(
            retry=retry_if_exception(is_locked),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            reraise=True,
            before_sleep=before_sleep_log(log, logging.WARNING),
        )

    async def fetch_items(self, table_name: str) -> Sequence[TestRecord]:
        """Read every record of the table, in insertion order."""
        with translate_errors(table_name):
            items = await asyncio.to_thread(
                self.retrying(), self.select_items, table_name
            )

        records: list[TestRecord] = []
        for test_id, item in items:
            try:
                records.append(TestRecord.model_validate_json(item))
            except ValidationError as exc:
                log.warning(
                    "Skipping invalid item in table %s: id=%s error=%s",
                    table_name,
                    test_id,
                    exc,
                )
        return records

    async def write_items(
        self, table_name: str, records: Sequence[TestRecord]
    ) -> None:
        """Upsert records keyed by id in one transaction."""
        items = [(record.id, record.model_dump_json()) for record in records]
        log.info("Writing %d item(s) to table %s", len(items), table_name)
        with translate_errors(table_name):
            await asyncio.to_thread(
                self.retrying(), self.upsert_items, table_name, items
            )

    def select_items(self, table_name: str) -> list[tuple[str, str]]:
        """Return (id, document) pairs of the table."""
        if self.config.create_table:
            self.create_table(table_name)
        cursor = self.connection.execute(
            f"SELECT id, item FROM {quote_identifier(table_name)} ORDER BY rowid"
        )
        return cursor.fetchall()

    def upsert_items(self, table_name: str, items: Sequence[tuple[str, str]]) -> None:
        """Insert or replace documents by id, rolling back on failure."""
        if self.config.create_table:
            self.create_table(table_name)
        with self.connection:
            self.connection.executemany(
                f"INSERT INTO {quote_identifier(table_name)} (id, item) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET item = excluded.item",
                items,
            )

    def create_table(self, table_name: str) -> None:
        """Create the table if it does not exist yet."""
        with self.connection:
            self.connection.execute(
                f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} "
                "(id TEXT PRIMARY KEY, item TEXT NOT NULL)"
            )
