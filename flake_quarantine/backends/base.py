"""Abstract base class for quarantine storage backends."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from flake_quarantine.models.record import TestRecord


@dataclass(frozen=True, kw_only=True)
class StorageBackend(ABC):
    """Abstract storage port for test status tables.

    Backends are created through their manifest's factory, an async context
    manager that owns any connection or HTTP session for the backend's
    lifetime and releases it on exit.
    """

    @abstractmethod
    async def fetch_items(self, table_name: str) -> Sequence[TestRecord]:
        """Return every record currently stored in the table.

        Args:
            table_name: Name of the table (or worksheet) to read

        Returns:
            All records of the table, in storage order

        Raises:
            StorageConnectionError: On transport failures
            AuthError: On rejected or missing credentials
            NotFoundError: If the table does not exist

        """

    @abstractmethod
    async def write_items(
        self, table_name: str, records: Sequence[TestRecord]
    ) -> None:
        """Upsert records into the table, matching existing rows by id.

        Records whose id already exists overwrite that row; the others are
        appended. Rows absent from ``records`` are never deleted. A partial
        write is reported as a failure of the whole call.

        Args:
            table_name: Name of the table (or worksheet) to write
            records: Records to upsert

        Raises:
            StorageConnectionError: On transport failures
            AuthError: On rejected or missing credentials
            NotFoundError: If the table does not exist

        """
