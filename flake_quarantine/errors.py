"""Error taxonomy for quarantine storage and configuration."""

from dataclasses import dataclass


class QuarantineError(Exception):
    """Base class for all quarantine errors."""


class ConfigurationError(QuarantineError):
    """Raised when the quarantine configuration is invalid.

    Configuration errors are fatal at construction time and never retried.
    """


class StorageError(QuarantineError):
    """Base class for errors raised by storage backends."""


class StorageConnectionError(StorageError):
    """Raised on network or transport failures, including timeouts."""


class AuthError(StorageError):
    """Raised when the backend rejects or lacks credentials."""


class NotFoundError(StorageError):
    """Raised when the requested table or worksheet does not exist."""


@dataclass(frozen=True, kw_only=True)
class FailsafeExceeded:
    """Report of quarantine entries rejected by the failsafe limit.

    This is a warning, not an exception: the upload still proceeds with the
    entries admitted under the limit.
    """

    limit: int
    attempted: int
    rejected_ids: tuple[str, ...]

    def __str__(self) -> str:
        return (
            f"Failsafe limit of {self.limit} quarantined tests exceeded "
            f"({self.attempted} requested); "
            f"{len(self.rejected_ids)} new quarantine entries were not saved"
        )
