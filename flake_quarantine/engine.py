"""Quarantine engine reconciling a run's test outcomes with persisted statuses."""

import asyncio
import logging
import threading
from collections import Counter
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from functools import partial
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from flake_quarantine.backends.base import StorageBackend
from flake_quarantine.backends.loading import load_backend_manifest
from flake_quarantine.config import QuarantineConfig
from flake_quarantine.errors import (
    ConfigurationError,
    FailsafeExceeded,
    StorageConnectionError,
)
from flake_quarantine.models.outcome import RunOutcome
from flake_quarantine.models.record import TEST_STATUSES, TestRecord, TestStatus

log = logging.getLogger(__name__)

type BackendFactory = Callable[[], AbstractAsyncContextManager[StorageBackend]]


class SessionState(StrEnum):
    """Lifecycle of a quarantine session."""

    IDLE = "idle"
    FETCHED = "fetched"
    RECORDING = "recording"
    UPLOADED = "uploaded"


@dataclass(frozen=True, kw_only=True)
class MergeResult:
    """Records to write for a run and the policy decisions taken on the way."""

    records: Sequence[TestRecord]
    released_ids: Sequence[str] = ()
    failsafe: FailsafeExceeded | None = None


@dataclass(frozen=True, kw_only=True)
class UploadResult:
    """Outcome of an upload."""

    records: Sequence[TestRecord] = ()
    released_ids: Sequence[str] = ()
    failsafe: FailsafeExceeded | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Whether the records were written (or nothing needed writing)."""
        return self.error is None


def merge_outcomes(
    outcomes: Sequence[RunOutcome],
    remote: Mapping[str, TestRecord],
    *,
    failsafe_limit: int,
    release_at_consecutive_passes: int | None,
    updated_at: datetime,
) -> MergeResult:
    """Merge a run's outcomes into the current remote records.

    The last outcome recorded for an id wins. Remote records that were not
    observed in this run are left out of the result and thus untouched.

    Args:
        outcomes: Outcomes in the order they were recorded
        remote: Current remote records by id
        failsafe_limit: Maximum quarantined records in the result; records
            already quarantined remotely always stay, new quarantine entries
            beyond the limit are rejected
        release_at_consecutive_passes: Passing runs in a row after which a
            quarantined test is released, None to never release
        updated_at: Timestamp stored on every written record

    Returns:
        The records to write with the released and rejected test ids

    """
    latest: dict[str, RunOutcome] = {}
    for outcome in outcomes:
        latest[outcome.id] = outcome

    candidates: list[TestRecord] = []
    released: list[str] = []
    for test_id, outcome in latest.items():
        previous = remote.get(test_id)
        if outcome.passed:
            consecutive_passes = (previous.consecutive_passes if previous else 0) + 1
        else:
            consecutive_passes = 0

        status: TestStatus = outcome.outcome
        if (
            status == "quarantined"
            and release_at_consecutive_passes is not None
            and consecutive_passes >= release_at_consecutive_passes
        ):
            status = "passing"
            released.append(test_id)

        extra_attributes = outcome.extra_attributes
        if extra_attributes is None and previous is not None:
            extra_attributes = previous.extra_attributes

        candidates.append(
            TestRecord(
                id=test_id,
                status=status,
                consecutive_passes=consecutive_passes,
                full_description=outcome.full_description
                or (previous.full_description if previous else ""),
                location=outcome.location or (previous.location if previous else ""),
                updated_at=updated_at,
                extra_attributes=extra_attributes,
            )
        )

    def is_new_quarantine(record: TestRecord) -> bool:
        previous = remote.get(record.id)
        return record.quarantined and (previous is None or not previous.quarantined)

    kept_quarantined = sum(
        1
        for record in candidates
        if record.quarantined and not is_new_quarantine(record)
    )
    allowed_new = max(0, failsafe_limit - kept_quarantined)

    records: list[TestRecord] = []
    rejected: list[str] = []
    for record in candidates:
        if is_new_quarantine(record):
            if allowed_new == 0:
                rejected.append(record.id)
                continue
            allowed_new -= 1
        records.append(record)

    failsafe = None
    if rejected:
        failsafe = FailsafeExceeded(
            limit=failsafe_limit,
            attempted=sum(1 for record in candidates if record.quarantined),
            rejected_ids=tuple(rejected),
        )

    return MergeResult(records=records, released_ids=released, failsafe=failsafe)


@dataclass(kw_only=True)
class QuarantineEngine:
    """Session state of one test suite run.

    The engine fetches the persisted statuses before the run, answers
    quarantine lookups and records outcomes while tests execute, then merges
    the outcomes back into storage. Storage failures never propagate out of
    the engine: fetch failures leave an empty baseline and upload failures
    are reported in the summary.
    """

    config: QuarantineConfig
    backend_factory: BackendFactory = field(repr=False)
    backend_type: str = "custom"

    state: SessionState = field(default=SessionState.IDLE, init=False)
    baseline: Mapping[str, TestRecord] = field(
        default_factory=lambda: MappingProxyType({}), init=False, repr=False
    )
    database_errors: list[str] = field(default_factory=list, init=False, repr=False)
    failsafe_reports: list[FailsafeExceeded] = field(
        default_factory=list, init=False, repr=False
    )
    _pending: list[RunOutcome] = field(default_factory=list, init=False, repr=False)
    _recorded: list[RunOutcome] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @classmethod
    def from_config(cls, config: QuarantineConfig) -> "QuarantineEngine":
        """Create an engine for the backend selected in the configuration.

        Raises:
            ConfigurationError: If the backend is unknown or its options are
                invalid

        """
        manifest = load_backend_manifest(config.database_type)
        try:
            backend_config = manifest.config_cls(**config.database_options)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid options for backend '{config.database_type}': {exc}"
            ) from exc

        return cls(
            config=config,
            backend_factory=partial(manifest.backend_factory, backend_config),
            backend_type=config.database_type,
        )

    @property
    def table_name(self) -> str:
        """Name of the test statuses table."""
        return self.config.test_statuses_table_name

    async def fetch_test_statuses(self) -> None:
        """Load the baseline statuses, falling back to an empty baseline."""
        try:
            records = await self.fetch_remote()
        except Exception as exc:
            self.report_database_error("fetch", exc)
            records = []

        self.baseline = MappingProxyType({record.id: record for record in records})
        self.state = SessionState.FETCHED
        log.info(
            "Fetched %d test status(es), %d quarantined",
            len(self.baseline),
            sum(1 for record in self.baseline.values() if record.quarantined),
        )

    def test_quarantined(self, test_id: str) -> bool:
        """Whether the test is quarantined in the baseline."""
        record = self.baseline.get(test_id)
        return record is not None and record.quarantined

    def record_test(
        self,
        test_id: str,
        outcome: TestStatus,
        *,
        passed: bool,
        full_description: str = "",
        location: str = "",
        extra_attributes: Mapping[str, Any] | None = None,
    ) -> RunOutcome:
        """Record the outcome of an executed example. Safe across threads."""
        if self.config.extra_attributes:
            extra_attributes = {
                **self.config.extra_attributes,
                **(extra_attributes or {}),
            }
        if extra_attributes is not None:
            # Backends store attributes as JSON; unknown objects become strings
            extra_attributes = to_jsonable_python(dict(extra_attributes), fallback=str)

        run_outcome = RunOutcome(
            id=test_id,
            outcome=outcome,
            passed=passed,
            full_description=full_description,
            location=location,
            extra_attributes=extra_attributes,
        )
        with self._lock:
            self._pending.append(run_outcome)
            self._recorded.append(run_outcome)
            self.state = SessionState.RECORDING
        return run_outcome

    async def upload_tests(self) -> UploadResult:
        """Merge the outcomes recorded since the last upload into storage."""
        with self._lock:
            pending, self._pending = self._pending, []
        self.state = SessionState.UPLOADED

        if not pending:
            log.info("No new test outcomes to upload")
            return UploadResult()

        try:
            remote = {record.id: record for record in await self.fetch_remote()}
        except Exception as exc:
            log.warning(
                "Re-fetching table %s failed, merging against baseline: %s",
                self.table_name,
                exc,
            )
            remote = dict(self.baseline)

        merge = merge_outcomes(
            pending,
            remote,
            failsafe_limit=self.config.failsafe_limit,
            release_at_consecutive_passes=self.config.release_at_consecutive_passes,
            updated_at=datetime.now(timezone.utc),
        )
        if merge.failsafe is not None:
            log.warning(
                "%s: %s", merge.failsafe, ", ".join(merge.failsafe.rejected_ids)
            )
            self.failsafe_reports.append(merge.failsafe)
        for test_id in merge.released_ids:
            log.info("Releasing %s from quarantine", test_id)

        try:
            await self.write_remote(merge.records)
        except Exception as exc:
            self.report_database_error("upload", exc)
            return UploadResult(
                released_ids=merge.released_ids, failsafe=merge.failsafe, error=exc
            )

        log.info(
            "Uploaded %d test status(es) to %s", len(merge.records), self.table_name
        )
        return UploadResult(
            records=merge.records,
            released_ids=merge.released_ids,
            failsafe=merge.failsafe,
        )

    def counts(self) -> Mapping[TestStatus, int]:
        """Number of recorded outcomes per category."""
        with self._lock:
            tally = Counter(outcome.outcome for outcome in self._recorded)
        return {status: tally[status] for status in TEST_STATUSES}

    def summary(self) -> str:
        """Human readable report of the run."""
        with self._lock:
            latest = {outcome.id: outcome for outcome in self._recorded}
        counts = self.counts()

        lines = [
            "[quarantine] Test outcomes: "
            + ", ".join(f"{counts[status]} {status}" for status in TEST_STATUSES)
        ]
        for title, status in (
            ("Quarantined tests", "quarantined"),
            ("Failed tests", "failing"),
        ):
            matching = sorted(
                (o for o in latest.values() if o.outcome == status),
                key=lambda o: o.id,
            )
            if matching:
                lines.append(f"[quarantine] {title}:")
                lines.extend(
                    f"  {o.id} {o.full_description}".rstrip() for o in matching
                )
        if self.failsafe_reports:
            lines.append("[quarantine] Failsafe:")
            lines.extend(f"  {report}" for report in self.failsafe_reports)
        if self.database_errors:
            lines.append("[quarantine] Database errors:")
            lines.extend(f"  {error}" for error in self.database_errors)
        return "\n".join(lines)

    @asynccontextmanager
    async def storage(self) -> AsyncGenerator[StorageBackend, None]:
        """Acquire the backend for one operation, bounded by the timeout."""
        timeout = self.config.storage_timeout
        try:
            async with asyncio.timeout(timeout):
                async with self.backend_factory() as backend:
                    yield backend
        except TimeoutError as exc:
            raise StorageConnectionError(
                f"Storage call did not complete within {timeout} seconds"
            ) from exc

    async def fetch_remote(self) -> Sequence[TestRecord]:
        """Read the current records of the statuses table."""
        async with self.storage() as backend:
            return await backend.fetch_items(self.table_name)

    async def write_remote(self, records: Sequence[TestRecord]) -> None:
        """Write records to the statuses table."""
        async with self.storage() as backend:
            await backend.write_items(self.table_name, records)

    def report_database_error(self, operation: str, exc: Exception) -> None:
        """Log a storage failure and keep it for the summary."""
        message = (
            f"{operation} failed for table '{self.table_name}' "
            f"on backend '{self.backend_type}': {exc}"
        )
        log.warning("Quarantine %s", message, exc_info=exc)
        self.database_errors.append(message)
