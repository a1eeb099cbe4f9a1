"""Models for per-run test observations."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flake_quarantine.models.record import TestStatus


@dataclass(frozen=True, kw_only=True)
class RunOutcome:
    """Outcome of a single executed example during the current run.

    ``passed`` tells whether this execution counts as a pass for the release
    counter; a test that failed and was only kept green by quarantine or a
    retry has ``passed=False``.
    """

    id: str
    outcome: TestStatus
    passed: bool
    full_description: str = ""
    location: str = ""
    extra_attributes: Mapping[str, Any] | None = None
