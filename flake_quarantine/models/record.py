"""Persisted test status records and the test fingerprint scheme."""

import hashlib
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from flake_quarantine.models.base import Model

type TestStatus = Literal["passing", "failing", "quarantined"]

TEST_STATUSES: tuple[TestStatus, ...] = ("passing", "failing", "quarantined")


def build_test_id(location: str, description: str) -> str:
    """Build the stable identifier of a test from its location and description.

    The description is hashed so that identifiers stay short and safe to use
    as keys in any backend, while the location keeps them readable.
    """
    digest = hashlib.sha1(description.encode("utf-8")).hexdigest()[:12]
    return f"{location}[{digest}]"


class TestRecord(Model):
    """One row of the test statuses table."""

    __test__ = False

    id: str = Field(..., min_length=1, description="Stable test identifier")
    status: TestStatus = Field(..., description="Last persisted status")
    consecutive_passes: int = Field(
        default=0, ge=0, description="Runs passed in a row, used for release"
    )
    full_description: str = Field(default="", description="Human readable name")
    location: str = Field(default="", description="File path of the test")
    updated_at: datetime | None = Field(
        default=None, description="Time of the last write"
    )
    extra_attributes: Mapping[str, Any] | None = Field(
        default=None, description="Free-form attributes stored with the record"
    )

    @property
    def quarantined(self) -> bool:
        """Whether the record marks the test as quarantined."""
        return self.status == "quarantined"

    def to_item(self) -> dict[str, Any]:
        """Serialize to a JSON compatible mapping for storage backends."""
        return self.model_dump(mode="json")
