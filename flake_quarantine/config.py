"""Quarantine configuration and loading from YAML or JSON files."""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from flake_quarantine.errors import ConfigurationError

log = logging.getLogger(__name__)

DEFAULT_DATABASE: Mapping[str, Any] = {
    "type": "sqlite",
    "path": "test_statuses.sqlite3",
    "create_table": True,
}


class QuarantineConfig(BaseModel):
    """Settings of a quarantine session."""

    database: Mapping[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_DATABASE),
        description="Backend type under 'type' plus the backend's own options",
    )
    test_statuses_table_name: str = Field(default="test_statuses", min_length=1)
    record_tests: bool = Field(
        default=True, description="Upload the run's outcomes at the end"
    )
    skip_quarantined_tests: bool = Field(
        default=True, description="Suppress failures of quarantined tests"
    )
    log_summary: bool = Field(default=True, description="Report the run summary")
    failsafe_limit: int = Field(
        default=10, ge=0, description="Maximum quarantined tests written per run"
    )
    release_at_consecutive_passes: int | None = Field(
        default=None,
        ge=1,
        description="Release quarantined tests after this many passing runs",
    )
    storage_timeout: float = Field(
        default=30, gt=0, description="Seconds before a storage call is abandoned"
    )
    extra_attributes: Mapping[str, Any] = Field(
        default_factory=dict, description="Attributes stored with every record"
    )

    @field_validator("database")
    @classmethod
    def check_database_type(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        """Require a backend type tag."""
        if not isinstance(value.get("type"), str) or not value["type"]:
            raise ValueError("database must define a backend 'type'")
        return value

    @property
    def database_type(self) -> str:
        """Key of the configured storage backend."""
        backend_type: str = self.database["type"]
        return backend_type

    @property
    def database_options(self) -> dict[str, Any]:
        """Options passed to the backend's configuration class."""
        return {key: value for key, value in self.database.items() if key != "type"}


def load_config(path: Path) -> QuarantineConfig:
    """Load a quarantine configuration from a YAML or JSON file.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated

    """
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read quarantine config {path}: {exc}"
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid quarantine config {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Quarantine config {path} must be a mapping")

    try:
        config = QuarantineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid quarantine config {path}: {exc}") from exc

    log.debug("Loaded quarantine config from %s", path)
    return config
