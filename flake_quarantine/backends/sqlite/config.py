"""Configuration for SQLite backend."""

from pathlib import Path

from pydantic import BaseModel, Field


class SqliteConfig(BaseModel):
    """Configuration for SQLite backend."""

    path: Path
    # Create missing tables instead of raising NotFoundError
    create_table: bool = False
    busy_timeout: float = Field(default=5, gt=0)
    max_attempts: int = Field(default=5, ge=1)
