"""Base model configuration for persisted records."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model ignoring backend specific columns it does not know."""

    model_config = ConfigDict(frozen=True, extra="ignore")
