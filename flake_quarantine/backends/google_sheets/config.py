"""Configuration for Google Sheets backend."""

import re
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

SPREADSHEET_URL_PATTERN = re.compile(r"/spreadsheets/d/([a-zA-Z0-9_-]+)")


class SpreadsheetByKey(BaseModel):
    """Spreadsheet selected by its key (the id in its URL)."""

    type: Literal["by_key"]
    key: str


class SpreadsheetByUrl(BaseModel):
    """Spreadsheet selected by its full URL."""

    type: Literal["by_url"]
    url: str

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        """Reject URLs that do not contain a spreadsheet key."""
        if SPREADSHEET_URL_PATTERN.search(value) is None:
            raise ValueError(f"Not a spreadsheet URL: {value}")
        return value

    @property
    def key(self) -> str:
        """Spreadsheet key extracted from the URL."""
        match = SPREADSHEET_URL_PATTERN.search(self.url)
        if match is None:
            raise ValueError(f"Not a spreadsheet URL: {self.url}")
        return match.group(1)


class SpreadsheetByTitle(BaseModel):
    """Spreadsheet selected by title, resolved through the Drive API."""

    type: Literal["by_title"]
    title: str


SpreadsheetRef = Annotated[
    SpreadsheetByKey | SpreadsheetByUrl | SpreadsheetByTitle,
    Field(discriminator="type"),
]


class TokenAuthorization(BaseModel):
    """Pre-issued OAuth access token, used as is."""

    type: Literal["token"]
    token: SecretStr


class ServiceAccountKeyAuthorization(BaseModel):
    """Service account JSON key file, exchanged for a token on each session."""

    type: Literal["service_account_key"]
    file: Path


class AuthorizedUserAuthorization(BaseModel):
    """OAuth client file holding a user's refresh token."""

    type: Literal["authorized_user"]
    file: Path


Authorization = Annotated[
    TokenAuthorization | ServiceAccountKeyAuthorization | AuthorizedUserAuthorization,
    Field(discriminator="type"),
]


class GoogleSheetsConfig(BaseModel):
    """Configuration for Google Sheets backend.

    A bare ``token`` option is shorthand for a ``token`` authorization.
    """

    authorization: Authorization
    spreadsheet: SpreadsheetRef
    api_base_url: str = "https://sheets.googleapis.com"
    drive_api_base_url: str = "https://www.googleapis.com"
    timeout: float = Field(default=30, gt=0)

    @model_validator(mode="before")
    @classmethod
    def expand_token(cls, data: Any) -> Any:
        """Turn a top-level token into a token authorization."""
        if isinstance(data, dict) and "token" in data and "authorization" not in data:
            data = dict(data)
            data["authorization"] = {"type": "token", "token": data.pop("token")}
        return data
