"""Pydantic models for Google Sheets and Drive API responses."""

from collections.abc import Sequence

from pydantic import BaseModel


class SheetProperties(BaseModel):
    """Properties of a single worksheet."""

    title: str


class Sheet(BaseModel):
    """A worksheet entry of a spreadsheet."""

    properties: SheetProperties


class SpreadsheetResponse(BaseModel):
    """Response from the get spreadsheet API, limited to worksheet titles."""

    sheets: Sequence[Sheet] = ()


class ValueRange(BaseModel):
    """Response from the get values API.

    Trailing empty rows and cells are omitted by the API, and ``values`` is
    missing entirely for an empty worksheet.
    """

    range: str
    values: Sequence[Sequence[str]] = ()


class DriveFile(BaseModel):
    """A file entry from the Drive files API."""

    id: str
    name: str


class DriveFilesResponse(BaseModel):
    """Response from the list files API."""

    files: Sequence[DriveFile] = ()
