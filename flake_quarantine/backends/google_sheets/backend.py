"""Google Sheets backend implementation."""

import json
import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from flake_quarantine.backends.base import StorageBackend
from flake_quarantine.backends.google_sheets.auth import access_token
from flake_quarantine.backends.google_sheets.config import (
    GoogleSheetsConfig,
    SpreadsheetByTitle,
)
from flake_quarantine.backends.google_sheets.models import (
    DriveFilesResponse,
    SpreadsheetResponse,
    ValueRange,
)
from flake_quarantine.errors import AuthError, NotFoundError, StorageConnectionError
from flake_quarantine.models.record import TestRecord

log = logging.getLogger(__name__)

SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"


def column_letter(index: int) -> str:
    """Convert a zero-based column index to A1 notation (0 -> A, 26 -> AA)."""
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def sheet_range(title: str, cells: str | None = None) -> str:
    """Build an A1 range for a worksheet, quoting the title."""
    quoted = "'" + title.replace("'", "''") + "'"
    return f"{quoted}!{cells}" if cells else quoted


def parse_row(headers: Sequence[str], row: Sequence[str]) -> dict[str, str]:
    """Map a row to its headers, dropping empty cells."""
    return {
        header: value
        for header, value in zip(headers, row, strict=False)
        if header and value != ""
    }


def record_to_cells(headers: Sequence[str], record: TestRecord) -> list[str]:
    """Serialize a record to one cell per header.

    Fields without a matching header are dropped: the header row is the
    schema of the worksheet.
    """
    item = record.to_item()
    cells: list[str] = []
    for header in headers:
        value = item.get(header)
        if value is None:
            cells.append("")
        elif header == "extra_attributes":
            cells.append(json.dumps(value, sort_keys=True))
        else:
            cells.append(str(value))
    return cells


def row_to_record(row: Mapping[str, str]) -> TestRecord:
    """Deserialize a parsed row, decoding the embedded attributes document."""
    item: dict[str, Any] = dict(row)
    if "extra_attributes" in item:
        item["extra_attributes"] = json.loads(item["extra_attributes"])
    return TestRecord.model_validate(item)


async def request_json(
    session: aiohttp.ClientSession, method: str, url: str, **kwargs: Any
) -> Any:
    """Send a request and decode its JSON body, translating failures."""
    try:
        async with session.request(method, url, **kwargs) as response:
            if response.status in {401, 403}:
                text = await response.text()
                raise AuthError(
                    f"Google API rejected credentials: {response.status} {text}"
                )
            if response.status == 404:
                raise NotFoundError(f"Google API resource not found: {url}")
            if response.status >= 400:
                text = await response.text()
                raise StorageConnectionError(
                    f"Google API request failed: {response.status} {text}"
                )
            return await response.json()
    except (aiohttp.ClientError, TimeoutError) as exc:
        raise StorageConnectionError(
            f"Google API request failed: {method} {url}: {exc!r}"
        ) from exc


async def resolve_spreadsheet_id(
    session: aiohttp.ClientSession, config: GoogleSheetsConfig
) -> str:
    """Return the key of the configured spreadsheet."""
    spreadsheet = config.spreadsheet
    if not isinstance(spreadsheet, SpreadsheetByTitle):
        return spreadsheet.key

    title = spreadsheet.title.replace("\\", "\\\\").replace("'", "\\'")
    data = await request_json(
        session,
        "GET",
        f"{config.drive_api_base_url}/drive/v3/files",
        params={
            "q": f"name = '{title}' and mimeType = '{SPREADSHEET_MIME_TYPE}'"
            " and trashed = false",
            "fields": "files(id,name)",
        },
    )
    files = DriveFilesResponse.model_validate(data).files
    if not files:
        raise NotFoundError(f"Spreadsheet titled '{spreadsheet.title}' not found")
    return files[0].id


@dataclass(frozen=True, kw_only=True)
class GoogleSheetsBackend(StorageBackend):
    """Google Sheets storage backend.

    Each worksheet is a table whose first row holds the column names. Writes
    overwrite matching rows in one batch update, then append the new rows in
    a second call; the two calls are not atomic.
    """

    config: GoogleSheetsConfig
    session: aiohttp.ClientSession = field(repr=False)
    spreadsheet_id: str

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: GoogleSheetsConfig
    ) -> AsyncGenerator["GoogleSheetsBackend", None]:
        """Create backend with managed session lifecycle."""
        token = await access_token(config.authorization)
        headers = {"Authorization": f"Bearer {token}"}
        async with aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=config.timeout),
        ) as session:
            spreadsheet_id = await resolve_spreadsheet_id(session, config)
            yield cls(config=config, session=session, spreadsheet_id=spreadsheet_id)

    @property
    def spreadsheet_url(self) -> str:
        """Base API URL of the spreadsheet."""
        return f"{self.config.api_base_url}/v4/spreadsheets/{self.spreadsheet_id}"

    async def fetch_items(self, table_name: str) -> Sequence[TestRecord]:
        """Read every row of the worksheet as a record."""
        headers, rows = await self.read_rows(table_name)

        records: list[TestRecord] = []
        for row in rows:
            try:
                records.append(row_to_record(row))
            except (ValidationError, ValueError) as exc:
                log.warning(
                    "Skipping invalid row in worksheet %s: id=%s error=%s",
                    table_name,
                    row.get("id"),
                    exc,
                )
        return records

    async def write_items(
        self, table_name: str, records: Sequence[TestRecord]
    ) -> None:
        """Overwrite rows matched by id and append the remaining records."""
        headers, rows = await self.read_rows(table_name)
        if not headers:
            raise NotFoundError(f"Worksheet '{table_name}' has no header row")

        # Map existing id to row index
        indexes = {row["id"]: idx for idx, row in enumerate(rows) if "id" in row}
        last_column = column_letter(len(headers) - 1)

        updates: list[dict[str, Any]] = []
        new_rows: list[list[str]] = []
        latest = {record.id: record for record in records}
        for record in latest.values():
            cells = record_to_cells(headers, record)
            row_idx = indexes.get(record.id)
            if row_idx is None:
                new_rows.append(cells)
                continue
            # Sheet rows are 1-based and the first one holds the headers
            row_number = row_idx + 2
            updates.append(
                {
                    "range": sheet_range(
                        table_name, f"A{row_number}:{last_column}{row_number}"
                    ),
                    "majorDimension": "ROWS",
                    "values": [cells],
                }
            )

        log.info(
            "Writing worksheet %s: %d updated row(s), %d new row(s)",
            table_name,
            len(updates),
            len(new_rows),
        )

        if updates:
            await request_json(
                self.session,
                "POST",
                f"{self.spreadsheet_url}/values:batchUpdate",
                json={"valueInputOption": "RAW", "data": updates},
            )

        if new_rows:
            append_range = quote(sheet_range(table_name, "A1"), safe="")
            await request_json(
                self.session,
                "POST",
                f"{self.spreadsheet_url}/values/{append_range}:append",
                params={
                    "valueInputOption": "RAW",
                    "insertDataOption": "INSERT_ROWS",
                },
                json={"majorDimension": "ROWS", "values": new_rows},
            )

    async def read_rows(
        self, table_name: str
    ) -> tuple[Sequence[str], Sequence[dict[str, str]]]:
        """Return the header row and the parsed data rows of a worksheet."""
        await self.ensure_worksheet(table_name)

        value_range = quote(sheet_range(table_name), safe="")
        data = await request_json(
            self.session,
            "GET",
            f"{self.spreadsheet_url}/values/{value_range}",
            params={"majorDimension": "ROWS", "valueRenderOption": "FORMATTED_VALUE"},
        )
        values = ValueRange.model_validate(data).values
        if not values:
            return [], []

        headers, *rows = values
        return list(headers), [parse_row(headers, row) for row in rows]

    async def ensure_worksheet(self, table_name: str) -> None:
        """Raise NotFoundError when the spreadsheet has no such worksheet."""
        data = await request_json(
            self.session,
            "GET",
            self.spreadsheet_url,
            params={"fields": "sheets.properties.title"},
        )
        titles = {
            sheet.properties.title
            for sheet in SpreadsheetResponse.model_validate(data).sheets
        }
        if table_name not in titles:
            raise NotFoundError(
                f"Worksheet '{table_name}' not found in spreadsheet "
                f"{self.spreadsheet_id}"
            )
