"""Integration tests for Google Sheets backend."""

import json
import re
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from unittest.mock import Mock, patch

import aiohttp
import pytest
from aioresponses import aioresponses as aioresponses_cls
from aioresponses.core import RequestCall
from pydantic import SecretStr

from flake_quarantine.backends.google_sheets import (
    GoogleSheetsBackend,
    GoogleSheetsConfig,
)
from flake_quarantine.backends.google_sheets.auth import SCOPES
from flake_quarantine.backends.google_sheets.backend import (
    column_letter,
    parse_row,
    record_to_cells,
    row_to_record,
    sheet_range,
)
from flake_quarantine.backends.google_sheets.config import (
    ServiceAccountKeyAuthorization,
    SpreadsheetByKey,
    SpreadsheetByTitle,
    SpreadsheetByUrl,
    TokenAuthorization,
)
from flake_quarantine.errors import AuthError, NotFoundError, StorageConnectionError
from flake_quarantine.models.record import TestRecord
from flake_quarantine.testing.sheets.payloads import (
    drive_files_response,
    spreadsheet_response,
    update_response,
    value_range,
)

API_BASE_URL = "http://sheets.test"
DRIVE_API_BASE_URL = "http://drive.test"
SPREADSHEET_URL = f"{API_BASE_URL}/v4/spreadsheets/sheet-key"
TABLE = "test_statuses"
HEADERS = ["id", "status", "consecutive_passes", "extra_attributes"]

METADATA_PATTERN = re.compile(rf"^{re.escape(SPREADSHEET_URL)}\?fields=")
VALUES_PATTERN = re.compile(
    rf"^{re.escape(SPREADSHEET_URL)}/values/[^?]*\?majorDimension="
)
BATCH_UPDATE_URL = f"{SPREADSHEET_URL}/values:batchUpdate"
APPEND_PATTERN = re.compile(rf"^{re.escape(SPREADSHEET_URL)}/values/.*:append\?")


def make_config(spreadsheet: Any = None) -> GoogleSheetsConfig:
    """Create test configuration."""
    return GoogleSheetsConfig(
        authorization=TokenAuthorization(type="token", token=SecretStr("test-token")),
        spreadsheet=spreadsheet or SpreadsheetByKey(type="by_key", key="sheet-key"),
        api_base_url=API_BASE_URL,
        drive_api_base_url=DRIVE_API_BASE_URL,
    )


@pytest.fixture
async def backend(
    aioresponses: aioresponses_cls,
) -> AsyncGenerator[GoogleSheetsBackend, None]:
    """Create backend with managed session."""
    async with GoogleSheetsBackend.from_config(make_config()) as impl:
        yield impl


def mock_worksheet(
    aioresponses: aioresponses_cls, rows: list[list[str]], *, repeat: bool = False
) -> None:
    """Serve the worksheet listing and its values."""
    aioresponses.get(
        METADATA_PATTERN, payload=spreadsheet_response(TABLE, "other"), repeat=repeat
    )
    aioresponses.get(VALUES_PATTERN, payload=value_range(TABLE, rows), repeat=repeat)


def calls_matching(
    aioresponses: aioresponses_cls, method: str, fragment: str
) -> list[RequestCall]:
    """Return recorded calls whose URL contains the fragment."""
    return [
        call
        for (call_method, url), calls in aioresponses.requests.items()
        if call_method == method and fragment in str(url)
        for call in calls
    ]


class TestHelpers:
    """Tests for A1 notation and row serialization helpers."""

    @pytest.mark.parametrize(
        ("index", "expected"), [(0, "A"), (3, "D"), (25, "Z"), (26, "AA"), (52, "BA")]
    )
    def test_column_letter(self, index: int, expected: str) -> None:
        """Converts column indexes to letters."""
        assert column_letter(index) == expected

    def test_sheet_range_quotes_title(self) -> None:
        """Quotes worksheet titles and escapes quotes."""
        assert sheet_range("it's", "A1") == "'it''s'!A1"
        assert sheet_range(TABLE) == "'test_statuses'"

    def test_cells_round_trip(self) -> None:
        """A record serialized to cells parses back to the same record."""
        record = TestRecord(
            id="a",
            status="quarantined",
            consecutive_passes=2,
            extra_attributes={"owner": "alice", "tags": ["slow"]},
        )

        cells = record_to_cells(HEADERS, record)

        assert cells == [
            "a",
            "quarantined",
            "2",
            '{"owner": "alice", "tags": ["slow"]}',
        ]
        assert row_to_record(parse_row(HEADERS, cells)) == record

    def test_fields_without_header_are_dropped(self) -> None:
        """Only columns present in the header row are written."""
        record = TestRecord(id="a", status="failing", full_description="dropped")

        assert record_to_cells(["status", "id"], record) == ["failing", "a"]

    def test_parse_row_pads_short_rows(self) -> None:
        """Missing trailing cells are treated as empty."""
        assert parse_row(HEADERS, ["a", "passing"]) == {"id": "a", "status": "passing"}


class TestFromConfig:
    """Tests for spreadsheet resolution."""

    async def test_resolves_key_from_url(self, aioresponses: aioresponses_cls) -> None:
        """Extracts the key from spreadsheet URLs."""
        spreadsheet = SpreadsheetByUrl(
            type="by_url",
            url="https://docs.google.com/spreadsheets/d/url-key_1/edit#gid=0",
        )

        async with GoogleSheetsBackend.from_config(make_config(spreadsheet)) as impl:
            assert impl.spreadsheet_id == "url-key_1"

    def test_rejects_non_spreadsheet_url(self) -> None:
        """URLs without a spreadsheet key are rejected."""
        with pytest.raises(ValueError, match="Not a spreadsheet URL"):
            SpreadsheetByUrl(type="by_url", url="https://example.com/doc")

    async def test_resolves_title_through_drive(
        self, aioresponses: aioresponses_cls
    ) -> None:
        """Looks up spreadsheets by title with the Drive API."""
        aioresponses.get(
            re.compile(rf"^{re.escape(DRIVE_API_BASE_URL)}/drive/v3/files\?"),
            payload=drive_files_response(("title-key", "Flaky tests")),
        )
        spreadsheet = SpreadsheetByTitle(type="by_title", title="Flaky tests")

        async with GoogleSheetsBackend.from_config(make_config(spreadsheet)) as impl:
            assert impl.spreadsheet_id == "title-key"

        call = calls_matching(aioresponses, "GET", "/drive/v3/files")[0]
        assert "name = 'Flaky tests'" in call.kwargs["params"]["q"]

    async def test_unknown_title_raises_not_found(
        self, aioresponses: aioresponses_cls
    ) -> None:
        """Raises NotFoundError when no spreadsheet has the title."""
        aioresponses.get(
            re.compile(rf"^{re.escape(DRIVE_API_BASE_URL)}/drive/v3/files\?"),
            payload=drive_files_response(),
        )
        spreadsheet = SpreadsheetByTitle(type="by_title", title="Missing")

        with pytest.raises(NotFoundError, match="Missing"):
            async with GoogleSheetsBackend.from_config(make_config(spreadsheet)):
                pass  # pragma: no cover


class TestFetchItems:
    """Tests for fetch_items."""

    async def test_parses_rows(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Maps rows to records using the header row."""
        mock_worksheet(
            aioresponses,
            [
                HEADERS,
                ["a", "quarantined", "3", '{"owner": "alice"}'],
                ["b", "passing"],
            ],
        )

        records = await backend.fetch_items(TABLE)

        assert records == [
            TestRecord(
                id="a",
                status="quarantined",
                consecutive_passes=3,
                extra_attributes={"owner": "alice"},
            ),
            TestRecord(id="b", status="passing"),
        ]

    async def test_sends_bearer_token(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Authenticates with the configured token."""
        mock_worksheet(aioresponses, [HEADERS])

        await backend.fetch_items(TABLE)

        assert backend.session.headers["Authorization"] == "Bearer test-token"

    async def test_sends_service_account_token(
        self, aioresponses: aioresponses_cls, tmp_path: Path
    ) -> None:
        """Service account keys are exchanged for a bearer token."""
        key_file = tmp_path / "key.json"
        key_file.write_text("{}")
        config = make_config().model_copy(
            update={
                "authorization": ServiceAccountKeyAuthorization(
                    type="service_account_key", file=key_file
                )
            }
        )
        credentials = Mock(token="minted-token")

        with patch(
            "flake_quarantine.backends.google_sheets.auth.service_account"
            ".Credentials.from_service_account_file",
            return_value=credentials,
        ) as from_file:
            async with GoogleSheetsBackend.from_config(config) as backend:
                assert backend.session.headers["Authorization"] == (
                    "Bearer minted-token"
                )

        from_file.assert_called_once_with(str(key_file), scopes=SCOPES)
        credentials.refresh.assert_called_once()

    async def test_empty_worksheet(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """A worksheet without rows has no records."""
        mock_worksheet(aioresponses, [])

        assert await backend.fetch_items(TABLE) == []

    async def test_skips_invalid_rows(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Rows with an unknown status or broken attributes are skipped."""
        mock_worksheet(
            aioresponses,
            [
                HEADERS,
                ["a", "flaky"],
                ["b", "passing", "0", "{not json"],
                ["c", "failing"],
            ],
        )

        records = await backend.fetch_items(TABLE)

        assert [record.id for record in records] == ["c"]

    async def test_missing_worksheet_raises_not_found(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Raises NotFoundError when the worksheet does not exist."""
        aioresponses.get(METADATA_PATTERN, payload=spreadsheet_response("other"))

        with pytest.raises(NotFoundError, match="test_statuses"):
            await backend.fetch_items(TABLE)

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (401, AuthError),
            (403, AuthError),
            (404, NotFoundError),
            (500, StorageConnectionError),
        ],
    )
    async def test_translates_http_errors(
        self,
        backend: GoogleSheetsBackend,
        aioresponses: aioresponses_cls,
        status: int,
        error: type[Exception],
    ) -> None:
        """HTTP failures map to storage errors."""
        aioresponses.get(METADATA_PATTERN, status=status, body="nope")

        with pytest.raises(error):
            await backend.fetch_items(TABLE)

    async def test_translates_transport_errors(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Connection failures raise StorageConnectionError."""
        aioresponses.get(
            METADATA_PATTERN, exception=aiohttp.ClientConnectionError("refused")
        )

        with pytest.raises(StorageConnectionError, match="refused"):
            await backend.fetch_items(TABLE)

    async def test_translates_timeouts(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Timeouts raise StorageConnectionError."""
        aioresponses.get(METADATA_PATTERN, exception=TimeoutError())

        with pytest.raises(StorageConnectionError):
            await backend.fetch_items(TABLE)


class TestWriteItems:
    """Tests for write_items."""

    async def test_overwrites_existing_and_appends_new_rows(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Matched rows are updated in place, the others appended."""
        mock_worksheet(
            aioresponses,
            [
                HEADERS,
                ["a", "passing", "1"],
                ["b", "quarantined", "0"],
            ],
        )
        aioresponses.post(BATCH_UPDATE_URL, payload=update_response(1))
        aioresponses.post(APPEND_PATTERN, payload=update_response(1))

        await backend.write_items(
            TABLE,
            [
                TestRecord(id="b", status="passing", consecutive_passes=1),
                TestRecord(
                    id="c", status="quarantined", extra_attributes={"team": "core"}
                ),
            ],
        )

        update = calls_matching(aioresponses, "POST", "values:batchUpdate")[0]
        assert update.kwargs["json"] == {
            "valueInputOption": "RAW",
            "data": [
                {
                    "range": "'test_statuses'!A3:D3",
                    "majorDimension": "ROWS",
                    "values": [["b", "passing", "1", ""]],
                }
            ],
        }
        append = calls_matching(aioresponses, "POST", ":append")[0]
        assert append.kwargs["params"] == {
            "valueInputOption": "RAW",
            "insertDataOption": "INSERT_ROWS",
        }
        assert append.kwargs["json"] == {
            "majorDimension": "ROWS",
            "values": [["c", "quarantined", "0", '{"team": "core"}']],
        }

    async def test_only_updates_when_all_rows_exist(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """No append call is made without new rows."""
        mock_worksheet(aioresponses, [HEADERS, ["a", "passing", "1"]])
        aioresponses.post(BATCH_UPDATE_URL, payload=update_response(1))

        await backend.write_items(TABLE, [TestRecord(id="a", status="failing")])

        assert len(calls_matching(aioresponses, "POST", "values:batchUpdate")) == 1
        assert calls_matching(aioresponses, "POST", ":append") == []

    async def test_deduplicates_ids_within_batch(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Only the last record of an id is written."""
        mock_worksheet(aioresponses, [HEADERS])
        aioresponses.post(APPEND_PATTERN, payload=update_response(1))

        await backend.write_items(
            TABLE,
            [
                TestRecord(id="a", status="failing"),
                TestRecord(id="a", status="quarantined"),
            ],
        )

        append = calls_matching(aioresponses, "POST", ":append")[0]
        assert json.dumps(append.kwargs["json"]["values"]) == json.dumps(
            [["a", "quarantined", "0", ""]]
        )

    async def test_requires_header_row(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """Writing to a worksheet without headers raises NotFoundError."""
        mock_worksheet(aioresponses, [])

        with pytest.raises(NotFoundError, match="no header row"):
            await backend.write_items(TABLE, [TestRecord(id="a", status="passing")])

    async def test_write_failure_raises(
        self, backend: GoogleSheetsBackend, aioresponses: aioresponses_cls
    ) -> None:
        """A rejected write raises a storage error."""
        mock_worksheet(aioresponses, [HEADERS, ["a", "passing"]])
        aioresponses.post(BATCH_UPDATE_URL, status=403, body="forbidden")

        with pytest.raises(AuthError, match="403"):
            await backend.write_items(TABLE, [TestRecord(id="a", status="failing")])
