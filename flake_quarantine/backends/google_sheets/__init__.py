"""Google Sheets backend module."""

from flake_quarantine.backends.google_sheets.backend import GoogleSheetsBackend
from flake_quarantine.backends.google_sheets.config import GoogleSheetsConfig
from flake_quarantine.backends.google_sheets.manifest import google_sheets_manifest

__all__ = ["GoogleSheetsBackend", "GoogleSheetsConfig", "google_sheets_manifest"]
