"""Google Sheets backend manifest."""

from flake_quarantine.backends.google_sheets.backend import GoogleSheetsBackend
from flake_quarantine.backends.google_sheets.config import GoogleSheetsConfig
from flake_quarantine.backends.manifest import BackendManifest

google_sheets_manifest = BackendManifest(
    config_cls=GoogleSheetsConfig,
    backend_factory=GoogleSheetsBackend.from_config,
)
