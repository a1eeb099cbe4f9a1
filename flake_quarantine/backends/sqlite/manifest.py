"""SQLite backend manifest."""

from flake_quarantine.backends.manifest import BackendManifest
from flake_quarantine.backends.sqlite.backend import SqliteBackend
from flake_quarantine.backends.sqlite.config import SqliteConfig

sqlite_manifest = BackendManifest(
    config_cls=SqliteConfig,
    backend_factory=SqliteBackend.from_config,
)
