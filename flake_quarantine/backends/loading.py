"""Lookup of storage backends registered as entry points."""

from importlib.metadata import entry_points
from typing import Any

from flake_quarantine.backends.manifest import BackendManifest
from flake_quarantine.errors import ConfigurationError

ENTRY_POINT_GROUP = "flake_quarantine.backends"


class BackendNotFoundError(ConfigurationError):
    """No installed distribution registers the requested database type."""


def available_backends() -> list[str]:
    """Database types of every installed backend, sorted."""
    return sorted({entry.name for entry in entry_points(group=ENTRY_POINT_GROUP)})


def load_backend_manifest(key: str) -> BackendManifest[Any]:
    """Import the manifest registered for a database type.

    Raises:
        BackendNotFoundError: If no entry point is named ``key``
        ConfigurationError: If the entry point is not a ``BackendManifest``

    """
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    if not matches:
        raise BackendNotFoundError(
            f"Backend '{key}' not found. Available backends: {available_backends()}"
        )

    entry = next(iter(matches))
    manifest = entry.load()
    if not isinstance(manifest, BackendManifest):
        raise ConfigurationError(
            f"Entry point '{key}' ({entry.value}) is not a backend manifest"
        )
    return manifest
