"""Registration record a distribution publishes for a storage backend."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from flake_quarantine.backends.base import StorageBackend

type BackendOpener[ConfigT] = Callable[
    [ConfigT], AbstractAsyncContextManager[StorageBackend]
]


@dataclass(frozen=True, kw_only=True)
class BackendManifest[ConfigT: BaseModel]:
    """Storage backend published under the ``flake_quarantine.backends`` group.

    ``config_cls`` validates the ``database`` options of the quarantine
    configuration (minus ``type``); ``backend_factory`` opens a backend for
    one storage operation and closes it on exit.
    """

    config_cls: type[ConfigT]
    backend_factory: BackendOpener[ConfigT]
