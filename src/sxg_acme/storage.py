"""Key-value storage where the state machine keeps its progress."""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from sxg_acme.exceptions import ConfigurationError
from sxg_acme.models import AcmeState

ACME_STATE_KEY = "acme"


class Storage(ABC):
    """Abstract string key-value store owned by the orchestrator."""

    @abstractmethod
    def read(self, key: str) -> str | None: ...

    @abstractmethod
    def write(self, key: str, value: str) -> None: ...


class InMemoryStorage(Storage):
    """Storage that lives as long as the process."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value


class FileStorage(Storage):
    """Storage in a directory, one file per key.

    Lets a restarted run pick the order up where the previous one stopped.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so an interrupted run never leaves half a file
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, self._path(key))


def load_state(storage: Storage) -> AcmeState:
    """Read the ACME state, or an empty one if nothing was stored yet."""
    raw = storage.read(ACME_STATE_KEY)
    if raw is None:
        return AcmeState()
    try:
        return AcmeState.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Stored ACME state is corrupt: {e}") from e


def save_state(storage: Storage, state: AcmeState) -> None:
    storage.write(ACME_STATE_KEY, state.model_dump_json(by_alias=True))
