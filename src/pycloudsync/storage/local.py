"""Synchronous local durable cache.

Application wide (not per identity) key to JSON-text storage. Reads and
writes never suspend, so the sync engine can serve a fallback value
without a round trip.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pycloudsync.exceptions import SerializationError

_logger = logging.getLogger(__name__)


class LocalCache(Protocol):
    """Structural interface of the local durable cache."""

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryLocalCache:
    """Process-lifetime cache, mostly for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class FileLocalCache:
    """Cache persisted as one JSON object in a file.

    The whole file is rewritten on every ``set`` through a temporary file
    and ``os.replace`` so a crash never leaves a truncated document.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._data: dict[str, str] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        text = self._path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SerializationError(f"Local cache file {self._path} is not JSON") from exc
        if not isinstance(raw, dict):
            raise SerializationError(f"Local cache file {self._path} is not a JSON object")
        data: dict[str, str] = {}
        for key, value in raw.items():
            if isinstance(value, str):
                data[str(key)] = value
            else:
                _logger.debug("Skipping non-text local cache entry key=%s", key)
        return data

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()
