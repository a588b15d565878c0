from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any

from probehub.core.errors import StoreError

KEY_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,127}$")


class JsonFileStore:
    """One JSON document per key under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def save(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        try:
            payload = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for {key!r} is not JSON-serializable") from e

        with self._lock:
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._directory, prefix=f".{key}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.write(payload)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise StoreError(f"Could not write {path}") from e

    def load(self, key: str) -> Any | None:
        path = self._path_for(key)
        with self._lock:
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as e:
                raise StoreError(f"Could not read {path}") from e
        try:
            return json.loads(text)
        except ValueError as e:
            raise StoreError(f"Corrupt snapshot in {path}") from e

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreError(f"Could not delete {path}") from e

    def _path_for(self, key: str) -> Path:
        if not KEY_PATTERN.match(key):
            raise StoreError(f"Invalid store key {key!r}")
        return self._directory / f"{key}.json"
