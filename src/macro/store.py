# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Key-value persistence for ring logs.

Two stores share the same two-call surface:
- JsonFileStore: one JSON document per key under a state directory
- MemoryStore: process-local, for tests and one-shot commands
"""

import copy
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Protocol


logger = logging.getLogger(__name__)

# Keys become file names: letters, digits, underscore and hyphen only
KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class PersistenceError(Exception):
    """Raised when the store cannot confirm a write."""

    pass


class KeyValueStore(Protocol):
    """What the ring logs need from persistence."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


def validate_key(key: str) -> None:
    """Validate a store key.

    Raises:
        PersistenceError: If the key is empty or could escape the state directory.
    """
    if not key or not KEY_PATTERN.match(key):
        raise PersistenceError(
            f"store key must be alphanumeric with '-' or '_' only, got: {key!r}"
        )


class MemoryStore:
    """Dict-backed store. Values are deep-copied in both directions."""

    def __init__(self, initial: Dict[str, Any] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        validate_key(key)
        self._data[key] = copy.deepcopy(value)


class JsonFileStore:
    """Store that keeps each key in <state_dir>/<key>.json."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir).expanduser()

    def _path(self, key: str) -> Path:
        validate_key(key)
        return self.state_dir / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        """Load a value.

        Returns:
            The stored value, or default if the file is missing or corrupted.
        """
        path = self._path(key)
        if not path.exists():
            return default

        try:
            with open(path) as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring corrupted state file {path}: {e}")
            return default

    def set(self, key: str, value: Any) -> None:
        """Write a value atomically (temp file + rename).

        Raises:
            PersistenceError: If the value cannot be serialized or written.
        """
        path = self._path(key)
        try:
            payload = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"value for {key!r} is not JSON serializable: {e}")

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"failed to write {path}: {e}")
