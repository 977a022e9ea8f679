# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Bounded, newest-first append log persisted through a KeyValueStore.

The in-memory list is the source of truth after load. Every mutation
writes the full list to the store before it returns; if the write fails
the in-memory list is left as it was.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from macro.config import ConfigError
from macro.schemas import RingLogEntry
from macro.store import KeyValueStore


logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 50

Predicate = Callable[[RingLogEntry], bool]


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def field_equals(name: str, value: Any) -> Predicate:
    """Predicate matching entries whose payload field equals value."""

    def predicate(entry: RingLogEntry) -> bool:
        return name in entry.payload and entry.payload[name] == value

    return predicate


def _check_size(max_size: Any) -> int:
    if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size <= 0:
        raise ConfigError(f"ring log size must be a positive integer, got: {max_size!r}")
    return max_size


class RingLog:
    """A named ring log ("modeHistory", "periodicalLog", "pollLog", ...)."""

    def __init__(
        self,
        name: str,
        store: KeyValueStore,
        max_size: int,
        key: Optional[str] = None,
    ):
        """
        Load the log from the store.

        Args:
            name: Log name, used in log messages.
            store: Persistence backend.
            max_size: Maximum number of entries kept.
            key: Store key (defaults to name).
        """
        self.name = name
        self.key = key or name
        self._store = store
        self._max_size = _check_size(max_size)
        self._entries: List[RingLogEntry] = self._load()

    def _load(self) -> List[RingLogEntry]:
        raw = self._store.get(self.key, [])
        if not isinstance(raw, list):
            logger.warning(f"{self.name}: stored value is not a list, starting empty")
            return []

        entries = []
        for item in raw:
            try:
                entries.append(RingLogEntry.from_dict(item))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"{self.name}: dropping unreadable entry: {e}")
        return entries[: self._max_size]

    def _persist(self, entries: List[RingLogEntry]) -> None:
        self._store.set(self.key, [entry.to_dict() for entry in entries])

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def head(self) -> Optional[RingLogEntry]:
        """Newest entry, or None when empty."""
        return self._entries[0] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, payload: Dict[str, Any]) -> RingLogEntry:
        """Add a new entry at the head, truncate, persist.

        Raises:
            PersistenceError: If the store rejects the write (log unchanged).
        """
        head = self.head
        entry = RingLogEntry(
            id=0 if head is None else head.id + 1,
            created_at=_utcnow(),
            payload=dict(payload),
        )
        entries = [entry] + self._entries[: self._max_size - 1]
        self._persist(entries)
        self._entries = entries
        logger.debug(f"{self.name}: appended entry {entry.id}")
        return entry

    def query(
        self,
        predicate: Optional[Predicate] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[RingLogEntry]:
        """Newest-first entries matching predicate, at most limit of them."""
        matches = self._entries if predicate is None else [e for e in self._entries if predicate(e)]
        return matches[: max(limit, 0)]

    def all(self) -> List[RingLogEntry]:
        return list(self._entries)

    def to_list(self) -> List[Dict[str, Any]]:
        """Serialized entries, newest first."""
        return [entry.to_dict() for entry in self._entries]

    def clear(self) -> None:
        """Empty the log and persist the empty state."""
        self._persist([])
        self._entries = []
        logger.info(f"{self.name}: cleared")

    def resize(self, max_size: int) -> None:
        """Change the maximum size; a shrink truncates and persists at once."""
        max_size = _check_size(max_size)
        if len(self._entries) > max_size:
            entries = self._entries[:max_size]
            self._persist(entries)
            self._entries = entries
            logger.info(f"{self.name}: truncated to {max_size} entries")
        self._max_size = max_size
