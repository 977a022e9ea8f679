"""Shared fixtures for macro tests."""

import pytest

from macro.bridge import LocalBridge
from macro.store import MemoryStore, PersistenceError


class RecordingBridge(LocalBridge):
    """LocalBridge that remembers every published event."""

    def __init__(self):
        super().__init__()
        self.published = []
        self.subscribe(lambda topic, payload: self.published.append((topic, payload)))

    def topics(self, topic):
        return [payload for t, payload in self.published if t == topic]


class FailingStore(MemoryStore):
    """Store whose writes fail once `fail` is set, or for keys in `fail_keys`."""

    def __init__(self):
        super().__init__()
        self.fail = False
        self.fail_keys = set()

    def set(self, key, value):
        if self.fail or key in self.fail_keys:
            raise PersistenceError("store unavailable")
        super().set(key, value)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def bridge():
    return RecordingBridge()
