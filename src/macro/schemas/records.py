# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Records produced by script runs.

RingLogEntry is what the ring logs store and return. Its serialized form is
flat so callers see payload fields next to the bookkeeping:

    {"created_at": "...", "mode": "away", "result": "ok",
     "meta": {"id": 0, "timestamp": 1700000000}}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RingLogEntry:
    """One entry of a ring log. ids increase by one per append."""
    id: int
    created_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        """Read a payload field."""
        return self.payload.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the flat persisted/response shape."""
        return {
            "created_at": self.created_at.isoformat(),
            **self.payload,
            "meta": {
                "id": self.id,
                "timestamp": int(self.created_at.timestamp()),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RingLogEntry":
        """Rebuild an entry from its serialized shape.

        Raises:
            ValueError: If id or created_at is missing or malformed.
        """
        meta = data.get("meta") or {}
        if "id" not in meta:
            raise ValueError(f"ring log entry has no meta.id: {data!r}")

        created_raw = data.get("created_at")
        if isinstance(created_raw, str):
            created_at = datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        elif "timestamp" in meta:
            created_at = datetime.fromtimestamp(meta["timestamp"], tz=timezone.utc)
        else:
            raise ValueError(f"ring log entry has no created_at: {data!r}")

        payload = {k: v for k, v in data.items() if k not in ("created_at", "meta")}
        return cls(id=int(meta["id"]), created_at=created_at, payload=payload)


@dataclass(frozen=True)
class ScriptOutcome:
    """Terminal result of one script invocation: a value or an error."""
    ok: bool
    value: Any = None
    error: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "ScriptOutcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Any) -> "ScriptOutcome":
        return cls(ok=False, error=error)

    def error_message(self) -> Optional[str]:
        if self.ok:
            return None
        if isinstance(self.error, dict) and "message" in self.error:
            return str(self.error["message"])
        return str(self.error)
