"""Capabilities granted to a single script invocation.

A CapabilityEnvironment is built fresh for every run and lists, by name,
every host function or value the script may see. Nothing else from the
host process is reachable from script code.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import asyncio
import copy
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from macro.bridge import Bridge
    from macro.ringlog import RingLog


logger = logging.getLogger(__name__)

# Granted by the sandbox itself on every run
STANDARD_CAPABILITIES = ("resolve", "reject", "print", "callProc")

# Granted by the sandbox for jobs that signal completion explicitly
END_CAPABILITY = "end"

RESERVED_NAMES = frozenset(STANDARD_CAPABILITIES) | {END_CAPABILITY}


class CapabilityClosedError(RuntimeError):
    """Raised inside a script that uses a capability after its run ended."""

    pass


class CapabilityEnvironment:
    """Named functions and values visible to one script invocation.

    Functions may be plain or coroutine functions. The sandbox calls them on
    the event loop on behalf of the script thread.
    """

    def __init__(self, name: str):
        self.name = name
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._values: Dict[str, Any] = {}
        self._closed = False

    def _check_name(self, name: str) -> None:
        if self._closed:
            raise CapabilityClosedError(f"{self.name}: environment already used")
        if not name.isidentifier() or name.startswith("_"):
            raise ValueError(f"capability name must be a public identifier, got: {name!r}")
        if name in RESERVED_NAMES:
            raise ValueError(f"capability {name!r} is provided by the sandbox")
        if name in self._functions or name in self._values:
            raise ValueError(f"capability {name!r} already granted")

    def grant(self, name: str, func: Callable[..., Any]) -> "CapabilityEnvironment":
        """Grant a host function under name."""
        self._check_name(name)
        self._functions[name] = func
        return self

    def provide(self, name: str, value: Any) -> "CapabilityEnvironment":
        """Expose a value (e.g. the job's shared map) under name."""
        self._check_name(name)
        self._values[name] = value
        return self

    @property
    def functions(self) -> Dict[str, Callable[..., Any]]:
        return dict(self._functions)

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def names(self) -> List[str]:
        """Every name a script run with this environment can see."""
        return sorted(set(STANDARD_CAPABILITIES) | set(self._functions) | set(self._values))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the run as finished; later capability calls raise."""
        self._closed = True


def make_add_log(ring: "RingLog", bridge: "Bridge") -> Callable[..., Any]:
    """addLog(name, value): append to ring and publish a "log" event."""

    async def add_log(name: Any, value: Any = None) -> int:
        entry = ring.append({"name": name, "value": value})
        await bridge.publish("log", entry.to_dict())
        return entry.id

    return add_log


def make_get_args(args: Optional[Dict[str, Any]]) -> Callable[[], Dict[str, Any]]:
    """getArgs(): a copy of the request arguments, taken at grant time."""
    snapshot = copy.deepcopy(args or {})

    def get_args() -> Dict[str, Any]:
        return copy.deepcopy(snapshot)

    return get_args


async def wait(duration_ms: Any) -> None:
    """wait(durationMs): suspend the calling script, not the host."""
    await asyncio.sleep(max(float(duration_ms), 0) / 1000)
