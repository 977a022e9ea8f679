# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Bridge to the host: remote procedure calls out, published events in.

LocalBridge dispatches calls to services registered in-process and fans
published events out to subscribers and an append-only JSONL event file.
"""

import inspect
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol


logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Any], Any]


class BridgeError(Exception):
    """Raised when a remote procedure call cannot be dispatched."""

    pass


class Bridge(Protocol):
    """What scripts and the mode controller need from the host."""

    async def call_proc(self, service_id: str, method: str, *args: Any) -> Any:
        ...

    async def publish(self, topic: str, payload: Any) -> None:
        ...


class EventClient:
    """Simple JSONL event logger."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path).expanduser()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def log_event(self, topic: str, payload: Any) -> None:
        """Log an event to the JSONL file."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "topic": topic,
            "payload": payload,
        }
        with open(self.log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")


class LocalBridge:
    """In-process bridge.

    Services are plain callables or objects. A call to ("svc", "GET", ...)
    invokes the callable with (method, *args), or the attribute named by
    method on an object. Either may be a coroutine function.
    """

    def __init__(self, event_client: Optional[EventClient] = None):
        self._services: Dict[str, Any] = {}
        self._subscribers: List[Subscriber] = []
        self.event_client = event_client

    def register_service(self, service_id: str, handler: Any) -> None:
        self._services[service_id] = handler

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def call_proc(self, service_id: str, method: str, *args: Any) -> Any:
        """Invoke a registered service.

        Raises:
            BridgeError: If the service or method is unknown.
        """
        handler = self._services.get(service_id)
        if handler is None:
            raise BridgeError(f"service {service_id!r} is not registered")

        if callable(handler):
            result = handler(method, *args)
        else:
            target = getattr(handler, method, None)
            if target is None or method.startswith("_"):
                raise BridgeError(f"service {service_id!r} has no method {method!r}")
            result = target(*args)

        if inspect.isawaitable(result):
            result = await result
        logger.debug(f"callProc {service_id}.{method} -> {result!r}")
        return result

    async def publish(self, topic: str, payload: Any) -> None:
        """Deliver an event to the event file and every subscriber."""
        if self.event_client is not None:
            self.event_client.log_event(topic, payload)

        for subscriber in list(self._subscribers):
            try:
                result = subscriber(topic, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"subscriber failed on {topic!r} event")
