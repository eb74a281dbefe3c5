"""In-process pub/sub event bus for session, compaction and sandbox events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["RunledgerEvent", dict[str, Any]], None | Awaitable[None]]


class RunledgerEvent(StrEnum):
    """All event types published by runledger components.

    Typed payloads for each event live in :mod:`runledger.events.payloads`.
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_LOADED = "session.loaded"

    # Ledger
    MESSAGE_APPENDED = "message.appended"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"

    # Sandbox lifecycle
    SANDBOX_CREATED = "sandbox.created"
    SANDBOX_RECREATED = "sandbox.recreated"

    # Agent steps
    RUN_STARTED = "run.started"
    RUN_FINISHED = "run.finished"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged and never reach the publisher.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"Folded {payload['compacted_count']} messages")

        bus.subscribe(RunledgerEvent.COMPACTION_COMPLETED, on_compaction)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[RunledgerEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("runledger.events")

    def subscribe(self, event: RunledgerEvent, handler: Handler) -> None:
        """Register a handler for a specific event type."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for every event type."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: RunledgerEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: RunledgerEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Args:
            event: The event type to publish.
            payload: Event-specific data dictionary.
        """
        for handler in [*self._handlers.get(event, []), *self._global_handlers]:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        # No running loop: the coroutine can never be awaited.
                        result.close()
                        continue
                    task = loop.create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
