"""Session-scoped notification channel."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from helmsman.logging import get_logger

log = get_logger(__name__)


class EventKind(str, Enum):
    """Notifications published inside one session."""

    CATALOG_CHANGED = "catalog_changed"
    PLUGIN_STATUS = "plugin_status"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_FINISHED = "tool_call_finished"
    COMMANDS_CHANGED = "commands_changed"
    SESSION_CANCELLED = "session_cancelled"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[SessionEvent], None]


class EventChannel:
    """Publish/subscribe channel owned by a single session."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventHandler, frozenset[EventKind] | None]] = []

    def subscribe(
        self,
        handler: EventHandler,
        kinds: Iterable[EventKind] | None = None,
    ) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        entry = (handler, frozenset(kinds) if kinds is not None else None)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def subscribe_queue(
        self,
        kinds: Iterable[EventKind] | None = None,
        maxsize: int = 0,
    ) -> tuple["asyncio.Queue[SessionEvent]", Callable[[], None]]:
        """Deliver events into an asyncio queue; full queues drop new events."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: SessionEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("Dropping session event for full queue", kind=event.kind.value)

        return queue, self.subscribe(_enqueue, kinds)

    def publish(self, kind: EventKind, **payload: Any) -> None:
        event = SessionEvent(kind=kind, payload=payload)
        for handler, kinds in list(self._subscribers):
            if kinds is not None and kind not in kinds:
                continue
            try:
                handler(event)
            except Exception as e:
                log.warning("Session event handler failed", kind=kind.value, error=str(e))
