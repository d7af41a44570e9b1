"""In-process fan-out of lifecycle events to real-time subscribers."""

from __future__ import annotations

import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from rfpflow.models.events import EventType, SSEEvent

Subscriber = Callable[[SSEEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Best-effort publisher.

    Subscribers are awaited in registration order. A subscriber that raises is
    logged and skipped; observers recover missed events by polling job state.
    """

    def __init__(self, history_size: int = 1000):
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []
        self.history: deque[SSEEvent] = deque(maxlen=history_size)

    def subscribe(
        self,
        callback: Subscriber,
        event_types: list[EventType] | None = None,
    ) -> Callable[[], None]:
        entry = (callback, frozenset(event_types) if event_types else None)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    async def publish(self, event: SSEEvent) -> None:
        self.history.append(event)
        for callback, types in list(self._subscribers):
            if types is not None and event.event not in types:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Event subscriber failed for {event.event.value}: {exc}")

    def events_of(self, event_type: EventType) -> list[SSEEvent]:
        return [event for event in self.history if event.event == event_type]


class NullNotifier:
    async def publish(self, event: SSEEvent) -> None:
        return None
