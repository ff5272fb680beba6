"""Single event channel between the execution engine and its subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from agent_runner.graph.models import IssueEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[IssueEvent], object]


class EventBus:
    """Fan-out of engine events to any number of subscribers.

    Handlers run synchronously in subscription order, so by the time
    :meth:`publish` returns every subscriber (the persistence writer first of
    all) has seen the event. A handler exception propagates to the publisher.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable unsubscribes it."""

        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def has_subscribers(self) -> bool:
        return bool(self._handlers)

    def publish(self, event: IssueEvent) -> None:
        for handler in list(self._handlers):
            handler(event)

    async def listen(self, *, maxsize: int = 0) -> AsyncIterator[IssueEvent]:
        """Async stream of events published after the listener was attached.

        With a bounded ``maxsize`` a slow consumer loses events instead of
        stalling or failing the publisher.
        """

        queue: asyncio.Queue[IssueEvent] = asyncio.Queue(maxsize=maxsize)

        def enqueue(event: IssueEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Listener queue full (maxsize=%d); dropped %s for issue %s",
                    maxsize,
                    event.event_type.value,
                    event.issue_id,
                )

        unsubscribe = self.subscribe(enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
