"""State-change event stream.

The single contract exposed to consumers: every transition of a session's
branch acquisition or preview publishes a ``StateChangeEvent`` carrying the
full, immutable session snapshot.

Subscribers are either plain callbacks (``subscribe``) or async iterators
(``stream``). A failing callback is logged and skipped; it never reaches
the state machine that published the event.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable

from .model import SessionKey, SessionSnapshot, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STREAM_BUFFER = 256


@dataclass(frozen=True, slots=True)
class StateChangeEvent:
    """One published transition."""

    key: SessionKey
    session: SessionSnapshot
    sequence: int
    emitted_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[StateChangeEvent], None]


class EventBus:
    """In-process fan-out of state-change events."""

    def __init__(self) -> None:
        self._subscribers: dict[int, tuple[SessionKey | None, Subscriber]] = {}
        self._ids = itertools.count(1)
        self._sequence = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        callback: Subscriber,
        *,
        key: SessionKey | None = None,
    ) -> Callable[[], None]:
        """Register ``callback`` for one key (or all keys when None).

        Returns an idempotent unsubscribe function.
        """
        sub_id = next(self._ids)
        self._subscribers[sub_id] = (key, callback)

        def unsubscribe() -> None:
            self._subscribers.pop(sub_id, None)

        return unsubscribe

    def publish(self, session: SessionSnapshot) -> StateChangeEvent:
        event = StateChangeEvent(
            key=session.key,
            session=session,
            sequence=next(self._sequence),
        )
        for key, callback in list(self._subscribers.values()):
            if key is not None and key != event.key:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "State-change subscriber failed for %s", event.key,
                )
        return event

    async def stream(
        self,
        key: SessionKey | None = None,
        *,
        buffer: int = DEFAULT_STREAM_BUFFER,
    ) -> AsyncIterator[StateChangeEvent]:
        """Yield events as they are published.

        A slow consumer loses the oldest buffered events, never the newest:
        each event carries a full snapshot, so the latest one is sufficient.
        """
        queue: asyncio.Queue[StateChangeEvent] = asyncio.Queue(maxsize=buffer)

        def _enqueue(event: StateChangeEvent) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

        unsubscribe = self.subscribe(_enqueue, key=key)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
