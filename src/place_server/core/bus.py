"""
Replica event bus.

The replica engine records what happened to its state here, and the
rendering layer subscribes. The bus does one thing: record facts and hand
them to subscribers.

Principles:

1. EVENTS ARE FACTS
   "pixel:changed" means the replica already changed the pixel. Handlers
   react; they cannot veto.

2. EVENTS ARE IMMUTABLE
   ``BusEvent`` and its metadata are frozen dataclasses.

3. EMIT IS SYNCHRONOUS
   The event gets a sequence number and is committed to the bounded log
   before any handler runs. Async handlers are scheduled afterwards and do
   not affect ordering.

Unlike a process-wide singleton, each ``ReplicaSyncEngine`` owns its own
bus, so tearing down one replica drops exactly its subscribers.

Usage:

    bus = CanvasBus()
    unsubscribe = bus.on(Events.PIXEL_CHANGED, lambda e: redraw(e.detail))
    bus.emit(Events.PIXEL_CHANGED, {"px": 1, "py": 2, "color": 3})
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


SyncHandler = Callable[["BusEvent"], None]
AsyncHandler = Callable[["BusEvent"], Coroutine[Any, Any, None]]
EventHandler = SyncHandler | AsyncHandler
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class EventMetadata:
    """
    Metadata attached to every event.

    Attributes:
        timestamp: Unix epoch milliseconds (UTC) at emission. For display,
            not ordering.
        source: Component that emitted the event ("replica", "bootstrap").
        sequence: Monotonic per-bus counter; the only reliable order.
    """

    timestamp: int
    source: str
    sequence: int

    @staticmethod
    def create(source: str, sequence: int) -> EventMetadata:
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        return EventMetadata(timestamp=now_ms, source=source, sequence=sequence)


@dataclass(frozen=True)
class BusEvent:
    """
    A single event on the bus.

    Attributes:
        type: "domain:action" event type, see ``place_server.core.events``.
        detail: Event payload. Treat as read-only.
        _meta: Sequence, source and timestamp assigned by the bus.
    """

    type: str
    detail: dict = field(default_factory=dict)
    _meta: EventMetadata | None = field(default=None)

    def __str__(self) -> str:
        if self._meta:
            return (
                f"BusEvent(type='{self.type}', "
                f"source='{self._meta.source}', "
                f"seq={self._meta.sequence})"
            )
        return f"BusEvent(type='{self.type}')"

    @property
    def meta(self) -> EventMetadata | None:
        return self._meta


class CanvasBus:
    """
    Per-replica event bus.

    Not thread-safe; the replica runs on a single asyncio loop.

    Key Methods:
    - emit(): Record an event (synchronous, returns committed event)
    - on(): Subscribe to an event type (returns unsubscribe function)
    - once(): Subscribe for a single event only
    - wait_for(): Async wait for an event
    - get_event_log(): Retrieve recent history
    - close(): Drop every subscriber and pending waiter
    """

    def __init__(self, *, log_size: int = 1000) -> None:
        # Registration order is kept so handler execution order is deterministic.
        self._handlers: dict[str, list[EventHandler]] = {}
        self._event_log: deque[BusEvent] = deque(maxlen=log_size)
        self._sequence: int = 0
        self._wait_promises: dict[str, list[asyncio.Future[BusEvent]]] = {}
        self.debug: bool = False

    # =========================================================================
    # EMIT
    # =========================================================================

    def emit(
        self, event_type: str, detail: dict[str, Any] | None = None, source: str = "replica"
    ) -> BusEvent:
        """
        Emit an event.

        When this returns the event has a sequence number, is in the log,
        every sync handler has run and every async handler is scheduled.

        Args:
            event_type: The event type, e.g. ``Events.PIXEL_CHANGED``.
            detail: The event payload. Defaults to an empty dict.
            source: Which component is emitting.

        Returns:
            The committed BusEvent.
        """
        self._sequence += 1
        event = BusEvent(
            type=event_type,
            detail=detail if detail is not None else {},
            _meta=EventMetadata.create(source, self._sequence),
        )
        self._event_log.append(event)
        if self.debug:
            logger.debug(f"EMIT [{self._sequence}]: {event.type} from {source}")

        self._notify_handlers(event)
        self._resolve_wait_promises(event)
        return event

    def _notify_handlers(self, event: BusEvent) -> None:
        """Call handlers in registration order; one failing handler never stops the rest."""
        for handler in list(self._handlers.get(event.type, ())):
            try:
                if asyncio.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Handler error for '{event.type}': {e}", exc_info=True)

    def _schedule_async_handler(self, handler: AsyncHandler, event: BusEvent) -> None:
        """Run an async handler as a task, or to completion when no loop is running."""
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(handler(event))
        except RuntimeError:
            asyncio.run(handler(event))

    def _resolve_wait_promises(self, event: BusEvent) -> None:
        waiters = self._wait_promises.pop(event.type, None)
        if not waiters:
            return
        for future in waiters:
            if not future.done():
                future.set_result(event)

    # =========================================================================
    # SUBSCRIBE
    # =========================================================================

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """
        Subscribe to an event type.

        Returns:
            A function that removes this subscription. Calling it twice is
            harmless.
        """
        self._handlers.setdefault(event_type, []).append(handler)
        if self.debug:
            count = len(self._handlers[event_type])
            logger.debug(f"SUBSCRIBE: '{event_type}' (total handlers: {count})")

        def unsubscribe() -> None:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def once(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe for the next event of ``event_type`` only."""
        unsub: Unsubscribe | None = None

        def one_time_wrapper(event: BusEvent) -> None:
            try:
                if asyncio.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            finally:
                if unsub is not None:
                    unsub()

        unsub = self.on(event_type, one_time_wrapper)
        return unsub

    async def wait_for(self, event_type: str, timeout_ms: int | None = None) -> BusEvent:
        """
        Wait until an event of ``event_type`` is emitted.

        Raises:
            TimeoutError: If ``timeout_ms`` elapses first.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[BusEvent] = loop.create_future()
        self._wait_promises.setdefault(event_type, []).append(future)
        if timeout_ms is not None:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000.0)
        return await future

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def get_event_log(self, limit: int | None = None) -> list[BusEvent]:
        """Return logged events oldest first, optionally only the last ``limit``."""
        if limit is not None:
            return list(self._event_log)[-limit:]
        return list(self._event_log)

    def get_sequence(self) -> int:
        return self._sequence

    def get_handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))

    def close(self) -> None:
        """Drop all subscribers and cancel pending waiters without raising."""
        self._handlers.clear()
        for waiters in self._wait_promises.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._wait_promises.clear()
