from __future__ import annotations

import asyncio
from collections import defaultdict
import inspect
import logging
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]

AUDIT_LOGGED = "audit.logged"
AUDIT_CRITICAL = "audit.critical"
AUDIT_ANOMALY = "audit.anomaly"
SECURITY_VIOLATION = "security.violation"
INCIDENT_CREATED = "incident.created"
INCIDENT_CRITICAL = "incident.critical"
INCIDENT_UPDATED = "incident.updated"
BREACH_NOTIFICATION_SCHEDULED = "breach.notification.scheduled"
BREACH_NOTIFICATION_SENT = "breach.notification.sent"


class EventBus:
    """In-process fan-out for security events.

    ``emit`` never blocks on or raises from subscribers: coroutine handlers are
    scheduled as tasks and plain handlers run inline behind a logging guard.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception:  # noqa: BLE001 - subscribers must not break emitters
                logger.exception("event_handler_failed event=%s", event)
                continue
            if inspect.isawaitable(result):
                self._schedule_awaitable(event, result)

    def _schedule_awaitable(self, event: str, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event_dropped_no_loop event=%s", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._run(event, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception:  # noqa: BLE001 - subscribers must not break emitters
            logger.exception("event_handler_failed event=%s", event)

    async def drain(self) -> None:
        # Wait for scheduled handlers; used on shutdown and in tests.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    global _event_bus
    _event_bus = None
