"""
Lifecycle event channel shared by workers and the manager.
"""

from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class WorkerEvent(str, Enum):
    """Events emitted by workers and the worker manager."""

    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    HEALTH_CHECK = "health_check"
    SYSTEM_UNHEALTHY = "system_unhealthy"


EventListener = Callable[[WorkerEvent, dict[str, Any]], None]


class EventEmitter:
    """Plain callback channel.

    Listeners run synchronously in emit order. A failing listener is logged
    and never interrupts the emitter or the remaining listeners.
    """

    def __init__(self):
        self._listeners: dict[WorkerEvent | None, list[EventListener]] = {}

    def subscribe(
        self, listener: EventListener, event: WorkerEvent | None = None
    ) -> Callable[[], None]:
        """Register a listener for one event, or for all events when None.

        Returns a callable that removes the listener.
        """
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def emit(self, event: WorkerEvent, payload: dict[str, Any] | None = None) -> None:
        payload = payload or {}
        for listener in [*self._listeners.get(event, []), *self._listeners.get(None, [])]:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Event listener failed", event=event.value)

    def listener_count(self, event: WorkerEvent | None = None) -> int:
        return len(self._listeners.get(event, []))
