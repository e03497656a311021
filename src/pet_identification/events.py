"""
Status events
Fire-and-forget status transitions consumed by whatever UI sits on top.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List


class StatusKind(str, Enum):
    INITIALIZING = "initializing"
    TRAINING = "training"
    STORAGE = "storage"
    COMPARISON = "comparison"
    ADDING = "adding"
    DONE = "done"


@dataclass
class StatusEvent:
    """A named status transition with a human-readable message"""
    kind: StatusKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


StatusListener = Callable[[StatusEvent], None]


class StatusEmitter:
    """
    Broadcasts status events to subscribed listeners.

    Every event is logged, so emitting with no listener attached is still
    observable. A failing listener is logged and skipped; it never breaks the
    operation that emitted the event.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._listeners: List[StatusListener] = []
        self.history: List[StatusEvent] = []
        self.max_history = 200

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, kind: StatusKind, message: str, **details) -> StatusEvent:
        event = StatusEvent(kind=StatusKind(kind), message=message, details=details)

        self.history.append(event)
        if len(self.history) > self.max_history:
            del self.history[:-self.max_history]

        self.logger.info(f"[{event.kind.value}] {message}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.warning(f"Status listener failed on {event.kind.value}: {e}")

        return event
