"""
State-transition notifications for capture sessions.

Each supervisor owns one EventChannel. Consumers subscribe to it instead of
polling session state; listeners are called from background threads and must
not block.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .models import SessionState

logger = logging.getLogger(__name__)


@dataclass
class SessionEvent:
    device_id: str
    state: SessionState
    previous: Optional[SessionState] = None
    message: str = ""
    error: Optional[Exception] = None
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[SessionEvent], None]


class EventChannel:
    """Fan-out of SessionEvents to subscribed listeners"""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session event listener failed for {event.device_id}")
