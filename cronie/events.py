"""
Live output events.

Shell executions publish session lifecycle and output chunks to an
EventBus. Listeners subscribe with an event mask, the same way
APScheduler listeners are registered:

    bus.add_listener(on_output, EVENT_SESSION_STDOUT | EVENT_SESSION_STDERR)

Delivery is synchronous on the publishing thread (the process reader
threads), so listeners should return quickly.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

EVENT_SESSION_START = 2 ** 0
EVENT_SESSION_STDOUT = 2 ** 1
EVENT_SESSION_STDERR = 2 ** 2
EVENT_SESSION_EXIT = 2 ** 3
EVENT_ALL = EVENT_SESSION_START | EVENT_SESSION_STDOUT | EVENT_SESSION_STDERR | EVENT_SESSION_EXIT


@dataclass(frozen=True)
class SessionEvent:
    code: int
    session_id: str


@dataclass(frozen=True)
class SessionStartEvent(SessionEvent):
    task_id: int
    task_name: str
    command: str


@dataclass(frozen=True)
class SessionOutputEvent(SessionEvent):
    """A chunk of output exactly as the pipe yielded it (no line reassembly)."""
    data: str

    @property
    def stream(self) -> str:
        return 'stderr' if self.code == EVENT_SESSION_STDERR else 'stdout'


@dataclass(frozen=True)
class SessionExitEvent(SessionEvent):
    exit_code: Optional[int]
    status: str


Listener = Callable[[SessionEvent], None]


class EventBus:
    """Fan-out of session events to zero or more listeners."""

    def __init__(self):
        self._listeners: List[Tuple[Listener, int]] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: Listener, mask: int = EVENT_ALL):
        """
        Register a listener.

        Args:
            callback: Called with each matching SessionEvent
            mask: Bitmask of EVENT_* codes the listener wants
        """
        with self._lock:
            self._listeners.append((callback, mask))

    def remove_listener(self, callback: Listener):
        with self._lock:
            self._listeners = [(cb, mask) for cb, mask in self._listeners if cb != callback]

    def publish(self, event: SessionEvent):
        with self._lock:
            listeners = list(self._listeners)

        for callback, mask in listeners:
            if event.code & mask:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Event listener {callback!r} raised on {type(event).__name__}")

    def session_started(self, session_id: str, task_id: int, task_name: str, command: str):
        self.publish(SessionStartEvent(
            code=EVENT_SESSION_START,
            session_id=session_id,
            task_id=task_id,
            task_name=task_name,
            command=command
        ))

    def output(self, session_id: str, stream: str, data: str):
        code = EVENT_SESSION_STDERR if stream == 'stderr' else EVENT_SESSION_STDOUT
        self.publish(SessionOutputEvent(code=code, session_id=session_id, data=data))

    def session_exited(self, session_id: str, exit_code: Optional[int], status: str):
        self.publish(SessionExitEvent(
            code=EVENT_SESSION_EXIT,
            session_id=session_id,
            exit_code=exit_code,
            status=status
        ))
