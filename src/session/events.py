"""
Session commands and notifications.

Inputs (user actions, clock ticks, integrity signals) become ``Command``
objects processed one at a time by the controller. Commands are ordered by
the instant they were issued, not by the order their callbacks happened to
run, so a tick and an answer racing each other resolve in favor of the
logically earlier one.

Outputs are ``SessionEvent`` notifications buffered by ``EventBus`` while a
command executes and delivered once it completes.
"""

from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger


class CommandKind(str, Enum):
    """Inputs accepted by ``SessionController.dispatch``."""

    START = "start"
    SUBMIT_ANSWER = "submit_answer"
    NAVIGATE = "navigate"
    FLAG = "flag"
    UNFLAG = "unflag"
    PAUSE = "pause"
    RESUME = "resume"
    FINISH = "finish"
    ENTER_REVIEW = "enter_review"
    TICK = "tick"
    INTEGRITY_SIGNAL = "integrity_signal"


@dataclass(frozen=True)
class Command:
    """A single serialized input to the controller."""

    kind: CommandKind
    issued_at: float
    payload: dict[str, Any] = field(default_factory=dict)


class CommandQueue:
    """
    Pending commands ordered by ``(issued_at, arrival)``.

    Ties on ``issued_at`` keep arrival order.
    """

    def __init__(self):
        self._heap: list[tuple[float, int, Command]] = []
        self._counter = itertools.count()

    def push(self, command: Command) -> None:
        heapq.heappush(self._heap, (command.issued_at, next(self._counter), command))

    def pop(self) -> Command:
        return heapq.heappop(self._heap)[2]

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)


class SessionEventType(str, Enum):
    """Notifications emitted by the controller."""

    STATUS_CHANGED = "status_changed"
    QUESTION_CHANGED = "question_changed"
    ANSWER_RECORDED = "answer_recorded"
    TIME_WARNING = "time_warning"
    TIME_EXPIRED = "time_expired"
    VIOLATION_RECORDED = "violation_recorded"
    PERSISTENCE_WARNING = "persistence_warning"
    SESSION_RESUMED = "session_resumed"
    RESULT_READY = "result_ready"


@dataclass(frozen=True)
class SessionEvent:
    """A notification for observers (UI, audit log)."""

    type: SessionEventType
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[SessionEvent], None]


class EventBus:
    """
    Buffered publish/subscribe.

    ``emit`` queues; ``flush`` delivers in emission order. A listener that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._listeners: list[tuple[SessionEventType | None, Listener]] = []
        self._outbox: list[SessionEvent] = []
        self.history: list[SessionEvent] = []

    def subscribe(self, listener: Listener, event_type: SessionEventType | None = None) -> Callable[[], None]:
        """
        Register a listener, optionally for a single event type.

        Returns:
            A function that removes the subscription
        """
        entry = (event_type, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event_type: SessionEventType, **data: Any) -> None:
        self._outbox.append(SessionEvent(event_type, data))

    def flush(self) -> list[SessionEvent]:
        delivered = []
        while self._outbox:
            event = self._outbox.pop(0)
            self.history.append(event)
            delivered.append(event)
            for wanted, listener in list(self._listeners):
                if wanted is not None and wanted != event.type:
                    continue
                try:
                    listener(event)
                except Exception as e:  # Listener bugs must not break the session
                    logger.exception(f"Session event listener failed on {event.type.value}: {e}")
        return delivered
