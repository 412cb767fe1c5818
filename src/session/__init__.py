"""
Session Module - The exam/study session engine.

Components:
- clock: SessionClock (countdown, thresholds, expiry)
- events: Command queue and session event bus
- integrity: IntegrityMonitor for formal mode
- snapshot: SessionSnapshot serialization
- persistence: Snapshot stores (in-memory, JSON files)
- stores: Question Store / Result Store contracts and in-memory stores
- controller: SessionController state machine
- runner: asyncio driver
"""

from src.session.clock import SessionClock, TickResult
from src.session.controller import SessionController
from src.session.events import (
    Command,
    CommandKind,
    CommandQueue,
    EventBus,
    SessionEvent,
    SessionEventType,
)
from src.session.integrity import EnvironmentSignal, IntegrityMonitor, SignalType
from src.session.persistence import InMemorySnapshotStore, JsonFileSnapshotStore, SnapshotStore
from src.session.runner import SessionRunner
from src.session.snapshot import SessionSnapshot
from src.session.stores import (
    InMemoryQuestionStore,
    InMemoryResultStore,
    QuestionFilters,
    QuestionStore,
    ResultStore,
)

__all__ = [
    # Clock
    "SessionClock",
    "TickResult",
    # Commands and events
    "Command",
    "CommandKind",
    "CommandQueue",
    "EventBus",
    "SessionEvent",
    "SessionEventType",
    # Integrity
    "EnvironmentSignal",
    "IntegrityMonitor",
    "SignalType",
    # Persistence
    "InMemorySnapshotStore",
    "JsonFileSnapshotStore",
    "SessionSnapshot",
    "SnapshotStore",
    # Stores
    "InMemoryQuestionStore",
    "InMemoryResultStore",
    "QuestionFilters",
    "QuestionStore",
    "ResultStore",
    # Engine
    "SessionController",
    "SessionRunner",
]
