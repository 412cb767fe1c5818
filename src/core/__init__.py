"""
Core Module - Shared domain models and pure logic.

Components:
- errors: Session engine error taxonomy
- models: Question, Session, SessionConfig, SessionResult
- validator: Answer Validator (all-or-nothing scoring)
- mastery: Mastery Scorer (per-objective accuracy, readiness)

Design Principle:
Nothing in src/core/ performs I/O. The session engine (src/session/) and the
adapters (src/db/, src/integrations/) build on these types.
"""

from src.core.errors import (
    ConfigurationError,
    InvalidAnswerError,
    InvalidStateError,
    NavigationForbiddenError,
    OperationForbiddenError,
    PersistenceError,
    PersistenceWarning,
    PolicyViolationError,
    SessionEngineError,
    SessionExpiredError,
    SnapshotConflictError,
    StoreUnavailableError,
)
from src.core.mastery import MasteryLevel, MasteryScorer
from src.core.models import (
    AnswerFeedback,
    AnswerOption,
    LiveStatistics,
    ObjectiveScore,
    Progress,
    Question,
    QuestionType,
    ReviewItem,
    Session,
    SessionConfig,
    SessionMode,
    SessionResult,
    SessionStatus,
    Violation,
    ViolationType,
)
from src.core.validator import normalize_selection, validate

__all__ = [
    # Errors
    "SessionEngineError",
    "ConfigurationError",
    "InvalidAnswerError",
    "InvalidStateError",
    "PolicyViolationError",
    "NavigationForbiddenError",
    "OperationForbiddenError",
    "SessionExpiredError",
    "StoreUnavailableError",
    "PersistenceError",
    "SnapshotConflictError",
    "PersistenceWarning",
    # Models
    "AnswerFeedback",
    "AnswerOption",
    "LiveStatistics",
    "ObjectiveScore",
    "Progress",
    "Question",
    "QuestionType",
    "ReviewItem",
    "Session",
    "SessionConfig",
    "SessionMode",
    "SessionResult",
    "SessionStatus",
    "Violation",
    "ViolationType",
    # Scoring
    "MasteryLevel",
    "MasteryScorer",
    "normalize_selection",
    "validate",
]
