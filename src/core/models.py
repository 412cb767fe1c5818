"""
Domain models for the exam/study session engine.

Design:
- Question / AnswerOption: immutable copies of Question Store rows
- Session: the aggregate root, mutated only by the SessionController
- SessionConfig: per-session options (pydantic, types only)
- SessionResult: finalized result handed to the Result Store
- ObjectiveScore / Violation: derived and append-only records
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class QuestionType(str, Enum):
    """How many options a question accepts."""

    SINGLE_SELECT = "single-select"
    MULTI_SELECT = "multi-select"


class SessionMode(str, Enum):
    """Session delivery mode."""

    PRACTICE = "practice"  # Free navigation, immediate feedback
    TIMED = "timed"  # Countdown, feedback at results
    FORMAL = "formal"  # Certification simulation: forward-only, no pause, monitored

    @property
    def is_timed(self) -> bool:
        return self in (SessionMode.TIMED, SessionMode.FORMAL)

    @property
    def allows_pause(self) -> bool:
        return self != SessionMode.FORMAL

    @property
    def allows_backward(self) -> bool:
        return self != SessionMode.FORMAL

    @property
    def gives_feedback(self) -> bool:
        return self == SessionMode.PRACTICE


class SessionStatus(str, Enum):
    """Lifecycle state of a session."""

    INSTRUCTIONS = "instructions"
    ACTIVE = "active"
    PAUSED = "paused"
    TIME_EXPIRED = "time_expired"
    SUBMITTING = "submitting"
    RESULTS = "results"
    REVIEW = "review"

    @property
    def is_terminal(self) -> bool:
        """States in which the sequence is finished and answers are frozen."""
        return self in (
            SessionStatus.TIME_EXPIRED,
            SessionStatus.SUBMITTING,
            SessionStatus.RESULTS,
            SessionStatus.REVIEW,
        )

    @property
    def is_resumable(self) -> bool:
        return self in (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class ViolationType(str, Enum):
    """Integrity observations recorded during a formal session."""

    FOCUS_LOST = "focus_lost"
    DEVTOOLS_OPEN = "devtools_open"
    FORBIDDEN_KEY = "forbidden_key"
    CONTEXT_MENU = "context_menu"
    CLIPBOARD = "clipboard"


# ============================================================================
# Questions
# ============================================================================


@dataclass(frozen=True)
class AnswerOption:
    """A single answer option."""

    id: str
    text: str
    is_correct: bool = False


@dataclass(frozen=True)
class Question:
    """
    A question as delivered to a session.

    Read-only for the session's duration. Correctness flags must not reach
    the client before answering in formal mode; use ``public_view()`` for
    anything rendered.
    """

    id: str
    prompt: str
    question_type: QuestionType
    options: tuple[AnswerOption, ...]
    objective_id: str
    difficulty: int = 3
    explanation: str | None = None

    @property
    def option_ids(self) -> frozenset[str]:
        return frozenset(o.id for o in self.options)

    @property
    def correct_option_ids(self) -> frozenset[str]:
        return frozenset(o.id for o in self.options if o.is_correct)

    def public_view(self) -> dict[str, Any]:
        """Question without correctness flags or explanation."""
        return {
            "id": self.id,
            "prompt": self.prompt,
            "type": self.question_type.value,
            "difficulty": self.difficulty,
            "objectiveId": self.objective_id,
            "options": [{"id": o.id, "text": o.text} for o in self.options],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        """
        Build a question from a store/API payload.

        Accepts camelCase (``objectiveId``, ``answerOptions``, ``isCorrect``)
        or snake_case keys.
        """
        raw_options = data.get("options") or data.get("answerOptions") or []
        options = tuple(
            AnswerOption(
                id=str(o["id"]),
                text=o.get("text", ""),
                is_correct=bool(o.get("is_correct", o.get("isCorrect", False))),
            )
            for o in raw_options
        )
        raw_type = data.get("question_type") or data.get("type") or "single-select"
        question_type = {
            "single": QuestionType.SINGLE_SELECT,
            "multiple": QuestionType.MULTI_SELECT,
        }.get(raw_type) or QuestionType(raw_type)
        return cls(
            id=str(data["id"]),
            prompt=data.get("prompt") or data.get("text", ""),
            question_type=question_type,
            options=options,
            objective_id=str(data.get("objective_id") or data.get("objectiveId") or "unassigned"),
            difficulty=int(data.get("difficulty", 3)),
            explanation=data.get("explanation"),
        )


# ============================================================================
# Session configuration
# ============================================================================


class SessionConfig(BaseModel):
    """
    Options for one session.

    Only types are enforced here; ``SessionController.start`` performs the
    semantic checks and raises ConfigurationError.
    """

    exam_id: str
    mode: SessionMode = SessionMode.PRACTICE
    question_count: int = 10
    time_limit_minutes: float | None = None

    # Question Store filters
    objective_ids: list[str] | None = None
    difficulty_range: tuple[int, int] | None = None

    # Sequencing
    shuffle: bool = True
    seed: int | None = None

    # Scoring
    passing_score: float | None = None  # Fraction 0-1, defaults from settings
    objective_weights: dict[str, float] = Field(default_factory=dict)
    warning_fractions: tuple[float, ...] | None = None

    # Resume
    session_id: str | None = None
    resume: bool = True


# ============================================================================
# Session aggregate
# ============================================================================


@dataclass(frozen=True)
class Violation:
    """Append-only integrity record."""

    type: ViolationType
    timestamp: datetime
    detail: str | None = None


@dataclass
class ObjectiveScore:
    """Per-objective accuracy. Derived; never mutated by callers."""

    correct: int = 0
    total: int = 0
    rolling_accuracy: float = 0.0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class Session:
    """
    The session aggregate root.

    Invariants (enforced by the controller):
    - 0 <= current_position < len(question_ids), or == len only in terminal states
    - answers keys are a subset of question_ids
    - remaining_time never increases while ACTIVE and is frozen while PAUSED
    """

    session_id: str
    exam_id: str
    mode: SessionMode
    question_ids: list[str] = field(default_factory=list)
    current_position: int = 0
    answers: dict[str, list[str]] = field(default_factory=dict)
    time_per_question: dict[str, float] = field(default_factory=dict)
    flagged: set[str] = field(default_factory=set)
    total_elapsed: float = 0.0
    remaining_time: float | None = None
    status: SessionStatus = SessionStatus.INSTRUCTIONS
    correlation_id: str = ""
    violations: list[Violation] = field(default_factory=list)

    # Scoring/timing settings needed to resume exactly
    time_limit_seconds: float | None = None
    passing_score: float = 0.85
    objective_weights: dict[str, float] = field(default_factory=dict)
    warning_fractions: tuple[float, ...] = ()
    fired_thresholds: set[float] = field(default_factory=set)
    streak: int = 0
    best_streak: int = 0

    # Optimistic concurrency token for snapshot saves
    revision: int = 0

    @property
    def total_questions(self) -> int:
        return len(self.question_ids)

    @property
    def current_question_id(self) -> str | None:
        if 0 <= self.current_position < len(self.question_ids):
            return self.question_ids[self.current_position]
        return None

    @property
    def answered_count(self) -> int:
        return len(self.answers)


# ============================================================================
# Results and read models
# ============================================================================


@dataclass(frozen=True)
class AnswerFeedback:
    """Immediate practice-mode feedback, returned alongside submit_answer."""

    question_id: str
    correct: bool
    correct_option_ids: frozenset[str]
    explanation: str | None


@dataclass(frozen=True)
class Progress:
    """Position within the question sequence."""

    position: int
    total: int
    answered: int
    flagged: int

    @property
    def percent_answered(self) -> float:
        return self.answered / self.total * 100 if self.total else 0.0


@dataclass(frozen=True)
class LiveStatistics:
    """
    Running statistics while a session is in progress.

    Correctness figures are None unless the mode gives immediate feedback.
    """

    answered: int
    total: int
    elapsed_seconds: float
    remaining_seconds: float | None
    correct: int | None = None
    accuracy: float | None = None
    streak: int | None = None
    best_streak: int | None = None
    violation_count: int = 0


@dataclass(frozen=True)
class ReviewItem:
    """One question in the post-results review listing."""

    position: int
    question: Question
    selected_option_ids: tuple[str, ...]
    correct: bool
    answered: bool
    flagged: bool
    time_seconds: float

    @property
    def correct_option_ids(self) -> frozenset[str]:
        return self.question.correct_option_ids

    @property
    def explanation(self) -> str | None:
        return self.question.explanation


@dataclass
class SessionResult:
    """
    Finalized result of a session.

    correct_count + incorrect_count + skipped_count == total_questions.
    Skipped questions count as incorrect for the score and the objective
    breakdown.
    """

    session_id: str
    exam_id: str
    mode: SessionMode
    total_questions: int
    correct_count: int
    incorrect_count: int
    skipped_count: int
    score: float  # correct_count / total_questions
    passing_score: float
    passed: bool
    objective_breakdown: dict[str, ObjectiveScore]
    difficulty_breakdown: dict[int, dict[str, int]]
    readiness_score: float
    total_time_seconds: float
    average_time_per_question: float
    flagged_count: int
    best_streak: int
    violation_count: int = 0
    violation_summary: dict[str, int] = field(default_factory=dict)
    mastery_levels: dict[str, str] = field(default_factory=dict)
    time_expired: bool = False

    @property
    def score_percentage(self) -> float:
        return self.score * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["mode"] = self.mode.value
        data["difficulty_breakdown"] = {
            str(level): counts for level, counts in self.difficulty_breakdown.items()
        }
        for objective_id, score in self.objective_breakdown.items():
            data["objective_breakdown"][objective_id]["accuracy"] = score.accuracy
        return data
