"""
Session snapshot (de)serialization.

A snapshot is everything needed to resume a session exactly. Wire format is
camelCase JSON:

    {sessionId, examId, mode, questionIds[], currentPosition,
     answers{questionId: optionIds[]}, timePerQuestion{questionId: seconds},
     flagged[], remainingTimeSeconds, status, violations[], ...}

Objective scores are not stored; they are replayed from the answers on
restore. Streaks depend on answer history, so they are stored as-is.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from src.core.errors import PersistenceError
from src.core.models import Session, SessionMode, SessionStatus, Violation, ViolationType

SNAPSHOT_FORMAT_VERSION = 1


class ViolationRecord(BaseModel):
    """Wire form of a Violation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: ViolationType
    timestamp: datetime
    detail: str | None = None


class SessionSnapshot(BaseModel):
    """Serializable representation of a Session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    exam_id: str
    mode: SessionMode
    question_ids: list[str]
    current_position: int
    answers: dict[str, list[str]] = Field(default_factory=dict)
    time_per_question: dict[str, float] = Field(default_factory=dict)
    flagged: list[str] = Field(default_factory=list)
    remaining_time_seconds: float | None = None
    status: SessionStatus
    violations: list[ViolationRecord] = Field(default_factory=list)

    total_elapsed_seconds: float = 0.0
    correlation_id: str = ""
    time_limit_seconds: float | None = None
    passing_score: float = 0.85
    objective_weights: dict[str, float] = Field(default_factory=dict)
    warning_fractions: list[float] = Field(default_factory=list)
    fired_thresholds: list[float] = Field(default_factory=list)
    streak: int = 0
    best_streak: int = 0

    revision: int = 0
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    format_version: int = SNAPSHOT_FORMAT_VERSION

    # =========================================================================
    # Session <-> snapshot
    # =========================================================================

    @classmethod
    def from_session(cls, session: Session) -> SessionSnapshot:
        """Capture a session. Collections are copied."""
        order = {qid: i for i, qid in enumerate(session.question_ids)}
        return cls(
            session_id=session.session_id,
            exam_id=session.exam_id,
            mode=session.mode,
            question_ids=list(session.question_ids),
            current_position=session.current_position,
            answers={qid: list(opts) for qid, opts in session.answers.items()},
            time_per_question=dict(session.time_per_question),
            flagged=sorted(session.flagged, key=lambda qid: order.get(qid, len(order))),
            remaining_time_seconds=session.remaining_time,
            status=session.status,
            violations=[
                ViolationRecord(type=v.type, timestamp=v.timestamp, detail=v.detail)
                for v in session.violations
            ],
            total_elapsed_seconds=session.total_elapsed,
            correlation_id=session.correlation_id,
            time_limit_seconds=session.time_limit_seconds,
            passing_score=session.passing_score,
            objective_weights=dict(session.objective_weights),
            warning_fractions=list(session.warning_fractions),
            fired_thresholds=sorted(session.fired_thresholds, reverse=True),
            streak=session.streak,
            best_streak=session.best_streak,
            revision=session.revision,
        )

    def to_session(self) -> Session:
        """Rebuild the Session this snapshot was taken from."""
        return Session(
            session_id=self.session_id,
            exam_id=self.exam_id,
            mode=self.mode,
            question_ids=list(self.question_ids),
            current_position=self.current_position,
            answers={qid: list(opts) for qid, opts in self.answers.items()},
            time_per_question=dict(self.time_per_question),
            flagged=set(self.flagged),
            total_elapsed=self.total_elapsed_seconds,
            remaining_time=self.remaining_time_seconds,
            status=self.status,
            correlation_id=self.correlation_id,
            violations=[
                Violation(type=v.type, timestamp=v.timestamp, detail=v.detail)
                for v in self.violations
            ],
            time_limit_seconds=self.time_limit_seconds,
            passing_score=self.passing_score,
            objective_weights=dict(self.objective_weights),
            warning_fractions=tuple(self.warning_fractions),
            fired_thresholds=set(self.fired_thresholds),
            streak=self.streak,
            best_streak=self.best_streak,
            revision=self.revision,
        )

    # =========================================================================
    # JSON
    # =========================================================================

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> SessionSnapshot:
        """
        Parse a snapshot.

        Raises:
            PersistenceError: Malformed or incomplete snapshot
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(f"Corrupted session snapshot: {e.error_count()} invalid field(s)") from e

    @classmethod
    def from_dict(cls, data: dict) -> SessionSnapshot:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Corrupted session snapshot: {e.error_count()} invalid field(s)") from e

    def check_consistency(self) -> None:
        """
        Verify the structural invariants of a loaded snapshot.

        Raises:
            PersistenceError: Position out of range or answers for unknown questions
        """
        total = len(self.question_ids)
        upper = total if self.status.is_terminal else total - 1
        if not 0 <= self.current_position <= max(upper, 0):
            raise PersistenceError(
                f"Snapshot {self.session_id} has position {self.current_position} "
                f"outside a {total}-question sequence"
            )
        known = set(self.question_ids)
        stray = [qid for qid in self.answers if qid not in known]
        if stray:
            raise PersistenceError(
                f"Snapshot {self.session_id} has answers for unknown questions: {', '.join(stray)}"
            )
