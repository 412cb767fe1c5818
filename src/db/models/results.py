"""
Result Store table.

One row per finalized session. The headline figures are columns so they
can be queried; the full result (objective and difficulty breakdowns,
violation summary) is kept as JSON in ``details``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.core.models import SessionResult

from .base import Base


class SessionResultRecord(Base):
    """Finalized result of an exam or study session."""

    __tablename__ = "session_results"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    exam_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)

    # Scores
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False)
    incorrect_count: Mapped[int] = mapped_column(Integer, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    passing_score: Mapped[float] = mapped_column(Float, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    readiness_score: Mapped[float] = mapped_column(Float, default=0.0)

    # Timing and integrity
    total_time_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    time_expired: Mapped[bool] = mapped_column(Boolean, default=False)
    violation_count: Mapped[int] = mapped_column(Integer, default=0)

    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @classmethod
    def from_result(cls, session_id: str, result: SessionResult) -> SessionResultRecord:
        return cls(
            session_id=session_id,
            exam_id=result.exam_id,
            mode=result.mode.value,
            total_questions=result.total_questions,
            correct_count=result.correct_count,
            incorrect_count=result.incorrect_count,
            skipped_count=result.skipped_count,
            score=result.score,
            passing_score=result.passing_score,
            passed=result.passed,
            readiness_score=result.readiness_score,
            total_time_seconds=result.total_time_seconds,
            time_expired=result.time_expired,
            violation_count=result.violation_count,
            details=result.to_dict(),
        )

    def __repr__(self) -> str:
        return f"<SessionResultRecord {self.session_id} {self.correct_count}/{self.total_questions}>"
