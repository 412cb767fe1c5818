"""
SQLAlchemy Result Store.

Records finalized session results in the ``session_results`` table.
Database errors surface as StoreUnavailableError so the controller can keep
the session in SUBMITTING (automatic submit) or hand it back (user finish).
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError

from src.core.errors import StoreUnavailableError
from src.core.models import SessionResult
from src.db.database import get_engine, get_session_factory, init_db, session_scope
from src.db.models import SessionResultRecord


class SqlResultStore:
    """Result Store backed by a relational database."""

    def __init__(self, engine: Engine | None = None, create_tables: bool = True):
        self.engine = engine or get_engine()
        self._factory = get_session_factory(self.engine)
        if create_tables:
            try:
                init_db(self.engine)
            except SQLAlchemyError as e:
                raise StoreUnavailableError(f"Result database unavailable: {e}") from e

    def record_result(self, session_id: str, result: SessionResult) -> None:
        """
        Insert or replace the result row for a session.

        Raises:
            StoreUnavailableError: The database rejected the write
        """
        try:
            with session_scope(self._factory) as db:
                db.merge(SessionResultRecord.from_result(session_id, result))
        except SQLAlchemyError as e:
            logger.error(f"Failed to record result for session {session_id}: {e}")
            raise StoreUnavailableError("Your result could not be saved. Please try again.") from e
        logger.info(f"Recorded result for session {session_id} ({result.score_percentage:.1f}%)")

    def get_result(self, session_id: str) -> dict[str, Any] | None:
        """Stored result details, or None."""
        try:
            with session_scope(self._factory) as db:
                record = db.get(SessionResultRecord, session_id)
                return dict(record.details) if record is not None else None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not read result for {session_id}: {e}") from e

    def list_results(self, exam_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent results first."""
        query = select(SessionResultRecord)
        if exam_id:
            query = query.where(SessionResultRecord.exam_id == exam_id)
        query = query.order_by(SessionResultRecord.created_at.desc()).limit(limit)
        try:
            with session_scope(self._factory) as db:
                return [
                    {
                        "session_id": r.session_id,
                        "exam_id": r.exam_id,
                        "mode": r.mode,
                        "score": r.score,
                        "passed": r.passed,
                        "total_questions": r.total_questions,
                        "created_at": r.created_at,
                    }
                    for r in db.scalars(query)
                ]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not list results: {e}") from e
