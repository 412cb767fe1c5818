"""
Question Store and Result Store contracts.

The engine consumes both through these protocols; concrete adapters live in
src/integrations/ (HTTP questions) and src/db/ (SQL results). The in-memory
implementations here back tests and offline question banks.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from src.core.errors import ConfigurationError, StoreUnavailableError
from src.core.models import Question, QuestionType, SessionResult


@dataclass(frozen=True)
class QuestionFilters:
    """Selection criteria for a question batch."""

    count: int
    objective_ids: tuple[str, ...] | None = None
    difficulty_range: tuple[int, int] | None = None

    def matches(self, question: Question) -> bool:
        if self.objective_ids and question.objective_id not in self.objective_ids:
            return False
        if self.difficulty_range:
            low, high = self.difficulty_range
            if not low <= question.difficulty <= high:
                return False
        return True


class QuestionStore(Protocol):
    """Source of questions for a session."""

    def fetch_questions(self, exam_id: str, filters: QuestionFilters) -> list[Question]:
        """
        Return up to ``filters.count`` questions, in store order.

        Raises:
            StoreUnavailableError: The store could not be reached
        """
        ...

    def get_questions(self, question_ids: list[str]) -> list[Question]:
        """Return the given questions (used to rehydrate a snapshot)."""
        ...


class ResultStore(Protocol):
    """Sink for finalized session results."""

    def record_result(self, session_id: str, result: SessionResult) -> None:
        """
        Persist a finalized result.

        Raises:
            StoreUnavailableError: The result could not be recorded
        """
        ...


# ============================================================================
# In-memory implementations
# ============================================================================


class InMemoryQuestionStore:
    """Question bank held in memory, keyed by exam id."""

    def __init__(self, questions: dict[str, list[Question]] | None = None):
        self._by_exam: dict[str, list[Question]] = {k: list(v) for k, v in (questions or {}).items()}
        self._by_id: dict[str, Question] = {
            q.id: q for bank in self._by_exam.values() for q in bank
        }

    def add(self, exam_id: str, questions: Iterable[Question]) -> None:
        for question in questions:
            self._by_exam.setdefault(exam_id, []).append(question)
            self._by_id[question.id] = question

    def fetch_questions(self, exam_id: str, filters: QuestionFilters) -> list[Question]:
        matching = [q for q in self._by_exam.get(exam_id, []) if filters.matches(q)]
        return matching[: filters.count]

    def get_questions(self, question_ids: list[str]) -> list[Question]:
        missing = [qid for qid in question_ids if qid not in self._by_id]
        if missing:
            raise StoreUnavailableError(f"Questions no longer available: {', '.join(missing)}")
        return [self._by_id[qid] for qid in question_ids]

    def count(self, exam_id: str) -> int:
        return len(self._by_exam.get(exam_id, []))

    @classmethod
    def from_json_file(cls, path: Path, exam_id: str | None = None) -> InMemoryQuestionStore:
        """
        Load a question bank file.

        Accepts either a list of questions or ``{"examId": ..., "questions": [...]}``.

        Raises:
            ConfigurationError: Unreadable file or invalid question data
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data: Any = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read question bank {path}: {e}") from e

        if isinstance(data, dict):
            exam_id = exam_id or data.get("examId") or data.get("exam_id")
            raw_questions = data.get("questions", [])
        else:
            raw_questions = data
        exam_id = exam_id or Path(path).stem

        questions = []
        for index, raw in enumerate(raw_questions):
            try:
                questions.append(Question.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                raise ConfigurationError(f"Question #{index + 1} in {path} is invalid: {e}") from e

        problems = check_question_bank(questions)
        if problems:
            raise ConfigurationError(f"{path} has {len(problems)} problem(s): {problems[0]}")

        logger.info(f"Loaded {len(questions)} questions for exam {exam_id} from {path}")
        return cls({exam_id: questions})


def check_question_bank(questions: Iterable[Question]) -> list[str]:
    """
    Structural checks for a question bank.

    Returns:
        Human-readable problems (empty when the bank is usable)
    """
    problems = []
    seen: set[str] = set()
    for question in questions:
        label = f"Question {question.id}"
        if question.id in seen:
            problems.append(f"{label}: duplicate id")
        seen.add(question.id)

        if len(question.options) < 2:
            problems.append(f"{label}: needs at least 2 options")
        if len(question.option_ids) != len(question.options):
            problems.append(f"{label}: duplicate option ids")

        correct = len(question.correct_option_ids)
        if correct == 0:
            problems.append(f"{label}: no correct option")
        elif question.question_type == QuestionType.SINGLE_SELECT and correct != 1:
            problems.append(f"{label}: single-select with {correct} correct options")

        if not 1 <= question.difficulty <= 5:
            problems.append(f"{label}: difficulty {question.difficulty} outside 1-5")
    return problems


class InMemoryResultStore:
    """Collects results in a dictionary."""

    def __init__(self):
        self.results: dict[str, SessionResult] = {}

    def record_result(self, session_id: str, result: SessionResult) -> None:
        self.results[session_id] = result
