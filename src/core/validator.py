"""
Answer validation.

- normalize_selection(): rejects malformed selections before any state changes
- validate(): pure correctness check, all-or-nothing for multi-select
"""

from __future__ import annotations

from collections.abc import Iterable

from src.core.errors import InvalidAnswerError
from src.core.models import Question, QuestionType


def normalize_selection(question: Question, selection: Iterable[str]) -> list[str]:
    """
    Check a submitted selection against the question's shape.

    Duplicates are dropped, first occurrence wins.

    Args:
        question: The question being answered
        selection: Submitted option ids

    Returns:
        The selection as an ordered list of unique option ids

    Raises:
        InvalidAnswerError: Empty selection, unknown option ids, or more than
            one option for a single-select question
    """
    if isinstance(selection, str):
        selection = [selection]

    chosen: list[str] = []
    for option_id in selection:
        option_id = str(option_id)
        if option_id not in chosen:
            chosen.append(option_id)

    if not chosen:
        raise InvalidAnswerError("Select at least one option.")

    unknown = [o for o in chosen if o not in question.option_ids]
    if unknown:
        raise InvalidAnswerError(
            f"Unknown option(s) for question {question.id}: {', '.join(unknown)}"
        )

    if question.question_type == QuestionType.SINGLE_SELECT and len(chosen) != 1:
        raise InvalidAnswerError("Select exactly one option.")

    return chosen


def validate(question: Question, submitted_option_ids: Iterable[str]) -> bool:
    """
    Return True iff the submission is exactly the correct option set.

    Single-select: the one correct option.
    Multi-select: set-equal to the correct options; subsets and supersets
    both score incorrect (no partial credit).
    """
    submitted = frozenset(str(o) for o in submitted_option_ids)
    correct = question.correct_option_ids
    if not correct:
        return False
    if question.question_type == QuestionType.SINGLE_SELECT and len(submitted) != 1:
        return False
    return submitted == correct
