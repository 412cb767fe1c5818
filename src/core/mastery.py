"""
Objective Mastery Scoring.

Aggregates scored answers into per-objective accuracy and an overall
readiness estimate.

Design:
- MasteryLevel: Enum for categorizing accuracy
- MasteryScorer: incremental per-objective counters, streaks, weighted readiness

Rolling accuracy uses the same recency weighting as the quiz mastery
"weighted_recent" method (most recent answer weight 1, then 0.5, 0.25, ...),
kept as two running sums so each update is O(1).
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from loguru import logger

from src.core.models import ObjectiveScore


class MasteryLevel(str, Enum):
    """
    Mastery level categorization.

    Aligned with learning science research on skill acquisition stages.
    """

    NOT_STARTED = "not_started"  # 0%
    NOVICE = "novice"  # 1-39%
    DEVELOPING = "developing"  # 40-69%
    PROFICIENT = "proficient"  # 70-89%
    MASTERED = "mastered"  # 90-100%

    @classmethod
    def from_score(cls, score: float) -> MasteryLevel:
        """
        Convert a 0-1 accuracy to a level.

        Args:
            score: Accuracy between 0 and 1

        Returns:
            Corresponding MasteryLevel
        """
        if score <= 0:
            return cls.NOT_STARTED
        elif score < 0.4:
            return cls.NOVICE
        elif score < 0.7:
            return cls.DEVELOPING
        elif score < 0.9:
            return cls.PROFICIENT
        else:
            return cls.MASTERED


class MasteryScorer:
    """
    Per-objective accuracy tracker.

    Each scored answer updates one objective's counters. A revised answer
    (same question answered again) adjusts ``correct`` without growing
    ``total``, so totals always equal the number of distinct questions seen.
    """

    RECENCY_DECAY = 0.5
    WEAK_THRESHOLD = 0.6
    STRONG_THRESHOLD = 0.75

    def __init__(self, objective_weights: Mapping[str, float] | None = None):
        """
        Initialize scorer.

        Args:
            objective_weights: Exam weight per objective id. Empty or None
                means equal weighting.
        """
        self.objective_weights = dict(objective_weights or {})
        self._scores: dict[str, ObjectiveScore] = {}
        self._recent_sum: dict[str, float] = {}
        self._recent_weight: dict[str, float] = {}
        self._sample_index: dict[str, int] = {}  # question id -> objective sample number
        self.streak = 0
        self.best_streak = 0

    def record(
        self,
        objective_id: str,
        correct: bool,
        previous: bool | None = None,
        question_id: str | None = None,
    ) -> ObjectiveScore:
        """
        Record one scored answer.

        A revision (``previous`` given) replaces the question's earlier
        sample: ``total`` and the streak counters are left alone, and the
        rolling accuracy swaps the old sample for the new one at its
        original recency.

        Args:
            objective_id: Objective the question belongs to
            correct: Whether the answer was correct
            previous: Correctness of the answer this one replaces, if any
            question_id: Question answered; locates the sample a revision replaces

        Returns:
            The updated ObjectiveScore
        """
        score = self._scores.setdefault(objective_id, ObjectiveScore())
        decay = self.RECENCY_DECAY

        if previous is None:
            score.total += 1
            score.correct += int(correct)

            # Exponential recency weighting, normalized
            self._recent_sum[objective_id] = float(correct) + decay * self._recent_sum.get(objective_id, 0.0)
            self._recent_weight[objective_id] = 1.0 + decay * self._recent_weight.get(objective_id, 0.0)
            if question_id is not None:
                self._sample_index[question_id] = score.total

            if correct:
                self.streak += 1
                self.best_streak = max(self.best_streak, self.streak)
            else:
                self.streak = 0
        else:
            score.correct += int(correct) - int(previous)
            age = score.total - self._sample_index.get(question_id, score.total)
            self._recent_sum[objective_id] = (
                self._recent_sum.get(objective_id, 0.0) + (int(correct) - int(previous)) * decay**age
            )
            self._recent_weight.setdefault(objective_id, 1.0)

        score.rolling_accuracy = self._recent_sum[objective_id] / self._recent_weight[objective_id]
        return score

    def record_unanswered(self, objective_id: str) -> ObjectiveScore:
        """Count an unanswered question as incorrect without touching streaks."""
        streak, best = self.streak, self.best_streak
        score = self.record(objective_id, False)
        self.streak, self.best_streak = streak, best
        return score

    # =========================================================================
    # Queries
    # =========================================================================

    def accuracy_for(self, objective_id: str) -> float:
        """Accuracy 0-1 for an objective (0 if never scored)."""
        score = self._scores.get(objective_id)
        return score.accuracy if score else 0.0

    def level_for(self, objective_id: str) -> MasteryLevel:
        return MasteryLevel.from_score(self.accuracy_for(objective_id))

    def score_for(self, objective_id: str) -> ObjectiveScore:
        """Copy of an objective's counters."""
        score = self._scores.get(objective_id, ObjectiveScore())
        return ObjectiveScore(score.correct, score.total, score.rolling_accuracy)

    def breakdown(self) -> dict[str, ObjectiveScore]:
        """Copies of all objective scores, keyed by objective id."""
        return {objective_id: self.score_for(objective_id) for objective_id in self._scores}

    def weak_objectives(self, threshold: float = WEAK_THRESHOLD) -> list[str]:
        """Scored objectives below ``threshold`` accuracy, weakest first."""
        weak = [o for o, s in self._scores.items() if s.total and s.accuracy < threshold]
        return sorted(weak, key=lambda o: (self._scores[o].accuracy, o))

    def strong_objectives(self, threshold: float = STRONG_THRESHOLD) -> list[str]:
        """Scored objectives at or above ``threshold`` accuracy, strongest first."""
        strong = [o for o, s in self._scores.items() if s.total and s.accuracy >= threshold]
        return sorted(strong, key=lambda o: (-self._scores[o].accuracy, o))

    @property
    def total_correct(self) -> int:
        return sum(s.correct for s in self._scores.values())

    @property
    def total_scored(self) -> int:
        return sum(s.total for s in self._scores.values())

    @property
    def readiness_score(self) -> float:
        """
        Weighted average of per-objective accuracy.

        Weighted by each objective's configured exam weight. Objectives
        without a configured weight are left out; when no scored objective
        has a weight, every scored objective counts equally.

        Returns:
            Readiness 0-1
        """
        scored = {o: s for o, s in self._scores.items() if s.total}
        if not scored:
            return 0.0

        weights = {
            o: self.objective_weights[o]
            for o in scored
            if self.objective_weights.get(o, 0) > 0
        }
        if not weights:
            if self.objective_weights:
                logger.debug("No scored objective has a configured weight, using equal weighting")
            weights = {o: 1.0 for o in scored}

        total_weight = sum(weights.values())
        weighted_sum = sum(scored[o].accuracy * w for o, w in weights.items())
        return weighted_sum / total_weight
