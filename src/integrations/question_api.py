"""
HTTP Question Store.

Fetches question batches from the study API:

    GET /api/study/questions?examId=...&objectiveIds=a,b&difficulty=2-4&limit=20
    GET /api/questions?ids=q1,q2

Responses are either a bare list or an envelope ``{"data": [...]}`` /
``{"questions": [...]}``. Transport and HTTP errors become
StoreUnavailableError; malformed questions become ConfigurationError.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from config import Settings, get_settings
from src.core.errors import ConfigurationError, StoreUnavailableError
from src.core.models import Question
from src.session.stores import QuestionFilters


class HttpQuestionStore:
    """Question Store client for the study API."""

    QUESTIONS_ENDPOINT = "/api/study/questions"
    LOOKUP_ENDPOINT = "/api/questions"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        headers = {"Accept": "application/json"}
        api_key = settings.question_api_key if api_key is None else api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.base_url = (base_url or settings.question_api_url).rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds or settings.question_api_timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> HttpQuestionStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # =========================================================================
    # QuestionStore
    # =========================================================================

    def fetch_questions(self, exam_id: str, filters: QuestionFilters) -> list[Question]:
        params: dict[str, Any] = {"examId": exam_id, "limit": filters.count}
        if filters.objective_ids:
            params["objectiveIds"] = ",".join(filters.objective_ids)
        if filters.difficulty_range:
            low, high = filters.difficulty_range
            params["difficulty"] = f"{low}-{high}"

        questions = self._parse(self._get(self.QUESTIONS_ENDPOINT, params))
        # The API may ignore filters it does not support
        matching = [q for q in questions if filters.matches(q)]
        logger.debug(f"Fetched {len(matching)} questions for {exam_id} from {self.base_url}")
        return matching[: filters.count]

    def get_questions(self, question_ids: list[str]) -> list[Question]:
        if not question_ids:
            return []
        by_id = {
            q.id: q
            for q in self._parse(self._get(self.LOOKUP_ENDPOINT, {"ids": ",".join(question_ids)}))
        }
        missing = [qid for qid in question_ids if qid not in by_id]
        if missing:
            raise StoreUnavailableError(f"Questions no longer available: {', '.join(missing)}")
        return [by_id[qid] for qid in question_ids]

    # =========================================================================
    # HTTP
    # =========================================================================

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Question API returned {e.response.status_code} for {path}")
            raise StoreUnavailableError(
                f"Question service error ({e.response.status_code}). Please try again later."
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Connection error calling question API {path}: {e}")
            raise StoreUnavailableError("Question service is unreachable. Please try again later.") from e
        except ValueError as e:
            raise StoreUnavailableError(f"Question service sent invalid JSON: {e}") from e

    @staticmethod
    def _parse(payload: Any) -> list[Question]:
        if isinstance(payload, dict):
            payload = payload.get("data", payload.get("questions", []))
        if not isinstance(payload, list):
            raise ConfigurationError("Question service response has no question list")

        questions = []
        for raw in payload:
            try:
                questions.append(Question.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                raise ConfigurationError(f"Question service sent an invalid question: {e}") from e
        return questions
