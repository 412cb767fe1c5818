"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from src.core.models import AnswerOption, Question, QuestionType, SessionConfig, SessionMode  # noqa: E402
from src.session.controller import SessionController  # noqa: E402
from src.session.persistence import InMemorySnapshotStore  # noqa: E402
from src.session.stores import InMemoryQuestionStore, InMemoryResultStore  # noqa: E402

EXAM_ID = "ccna-200-301"


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (database, HTTP adapters)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FakeTime:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FailingResultStore(InMemoryResultStore):
    """Result store that can be switched into an outage."""

    def __init__(self, failing: bool = True):
        super().__init__()
        self.failing = failing
        self.attempts = 0

    def record_result(self, session_id, result):
        from src.core.errors import StoreUnavailableError

        self.attempts += 1
        if self.failing:
            raise StoreUnavailableError("Result service is down")
        super().record_result(session_id, result)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings():
    """Settings with defaults only (no .env)."""
    return Settings(_env_file=None)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def fixed_wall_clock():
    return lambda: datetime(2026, 3, 14, 9, 30, tzinfo=UTC)


@pytest.fixture
def sample_questions():
    """Three questions: two on objective 1.1, one multi-select on 2.3."""
    return [
        Question(
            id="q1",
            prompt="Which layer of the OSI model handles routing?",
            question_type=QuestionType.SINGLE_SELECT,
            options=(
                AnswerOption("a", "Network", is_correct=True),
                AnswerOption("b", "Transport"),
                AnswerOption("c", "Data Link"),
            ),
            objective_id="1.1",
            difficulty=2,
            explanation="Routing happens at Layer 3.",
        ),
        Question(
            id="q2",
            prompt="What is the default administrative distance of OSPF?",
            question_type=QuestionType.SINGLE_SELECT,
            options=(
                AnswerOption("a", "90"),
                AnswerOption("b", "110", is_correct=True),
                AnswerOption("c", "120"),
            ),
            objective_id="1.1",
            difficulty=3,
        ),
        Question(
            id="q3",
            prompt="Select the private IPv4 ranges.",
            question_type=QuestionType.MULTI_SELECT,
            options=(
                AnswerOption("a", "10.0.0.0/8", is_correct=True),
                AnswerOption("b", "100.64.0.0/10"),
                AnswerOption("c", "192.168.0.0/16", is_correct=True),
            ),
            objective_id="2.3",
            difficulty=3,
            explanation="RFC 1918 defines 10/8, 172.16/12 and 192.168/16.",
        ),
    ]


@pytest.fixture
def question_store(sample_questions):
    return InMemoryQuestionStore({EXAM_ID: sample_questions})


@pytest.fixture
def result_store():
    return InMemoryResultStore()


@pytest.fixture
def snapshot_store():
    return InMemorySnapshotStore()


@pytest.fixture
def make_controller(question_store, result_store, snapshot_store, fake_time, fixed_wall_clock, settings):
    """Factory for controllers sharing the fake time source and stores."""

    def _make(**overrides) -> SessionController:
        kwargs = {
            "question_store": question_store,
            "result_store": result_store,
            "persistence": snapshot_store,
            "time_source": fake_time,
            "wall_clock": fixed_wall_clock,
            "settings": settings,
        }
        kwargs.update(overrides)
        return SessionController(**kwargs)

    return _make


@pytest.fixture
def make_config():
    """SessionConfig factory with deterministic ordering."""

    def _make(mode: SessionMode = SessionMode.PRACTICE, **overrides) -> SessionConfig:
        values = {"exam_id": EXAM_ID, "mode": mode, "question_count": 3, "shuffle": False}
        if mode != SessionMode.PRACTICE:
            values["time_limit_minutes"] = 1
        values.update(overrides)
        return SessionConfig(**values)

    return _make


@pytest.fixture
def failing_result_store():
    return FailingResultStore()
