"""
Tests for the session state machine.

Time is driven by the ``fake_time`` fixture (starts at 1000.0); every
command is stamped with the fake time unless a test passes ``at``.
"""

import pytest

from src.core.errors import (
    ConfigurationError,
    InvalidAnswerError,
    InvalidStateError,
    NavigationForbiddenError,
    OperationForbiddenError,
    PersistenceError,
    SessionExpiredError,
    StoreUnavailableError,
)
from src.core.models import SessionMode, SessionStatus, ViolationType
from src.session.events import CommandKind, SessionEventType
from src.session.integrity import EnvironmentSignal, SignalType


class BrokenSnapshotStore:
    """Snapshot store whose disk is full."""

    def save(self, snapshot):
        raise PersistenceError("disk full")

    def load(self, session_id):
        return None


def collect(controller, event_type):
    events = []
    controller.subscribe(events.append, event_type)
    return events


# ============================================================================
# Practice mode
# ============================================================================


class TestPracticeSession:

    def test_scores_per_objective(self, make_controller, make_config, result_store):
        controller = make_controller()
        session = controller.start(make_config())
        assert controller.status == SessionStatus.ACTIVE

        assert controller.submit_answer("q1", ["a"]).correct is True
        controller.advance()
        feedback = controller.submit_answer("q2", ["a"])
        assert feedback.correct is False
        assert feedback.correct_option_ids == frozenset({"b"})
        controller.advance()
        controller.submit_answer("q3", ["c", "a"])

        result = controller.finish()

        assert controller.status == SessionStatus.RESULTS
        assert (result.correct_count, result.incorrect_count, result.skipped_count) == (2, 1, 0)
        assert result.score == pytest.approx(2 / 3)
        assert result.objective_breakdown["1.1"].accuracy == 0.5
        assert result.objective_breakdown["2.3"].accuracy == 1.0
        assert result.difficulty_breakdown == {2: {"correct": 1, "total": 1}, 3: {"correct": 1, "total": 2}}
        assert result.passed is False
        assert result.best_streak == 1
        assert result.mastery_levels == {"1.1": "developing", "2.3": "mastered"}
        assert result_store.results[session.session_id] is result

    def test_weak_and_strong_objectives_use_settings_thresholds(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        controller.submit_answer("q1", ["a"])
        controller.advance()
        controller.submit_answer("q2", ["c"])
        controller.advance()
        controller.submit_answer("q3", ["a", "c"])

        assert controller.weak_objectives() == ["1.1"]
        assert controller.strong_objectives() == ["2.3"]

    def test_live_statistics_show_correctness(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        controller.submit_answer("q1", ["a"])

        stats = controller.statistics()
        assert stats.correct == 1
        assert stats.accuracy == 1.0
        assert stats.streak == 1

    def test_revised_answer_replaces_previous(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        controller.submit_answer("q1", ["b"])
        controller.submit_answer("q1", ["a"])

        assert controller.session.answers == {"q1": ["a"]}
        assert controller.scorer.score_for("1.1").total == 1
        assert controller.scorer.score_for("1.1").correct == 1

    def test_resubmitting_same_answer_does_not_extend_streak(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        for _ in range(3):
            controller.submit_answer("q1", ["a"])

        assert controller.scorer.streak == 1
        assert controller.statistics().best_streak == 1
        assert controller.finish().best_streak == 1

    def test_free_navigation(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())

        assert controller.go_to(2) == 2
        assert controller.advance(-2) == 0
        # Out of range is a no-op
        assert controller.advance(-1) == 0
        assert controller.go_to(7) == 0

    def test_seeded_shuffle_is_reproducible(self, make_controller, make_config):
        first = make_controller(persistence=None)
        second = make_controller(persistence=None)
        first.start(make_config(shuffle=True, seed=7))
        second.start(make_config(shuffle=True, seed=7))

        assert first.session.question_ids == second.session.question_ids
        assert sorted(first.session.question_ids) == ["q1", "q2", "q3"]


# ============================================================================
# Timing
# ============================================================================


class TestTimedSession:

    def test_expiry_auto_submits_unanswered(self, make_controller, make_config, fake_time):
        controller = make_controller()
        statuses = collect(controller, SessionEventType.STATUS_CHANGED)
        warnings = collect(controller, SessionEventType.TIME_WARNING)
        controller.start(make_config(SessionMode.TIMED))

        for _ in range(60):
            fake_time.advance(1)
            controller.tick()

        assert [e.data["status"] for e in statuses] == ["active", "time_expired", "submitting", "results"]
        assert [(e.data["fraction"], e.data["level"]) for e in warnings] == [
            (0.5, "warning"),
            (0.1, "warning"),
            (0.05, "critical"),
        ]
        result = controller.result
        assert result.skipped_count == 3
        assert result.score == 0.0
        assert result.time_expired is True
        assert result.total_time_seconds == 60

    def test_pause_freezes_remaining_time(self, make_controller, make_config, fake_time):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED, time_limit_minutes=10))

        fake_time.advance(120)
        assert controller.pause() is True
        assert controller.status == SessionStatus.PAUSED
        fake_time.advance(300)
        assert controller.time_remaining == 480
        assert controller.pause() is False

        assert controller.resume() is True
        fake_time.advance(60)
        assert controller.time_remaining == 420

    def test_paused_session_rejects_answers(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))
        controller.pause()

        with pytest.raises(InvalidStateError):
            controller.submit_answer("q1", ["a"])

    def test_no_feedback_until_results(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        assert controller.submit_answer("q1", ["a"]) is None
        assert controller.statistics().correct is None
        assert controller.progress().percent_answered == pytest.approx(100 / 3)

        view = controller.current_question_view()
        assert view["id"] == "q1"
        assert all(set(option) == {"id", "text"} for option in view["options"])

    def test_answer_after_deadline_is_rejected(self, make_controller, make_config, fake_time, result_store):
        controller = make_controller()
        session = controller.start(make_config(SessionMode.TIMED))

        # No tick has run since the deadline passed
        fake_time.advance(61)
        with pytest.raises(SessionExpiredError):
            controller.submit_answer("q1", ["a"])

        assert controller.status == SessionStatus.RESULTS
        assert controller.session.answers == {}
        assert result_store.results[session.session_id].skipped_count == 3

    def test_answer_issued_before_deadline_wins_race(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        tick = controller.command(CommandKind.TICK, at=1060.0)
        answer = controller.command(CommandKind.SUBMIT_ANSWER, at=1059.0, question_id="q1", selection=["a"])
        controller.enqueue(tick)
        controller.enqueue(answer)
        outcomes = controller.process_pending()

        assert [command.kind for command, _ in outcomes] == [CommandKind.SUBMIT_ANSWER, CommandKind.TICK]
        assert controller.status == SessionStatus.RESULTS
        assert controller.result.correct_count == 1

    def test_answer_issued_after_deadline_loses_race(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        controller.enqueue(controller.command(CommandKind.SUBMIT_ANSWER, at=1061.0, question_id="q1", selection=["a"]))
        controller.enqueue(controller.command(CommandKind.TICK, at=1060.0))
        outcomes = controller.process_pending()

        assert isinstance(outcomes[1][1], SessionExpiredError)
        assert controller.result.correct_count == 0

    def test_answer_at_deadline_queued_before_tick_is_recorded(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        controller.enqueue(controller.command(CommandKind.SUBMIT_ANSWER, at=1060.0, question_id="q1", selection=["a"]))
        controller.enqueue(controller.command(CommandKind.TICK, at=1060.0))
        outcomes = controller.process_pending()

        assert [command.kind for command, _ in outcomes] == [CommandKind.SUBMIT_ANSWER, CommandKind.TICK]
        assert outcomes[0][1] is None
        assert outcomes[1][1].expired is True
        assert controller.session.answers == {"q1": ["a"]}
        assert controller.result.correct_count == 1

    def test_answer_at_deadline_queued_after_tick_is_rejected(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        controller.enqueue(controller.command(CommandKind.TICK, at=1060.0))
        controller.enqueue(controller.command(CommandKind.SUBMIT_ANSWER, at=1060.0, question_id="q1", selection=["a"]))
        outcomes = controller.process_pending()

        assert isinstance(outcomes[1][1], SessionExpiredError)
        assert controller.result.correct_count == 0

    def test_tick_updates_session_time(self, make_controller, make_config, fake_time):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))

        fake_time.advance(15)
        controller.tick()

        assert controller.session.total_elapsed == 15
        assert controller.session.remaining_time == 45


# ============================================================================
# Formal mode
# ============================================================================


class TestFormalSession:

    def test_backward_navigation_forbidden(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.FORMAL))
        controller.advance()

        with pytest.raises(NavigationForbiddenError):
            controller.advance(-1)
        with pytest.raises(NavigationForbiddenError):
            controller.go_to(0)
        assert controller.progress().position == 1

    def test_pause_forbidden(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.FORMAL))

        with pytest.raises(OperationForbiddenError):
            controller.pause()
        assert controller.status == SessionStatus.ACTIVE
        assert controller.clock.running

    def test_earlier_answers_are_locked(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.FORMAL))
        controller.submit_answer("q1", ["a"])
        controller.advance()

        with pytest.raises(OperationForbiddenError):
            controller.submit_answer("q1", ["b"])
        assert controller.session.answers == {"q1": ["a"]}

    def test_only_current_question_can_be_answered(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.FORMAL))

        with pytest.raises(InvalidAnswerError):
            controller.submit_answer("q3", ["a"])
        with pytest.raises(InvalidAnswerError):
            controller.submit_answer("not-a-question", ["a"])

    def test_violations_are_recorded_without_blocking(self, make_controller, make_config):
        controller = make_controller()
        events = collect(controller, SessionEventType.VIOLATION_RECORDED)
        controller.start(make_config(SessionMode.FORMAL))

        violation = controller.report_signal(EnvironmentSignal(SignalType.WINDOW_BLUR))
        controller.report_signal(EnvironmentSignal(SignalType.WINDOW_BLUR))
        controller.report_signal(EnvironmentSignal(SignalType.KEY_COMBO, keys="F12"))
        controller.submit_answer("q1", ["a"])

        assert violation.type == ViolationType.FOCUS_LOST
        assert controller.violation_count() == 2
        assert events[0].data["correlation_id"] == controller.session.correlation_id

        result = controller.finish()
        assert result.violation_count == 2
        assert result.violation_summary == {"focus_lost": 1, "forbidden_key": 1}

    def test_practice_mode_ignores_signals(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        assert controller.report_signal(EnvironmentSignal(SignalType.WINDOW_BLUR)) is None
        assert controller.violation_count() == 0


# ============================================================================
# Flags, validation and lifecycle
# ============================================================================


class TestFlagsAndValidation:

    def test_flag_is_idempotent(self, make_controller, make_config, snapshot_store):
        controller = make_controller()
        controller.start(make_config())
        saves = snapshot_store.save_count

        assert controller.flag() is True
        assert controller.flag() is True
        assert controller.progress().flagged == 1
        assert snapshot_store.save_count == saves + 1

        assert controller.unflag() is False
        assert controller.unflag() is False
        assert controller.progress().flagged == 0

    def test_invalid_answer_leaves_state_unchanged(self, make_controller, make_config, snapshot_store):
        controller = make_controller()
        controller.start(make_config())
        saves = snapshot_store.save_count

        with pytest.raises(InvalidAnswerError):
            controller.submit_answer("q1", ["z"])
        with pytest.raises(InvalidAnswerError):
            controller.submit_answer("q1", [])

        assert controller.session.answers == {}
        assert snapshot_store.save_count == saves

    def test_commands_before_start(self, make_controller):
        controller = make_controller()
        assert controller.status == SessionStatus.INSTRUCTIONS
        with pytest.raises(InvalidStateError):
            controller.advance()

    def test_cannot_start_twice(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        with pytest.raises(InvalidStateError):
            controller.start(make_config())


class TestConfiguration:

    @pytest.mark.parametrize(
        "mode,overrides,message",
        [
            (SessionMode.PRACTICE, {"question_count": 5}, "Only 3 questions"),
            (SessionMode.PRACTICE, {"question_count": 0}, "at least one"),
            (SessionMode.PRACTICE, {"objective_ids": ["9.9"]}, "No questions"),
            (SessionMode.TIMED, {"time_limit_minutes": None}, "time limit"),
            (SessionMode.FORMAL, {"time_limit_minutes": 0}, "time limit"),
            (SessionMode.PRACTICE, {"passing_score": 1.5}, "Passing score"),
            (SessionMode.PRACTICE, {"difficulty_range": (4, 2)}, "Difficulty range"),
        ],
    )
    def test_rejected_configs(self, make_controller, make_config, mode, overrides, message):
        controller = make_controller()
        with pytest.raises(ConfigurationError, match=message):
            controller.start(make_config(mode, **overrides))
        assert controller.status == SessionStatus.INSTRUCTIONS
        assert controller.session is None

    def test_filters_reach_question_store(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(question_count=1, objective_ids=["2.3"]))
        assert controller.session.question_ids == ["q3"]


# ============================================================================
# Results
# ============================================================================


class TestResults:

    def test_counts_always_sum_to_total(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        controller.submit_answer("q1", ["a"])
        controller.advance()
        controller.submit_answer("q2", ["c"])

        result = controller.finish()
        assert result.correct_count + result.incorrect_count + result.skipped_count == result.total_questions
        assert result.skipped_count == 1
        # Skipped counts against its objective
        assert result.objective_breakdown["2.3"].total == 1
        assert result.objective_breakdown["2.3"].correct == 0

    def test_passing_score_from_config(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(passing_score=0.3))
        controller.submit_answer("q1", ["a"])

        result = controller.finish()
        assert result.passed is True
        assert result.passing_score == 0.3

    def test_finish_twice_returns_same_result(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        assert controller.finish() is controller.finish()

    def test_review_allows_free_navigation(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.FORMAL))
        controller.submit_answer("q1", ["a"])
        controller.advance()
        controller.flag()
        controller.finish()

        items = controller.enter_review()
        assert controller.status == SessionStatus.REVIEW
        assert [item.question.id for item in items] == ["q1", "q2", "q3"]
        assert items[0].correct is True
        assert items[1].flagged is True
        assert items[2].answered is False
        assert items[2].explanation.startswith("RFC 1918")

        assert controller.go_to(2) == 2
        assert controller.advance(-1) == 1

    def test_review_before_results(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config())
        with pytest.raises(InvalidStateError):
            controller.enter_review()


# ============================================================================
# Store and persistence failures
# ============================================================================


class TestFailures:

    def test_persistence_failure_becomes_warning(self, make_controller, make_config):
        controller = make_controller(persistence=BrokenSnapshotStore())
        warnings = collect(controller, SessionEventType.PERSISTENCE_WARNING)

        controller.start(make_config())
        controller.submit_answer("q1", ["a"])

        assert controller.status == SessionStatus.ACTIVE
        assert controller.session.answers == {"q1": ["a"]}
        assert controller.last_save_ok is False
        assert controller.persistence_warnings[0].operation == "save"
        assert warnings[0].data["reason"] == "disk full"

    def test_result_store_outage_on_finish_keeps_session(
        self, make_controller, make_config, failing_result_store, fake_time
    ):
        controller = make_controller(result_store=failing_result_store)
        controller.start(make_config(SessionMode.TIMED, time_limit_minutes=10))
        controller.submit_answer("q1", ["a"])
        fake_time.advance(30)
        times = dict(controller.session.time_per_question)

        with pytest.raises(StoreUnavailableError):
            controller.finish()
        assert controller.status == SessionStatus.ACTIVE
        assert controller.clock.running
        assert controller.session.answers == {"q1": ["a"]}
        assert controller.session.time_per_question == times

        failing_result_store.failing = False
        fake_time.advance(10)
        result = controller.finish()
        assert controller.status == SessionStatus.RESULTS
        assert result.correct_count == 1
        assert failing_result_store.attempts == 2
        # The visit to q1 is credited once, through the successful finish
        assert controller.session.time_per_question["q1"] == 40

    def test_result_store_outage_on_expiry_retries(
        self, make_controller, make_config, failing_result_store, fake_time
    ):
        controller = make_controller(result_store=failing_result_store)
        controller.start(make_config(SessionMode.TIMED))
        fake_time.advance(60)

        with pytest.raises(StoreUnavailableError):
            controller.tick()
        assert controller.status == SessionStatus.SUBMITTING
        with pytest.raises(SessionExpiredError):
            controller.submit_answer("q1", ["a"])

        failing_result_store.failing = False
        result = controller.finish()
        assert result.time_expired is True
        assert controller.status == SessionStatus.RESULTS


# ============================================================================
# Resume
# ============================================================================


class TestResume:

    @pytest.fixture
    def saved_session(self, make_controller, make_config, fake_time):
        config = make_config(SessionMode.TIMED, time_limit_minutes=10, session_id="resume-1")
        controller = make_controller()
        controller.start(config)
        fake_time.advance(10)
        controller.submit_answer("q1", ["a"])
        fake_time.advance(10)
        controller.advance()
        # Client crashes here
        fake_time.advance(500)
        return config

    def test_resume_restores_position_answers_and_time(self, make_controller, saved_session):
        controller = make_controller()
        resumed = collect(controller, SessionEventType.SESSION_RESUMED)
        controller.start(saved_session)

        assert controller.progress().position == 1
        assert controller.session.answers == {"q1": ["a"]}
        assert controller.time_remaining == 580
        assert len(resumed) == 1
        assert controller.scorer.total_correct == 1

    def test_resume_false_starts_fresh(self, make_controller, saved_session):
        controller = make_controller()
        controller.start(saved_session.model_copy(update={"resume": False}))

        assert controller.progress().position == 0
        assert controller.session.answers == {}
        assert controller.persistence_warnings == []

    def test_concurrent_resume_conflict(self, make_controller, saved_session):
        first = make_controller()
        second = make_controller()
        first.start(saved_session)
        second.start(saved_session)

        first.flag()
        second.flag()

        assert first.persistence_warnings == []
        assert "saved elsewhere" in second.persistence_warnings[0].reason

    def test_resume_keeps_streaks(self, make_controller, make_config):
        config = make_config(session_id="streaky")
        controller = make_controller()
        controller.start(config)
        controller.submit_answer("q1", ["b"])
        controller.advance()
        controller.submit_answer("q2", ["b"])
        controller.advance(-1)
        controller.submit_answer("q1", ["a"])
        assert (controller.scorer.streak, controller.scorer.best_streak) == (1, 1)

        resumed = make_controller()
        resumed.start(config)

        assert (resumed.scorer.streak, resumed.scorer.best_streak) == (1, 1)
        assert resumed.scorer.score_for("1.1").correct == 2

    def test_restore_from_snapshot(self, make_controller, make_config):
        controller = make_controller()
        controller.start(make_config(SessionMode.TIMED))
        controller.pause()
        snapshot = controller.snapshot()

        restored = make_controller(persistence=None)
        restored.restore(snapshot)
        assert restored.status == SessionStatus.PAUSED
        assert restored.time_remaining == snapshot.remaining_time_seconds
