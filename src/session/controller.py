"""
Session Controller: the exam/study state machine.

    INSTRUCTIONS -> ACTIVE <-> PAUSED
    ACTIVE -> TIME_EXPIRED -> SUBMITTING -> RESULTS -> REVIEW
    ACTIVE -> SUBMITTING (user finish)

Every input is a Command handled by ``dispatch``, one at a time, so there is
no concurrent mutation of the Session. Before a user command runs, the clock
is brought up to the instant the command was issued; if the deadline falls
strictly before that instant the session expires first and the command is
rejected with SessionExpiredError. A command stamped at the deadline itself
runs, and a TICK ordered after it performs the expiry.

Mutating operations are all-or-nothing: inputs are checked before anything
changes. Persistence failures never roll back in-memory state; they become
PersistenceWarning events.

Collaborators are injected:
- QuestionStore: question batches and rehydration by id
- ResultStore: finalized results
- SnapshotStore: checkpoints (after answers, navigation, pause; also start,
  flag changes and results)
"""

from __future__ import annotations

import copy
import random
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from loguru import logger

from config import Settings, get_settings
from src.core.errors import (
    ConfigurationError,
    InvalidAnswerError,
    InvalidStateError,
    NavigationForbiddenError,
    OperationForbiddenError,
    PersistenceError,
    PersistenceWarning,
    SessionEngineError,
    SessionExpiredError,
    StoreUnavailableError,
)
from src.core.mastery import MasteryScorer
from src.core.models import (
    AnswerFeedback,
    LiveStatistics,
    Progress,
    Question,
    ReviewItem,
    Session,
    SessionConfig,
    SessionMode,
    SessionResult,
    SessionStatus,
    Violation,
)
from src.core.validator import normalize_selection, validate
from src.session.clock import SessionClock, TickResult, TimeSource
from src.session.events import (
    Command,
    CommandKind,
    CommandQueue,
    EventBus,
    Listener,
    SessionEventType,
)
from src.session.integrity import EnvironmentSignal, IntegrityMonitor
from src.session.persistence import SnapshotStore
from src.session.snapshot import SessionSnapshot
from src.session.stores import QuestionFilters, QuestionStore, ResultStore

# Commands that come from the user (or the user's environment) and must be
# checked against the deadline before they run
USER_COMMANDS = frozenset({
    CommandKind.SUBMIT_ANSWER,
    CommandKind.NAVIGATE,
    CommandKind.FLAG,
    CommandKind.UNFLAG,
    CommandKind.PAUSE,
    CommandKind.RESUME,
    CommandKind.FINISH,
    CommandKind.INTEGRITY_SIGNAL,
})


class SessionController:
    """
    Drives one session through its lifecycle.

    The UI is an observer: it calls the command methods (or ``dispatch``)
    and reads state through the accessors and ``subscribe``.
    """

    def __init__(
        self,
        question_store: QuestionStore,
        result_store: ResultStore,
        persistence: SnapshotStore | None = None,
        time_source: TimeSource | None = None,
        wall_clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ):
        self.question_store = question_store
        self.result_store = result_store
        self.persistence = persistence
        self.settings = settings or get_settings()

        self._time = time_source or time.monotonic
        self._wall_clock = wall_clock
        self.clock = SessionClock(self._time)
        self.events = EventBus()
        self._queue = CommandQueue()
        self._processing = False

        self.session: Session | None = None
        self._questions: dict[str, Question] = {}
        self._scored: dict[str, bool] = {}  # question id -> correctness of the recorded answer
        self.scorer = MasteryScorer()
        self.monitor: IntegrityMonitor | None = None

        self.result: SessionResult | None = None
        self._pending_result: tuple[SessionResult, MasteryScorer] | None = None
        self._expired = False
        self._visit_started = 0.0  # Clock reading when the current question was shown

        self.persistence_warnings: list[PersistenceWarning] = []
        self.last_save_ok = True
        # Set by SessionRunner to move snapshot writes off the event loop
        self.save_dispatcher: Callable[[SessionSnapshot], None] | None = None

        self._log = logger

        self._handlers: dict[CommandKind, Callable[[Command], Any]] = {
            CommandKind.START: self._handle_start,
            CommandKind.SUBMIT_ANSWER: self._handle_submit_answer,
            CommandKind.NAVIGATE: self._handle_navigate,
            CommandKind.FLAG: self._handle_flag,
            CommandKind.UNFLAG: self._handle_flag,
            CommandKind.PAUSE: self._handle_pause,
            CommandKind.RESUME: self._handle_resume,
            CommandKind.FINISH: self._handle_finish,
            CommandKind.ENTER_REVIEW: self._handle_enter_review,
            CommandKind.TICK: self._handle_tick,
            CommandKind.INTEGRITY_SIGNAL: self._handle_signal,
        }

        scoring = self.settings.get_scoring_config()
        self.weak_threshold = scoring["weak_threshold"]
        self.strong_threshold = scoring["strong_threshold"]
        self.default_passing_score = scoring["passing_score"]

    # =========================================================================
    # Dispatch
    # =========================================================================

    def command(self, kind: CommandKind, at: float | None = None, **payload: Any) -> Command:
        """Build a command stamped with ``at`` (defaults to now)."""
        return Command(kind=kind, issued_at=self._time() if at is None else at, payload=payload)

    def dispatch(self, command: Command) -> Any:
        """
        Process a command and any commands queued before it.

        Called while another command is executing (e.g. from a listener),
        the command is queued and runs once the current one completes.

        Returns:
            The command's result

        Raises:
            SessionEngineError: The command was rejected; state is unchanged
        """
        self._queue.push(command)
        if self._processing:
            return None

        outcome: Any = None
        for processed, result in self.process_pending():
            if processed is command:
                outcome = result
        if isinstance(outcome, SessionEngineError):
            raise outcome
        return outcome

    def enqueue(self, command: Command) -> None:
        """Queue a command without running it (see ``process_pending``)."""
        self._queue.push(command)

    def process_pending(self) -> list[tuple[Command, Any]]:
        """
        Run queued commands in issue order.

        Returns:
            (command, result) pairs; a rejected command's result is the
            SessionEngineError it raised
        """
        outcomes: list[tuple[Command, Any]] = []
        while self._queue:
            command = self._queue.pop()
            self._processing = True
            try:
                result = self._execute(command)
            except SessionEngineError as e:
                self._log.info(f"{command.kind.value} rejected: {e.message}")
                result = e
            finally:
                self._processing = False
                self.events.flush()
            outcomes.append((command, result))
        return outcomes

    def _execute(self, command: Command) -> Any:
        if command.kind in USER_COMMANDS and self.status == SessionStatus.ACTIVE:
            # Only a TICK expires the session at the exact deadline instant
            self._advance_clock(command.issued_at, raise_store_errors=False, expire_at_deadline=False)
        return self._handlers[command.kind](command)

    def subscribe(self, listener: Listener, event_type: SessionEventType | None = None) -> Callable[[], None]:
        """Observe session events. Returns an unsubscribe function."""
        return self.events.subscribe(listener, event_type)

    # =========================================================================
    # Engine API
    # =========================================================================

    def start(self, config: SessionConfig, at: float | None = None) -> Session:
        """Start (or resume) a session. Valid only from INSTRUCTIONS."""
        return self.dispatch(self.command(CommandKind.START, at, config=config))

    def restore(self, snapshot: SessionSnapshot, at: float | None = None) -> Session:
        """Resume directly from a snapshot. Valid only from INSTRUCTIONS."""
        return self.dispatch(self.command(CommandKind.START, at, snapshot=snapshot))

    def submit_answer(self, question_id: str, selection: Iterable[str], at: float | None = None) -> AnswerFeedback | None:
        """
        Record an answer for the current question.

        Returns:
            Immediate feedback in practice mode, otherwise None
        """
        return self.dispatch(
            self.command(CommandKind.SUBMIT_ANSWER, at, question_id=question_id, selection=selection)
        )

    def advance(self, delta: int = 1, at: float | None = None) -> int:
        """Move ``delta`` questions (negative is backward). Returns the new position."""
        return self.dispatch(self.command(CommandKind.NAVIGATE, at, delta=delta))

    def go_to(self, position: int, at: float | None = None) -> int:
        """Jump to a position. Returns the new position."""
        return self.dispatch(self.command(CommandKind.NAVIGATE, at, target=position))

    def flag(self, at: float | None = None) -> bool:
        return self.dispatch(self.command(CommandKind.FLAG, at))

    def unflag(self, at: float | None = None) -> bool:
        return self.dispatch(self.command(CommandKind.UNFLAG, at))

    def pause(self, at: float | None = None) -> bool:
        return self.dispatch(self.command(CommandKind.PAUSE, at))

    def resume(self, at: float | None = None) -> bool:
        return self.dispatch(self.command(CommandKind.RESUME, at))

    def finish(self, at: float | None = None) -> SessionResult:
        return self.dispatch(self.command(CommandKind.FINISH, at))

    def enter_review(self, at: float | None = None) -> list[ReviewItem]:
        return self.dispatch(self.command(CommandKind.ENTER_REVIEW, at))

    def tick(self, at: float | None = None) -> TickResult:
        return self.dispatch(self.command(CommandKind.TICK, at))

    def report_signal(self, signal: EnvironmentSignal, at: float | None = None) -> Violation | None:
        return self.dispatch(self.command(CommandKind.INTEGRITY_SIGNAL, at, signal=signal))

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def status(self) -> SessionStatus:
        return self.session.status if self.session else SessionStatus.INSTRUCTIONS

    @property
    def mode(self) -> SessionMode | None:
        return self.session.mode if self.session else None

    @property
    def current_question(self) -> Question | None:
        if self.session is None or self.status == SessionStatus.INSTRUCTIONS:
            return None
        question_id = self.session.current_question_id
        return self._questions.get(question_id) if question_id else None

    def current_question_view(self) -> dict[str, Any] | None:
        """Renderable current question; correctness stays hidden until results."""
        question = self.current_question
        return question.public_view() if question else None

    @property
    def time_remaining(self) -> float | None:
        return self.clock.remaining() if self.session else None

    @property
    def elapsed(self) -> float:
        return self.clock.elapsed() if self.session else 0.0

    def question(self, question_id: str) -> Question:
        return self._questions[question_id]

    def progress(self) -> Progress:
        session = self._require_session("read progress")
        return Progress(
            position=session.current_position,
            total=session.total_questions,
            answered=session.answered_count,
            flagged=len(session.flagged),
        )

    def statistics(self) -> LiveStatistics:
        """Live statistics; correctness only where the mode gives feedback."""
        session = self._require_session("read statistics")
        reveal = session.mode.gives_feedback or self.status in (SessionStatus.RESULTS, SessionStatus.REVIEW)
        correct = sum(1 for ok in self._scored.values() if ok)
        answered = len(self._scored)
        return LiveStatistics(
            answered=session.answered_count,
            total=session.total_questions,
            elapsed_seconds=self.clock.elapsed(),
            remaining_seconds=self.clock.remaining(),
            correct=correct if reveal else None,
            accuracy=(correct / answered if answered else 0.0) if reveal else None,
            streak=self.scorer.streak if reveal else None,
            best_streak=self.scorer.best_streak if reveal else None,
            violation_count=len(session.violations),
        )

    def violations(self) -> tuple[Violation, ...]:
        return self.monitor.violations() if self.monitor else ()

    def violation_count(self) -> int:
        return self.monitor.violation_count() if self.monitor else 0

    def weak_objectives(self, threshold: float | None = None) -> list[str]:
        """Objectives below the weak threshold (settings default)."""
        return self.scorer.weak_objectives(self.weak_threshold if threshold is None else threshold)

    def strong_objectives(self, threshold: float | None = None) -> list[str]:
        return self.scorer.strong_objectives(self.strong_threshold if threshold is None else threshold)

    def review_items(self) -> list[ReviewItem]:
        """Every question with answer, correctness and explanation. RESULTS/REVIEW only."""
        session = self._require_session("review answers")
        if self.status not in (SessionStatus.RESULTS, SessionStatus.REVIEW):
            raise InvalidStateError("review answers", self.status.value)
        items = []
        for position, question_id in enumerate(session.question_ids):
            selected = session.answers.get(question_id)
            items.append(
                ReviewItem(
                    position=position,
                    question=self._questions[question_id],
                    selected_option_ids=tuple(selected or ()),
                    correct=self._scored.get(question_id, False),
                    answered=selected is not None,
                    flagged=question_id in session.flagged,
                    time_seconds=session.time_per_question.get(question_id, 0.0),
                )
            )
        return items

    def snapshot(self) -> SessionSnapshot:
        session = self._require_session("take a snapshot")
        self._sync_clock_state()
        return SessionSnapshot.from_session(session)

    # =========================================================================
    # Command handlers
    # =========================================================================

    def _handle_start(self, command: Command) -> Session:
        if self.status != SessionStatus.INSTRUCTIONS:
            raise InvalidStateError("start", self.status.value)

        snapshot = command.payload.get("snapshot")
        if snapshot is not None:
            return self._restore(snapshot, command.issued_at)

        config: SessionConfig = command.payload["config"]
        self._check_config(config)

        if config.session_id and config.resume:
            stored = self._load_snapshot(config.session_id)
            if stored is not None and stored.status.is_resumable:
                if stored.exam_id == config.exam_id and stored.mode == config.mode:
                    return self._restore(stored, command.issued_at)
                self._log.info(
                    f"Stored session {stored.session_id} is for {stored.exam_id}/{stored.mode.value}, starting fresh"
                )
            base_revision = stored.revision if stored is not None else 0
        elif config.session_id:
            stored = self._load_snapshot(config.session_id)
            base_revision = stored.revision if stored is not None else 0
        else:
            base_revision = 0

        questions = self._fetch_questions(config)
        question_ids = [q.id for q in questions]
        if config.shuffle:
            random.Random(config.seed).shuffle(question_ids)

        timed = config.mode.is_timed
        time_limit = config.time_limit_minutes * 60 if timed else None
        fractions = config.warning_fractions or self.settings.get_warning_fractions()

        session = Session(
            session_id=config.session_id or uuid.uuid4().hex[:12],
            exam_id=config.exam_id,
            mode=config.mode,
            question_ids=question_ids,
            remaining_time=time_limit,
            status=SessionStatus.ACTIVE,
            correlation_id=uuid.uuid4().hex,
            time_limit_seconds=time_limit,
            passing_score=config.passing_score if config.passing_score is not None else self.default_passing_score,
            objective_weights=dict(config.objective_weights),
            warning_fractions=tuple(sorted(set(fractions), reverse=True)) if timed else (),
            revision=base_revision,
        )

        self._activate(session, questions, command.issued_at)
        self._log.info(
            f"Started {session.mode.value} session {session.session_id} for {session.exam_id}: "
            f"{session.total_questions} questions"
            + (f", {time_limit / 60:g} min" if time_limit else "")
        )
        self.events.emit(
            SessionEventType.STATUS_CHANGED,
            previous=SessionStatus.INSTRUCTIONS.value,
            status=SessionStatus.ACTIVE.value,
        )
        self._emit_question_changed()
        self._checkpoint("start")
        return session

    def _handle_submit_answer(self, command: Command) -> AnswerFeedback | None:
        session = self._require_active("submit an answer")
        question_id = str(command.payload["question_id"])

        if question_id not in self._questions:
            raise InvalidAnswerError(f"Question {question_id} is not part of this session")
        if question_id != session.current_question_id:
            position = session.question_ids.index(question_id)
            if not session.mode.allows_backward and position < session.current_position:
                raise OperationForbiddenError("Answers to earlier questions are locked in formal mode.")
            raise InvalidAnswerError("Only the question on screen can be answered. Navigate to it first.")

        question = self._questions[question_id]
        chosen = normalize_selection(question, command.payload["selection"])
        correct = validate(question, chosen)
        previous = self._scored.get(question_id)

        # Validated: mutate
        self._settle_visit()
        session.answers[question_id] = chosen
        self._scored[question_id] = correct
        self.scorer.record(question.objective_id, correct, previous, question_id=question_id)
        session.streak, session.best_streak = self.scorer.streak, self.scorer.best_streak

        feedback = None
        event_data: dict[str, Any] = {
            "question_id": question_id,
            "position": session.current_position,
            "revised": previous is not None,
        }
        if session.mode.gives_feedback:
            feedback = AnswerFeedback(
                question_id=question_id,
                correct=correct,
                correct_option_ids=question.correct_option_ids,
                explanation=question.explanation,
            )
            event_data["correct"] = correct
        self.events.emit(SessionEventType.ANSWER_RECORDED, **event_data)
        self._log.debug(f"Answer recorded for {question_id} (position {session.current_position})")

        self._checkpoint("answer")
        return feedback

    def _handle_navigate(self, command: Command) -> int:
        session = self._require_session("navigate")
        in_review = self.status == SessionStatus.REVIEW
        if not in_review:
            self._require_active("navigate")

        current = session.current_position
        target = command.payload.get("target")
        if target is None:
            target = current + int(command.payload.get("delta", 1))

        if not in_review and target < current and not session.mode.allows_backward:
            raise NavigationForbiddenError(
                "Formal exams are forward-only. You cannot return to earlier questions."
            )
        if target == current or not 0 <= target < session.total_questions:
            return current

        if not in_review:
            self._settle_visit()
        session.current_position = target
        self._emit_question_changed(previous=current)
        if not in_review:
            self._checkpoint("navigate")
        return target

    def _handle_flag(self, command: Command) -> bool:
        session = self._require_active("flag a question")
        question_id = session.current_question_id
        if question_id is None:
            raise InvalidStateError("flag a question", "past the last question")

        wanted = command.kind == CommandKind.FLAG
        if (question_id in session.flagged) == wanted:
            return wanted
        if wanted:
            session.flagged.add(question_id)
        else:
            session.flagged.discard(question_id)
        self._checkpoint("flag")
        return wanted

    def _handle_pause(self, command: Command) -> bool:
        session = self._require_session("pause")
        if not session.mode.allows_pause:
            raise OperationForbiddenError("Formal exams cannot be paused.")
        if self.status == SessionStatus.PAUSED:
            return False
        self._require_active("pause")

        self._settle_visit()
        self.clock.pause(at=command.issued_at)
        self._sync_clock_state()
        self._set_status(SessionStatus.PAUSED)
        self._checkpoint("pause")
        return True

    def _handle_resume(self, command: Command) -> bool:
        session = self._require_session("resume")
        if not session.mode.allows_pause:
            raise OperationForbiddenError("Formal exams cannot be paused or resumed.")
        if self.status == SessionStatus.ACTIVE:
            return False
        if self.status != SessionStatus.PAUSED:
            raise InvalidStateError("resume", self.status.value)

        self.clock.resume(at=command.issued_at)
        self._visit_started = self.clock.elapsed()
        self._set_status(SessionStatus.ACTIVE)
        self._checkpoint("resume")
        return True

    def _handle_finish(self, command: Command) -> SessionResult:
        self._require_session("finish")
        if self.status == SessionStatus.ACTIVE:
            return self._submit(auto=False, at=command.issued_at)
        if self.status in (SessionStatus.TIME_EXPIRED, SessionStatus.SUBMITTING):
            return self._submit(auto=True, at=command.issued_at)
        if self.status in (SessionStatus.RESULTS, SessionStatus.REVIEW) and self.result is not None:
            return self.result
        raise InvalidStateError("finish", self.status.value)

    def _handle_enter_review(self, command: Command) -> list[ReviewItem]:
        session = self._require_session("enter review")
        if self.status != SessionStatus.RESULTS:
            raise InvalidStateError("enter review", self.status.value)
        previous = session.current_position
        session.current_position = 0
        self._set_status(SessionStatus.REVIEW)
        self._emit_question_changed(previous=previous)
        return self.review_items()

    def _handle_tick(self, command: Command) -> TickResult:
        if self.status != SessionStatus.ACTIVE:
            return TickResult(
                elapsed=self.clock.elapsed(),
                remaining=self.clock.remaining(),
                counted=False,
            )
        return self._advance_clock(command.issued_at, raise_store_errors=True)

    def _handle_signal(self, command: Command) -> Violation | None:
        signal: EnvironmentSignal = command.payload["signal"]
        if self.monitor is None or self.status not in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
            self._log.debug(f"Ignoring {signal.type.value} signal outside a monitored session")
            return None

        violation = self.monitor.observe(signal)
        if violation is not None:
            self.session.violations.append(violation)
            self.events.emit(
                SessionEventType.VIOLATION_RECORDED,
                type=violation.type.value,
                timestamp=violation.timestamp.isoformat(),
                count=self.monitor.violation_count(),
                correlation_id=self.session.correlation_id,
            )
        return violation

    # =========================================================================
    # Start / restore
    # =========================================================================

    def _check_config(self, config: SessionConfig) -> None:
        if config.question_count < 1:
            raise ConfigurationError("A session needs at least one question.")
        if config.mode.is_timed and (config.time_limit_minutes is None or config.time_limit_minutes <= 0):
            raise ConfigurationError(f"{config.mode.value.title()} sessions need a positive time limit.")
        if config.passing_score is not None and not 0 <= config.passing_score <= 1:
            raise ConfigurationError("Passing score must be a fraction between 0 and 1.")
        if any(w < 0 for w in config.objective_weights.values()):
            raise ConfigurationError("Objective weights cannot be negative.")
        if config.warning_fractions and any(not 0 < f < 1 for f in config.warning_fractions):
            raise ConfigurationError("Time warning fractions must be between 0 and 1.")
        if config.difficulty_range is not None:
            low, high = config.difficulty_range
            if not 1 <= low <= high <= 5:
                raise ConfigurationError("Difficulty range must be within 1-5 with min <= max.")

    def _fetch_questions(self, config: SessionConfig) -> list[Question]:
        filters = QuestionFilters(
            count=config.question_count,
            objective_ids=tuple(config.objective_ids) if config.objective_ids else None,
            difficulty_range=config.difficulty_range,
        )
        questions = list(self.question_store.fetch_questions(config.exam_id, filters))

        if not questions:
            raise ConfigurationError("No questions match the selected objectives and difficulty.")
        if len(questions) != config.question_count:
            raise ConfigurationError(
                f"Only {len(questions)} questions available, {config.question_count} requested."
            )
        ids = [q.id for q in questions]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("The question store returned duplicate questions.")
        return questions

    def _load_snapshot(self, session_id: str) -> SessionSnapshot | None:
        if self.persistence is None:
            return None
        try:
            return self.persistence.load(session_id)
        except Exception as e:  # Intentionally broad - a broken store must not block a fresh start
            self._persistence_failed("load", session_id, e)
            return None

    def _restore(self, snapshot: SessionSnapshot, at: float) -> Session:
        try:
            snapshot.check_consistency()
        except PersistenceError as e:
            raise ConfigurationError(f"Cannot resume: {e.message}") from e
        if not snapshot.status.is_resumable:
            raise ConfigurationError(f"Session {snapshot.session_id} is {snapshot.status.value} and cannot be resumed.")

        questions = list(self.question_store.get_questions(list(snapshot.question_ids)))
        if [q.id for q in questions] != list(snapshot.question_ids):
            raise ConfigurationError(f"Questions for session {snapshot.session_id} are no longer available.")

        session = snapshot.to_session()
        self._activate(session, questions, at)

        # Replay answers to rebuild derived scoring state
        for question_id, selection in session.answers.items():
            question = self._questions[question_id]
            correct = validate(question, selection)
            self._scored[question_id] = correct
            self.scorer.record(question.objective_id, correct, question_id=question_id)
        # Streaks come from the snapshot; replay order does not reproduce them
        self.scorer.streak, self.scorer.best_streak = session.streak, session.best_streak

        self._log.info(
            f"Resumed session {session.session_id} at question {session.current_position + 1}"
            f"/{session.total_questions} ({session.status.value})"
        )
        self.events.emit(
            SessionEventType.SESSION_RESUMED,
            session_id=session.session_id,
            position=session.current_position,
            status=session.status.value,
        )
        self.events.emit(
            SessionEventType.STATUS_CHANGED,
            previous=SessionStatus.INSTRUCTIONS.value,
            status=session.status.value,
        )
        self._emit_question_changed()
        return session

    def _activate(self, session: Session, questions: list[Question], at: float) -> None:
        """Install a validated session and wire the clock, scorer and monitor."""
        self.session = session
        self._questions = {q.id: q for q in questions}
        self._scored = {}
        self.scorer = MasteryScorer(session.objective_weights)
        self.result = None
        self._pending_result = None
        self._expired = False
        self._log = logger.bind(session_id=session.session_id, correlation_id=session.correlation_id)

        self.monitor = None
        if session.mode == SessionMode.FORMAL:
            self.monitor = IntegrityMonitor(
                correlation_id=session.correlation_id,
                now=self._wall_clock,
                devtools_threshold_px=self.settings.devtools_size_threshold_px,
                violations=session.violations,
            )

        self.clock = SessionClock(self._time)
        if session.time_limit_seconds:
            smallest = min(session.warning_fractions) if session.warning_fractions else None
            for fraction in session.warning_fractions:
                level = "critical" if fraction == smallest else "warning"
                self.clock.on_threshold(fraction, self._make_warning_callback(level))
        self.clock.on_tick(self._sync_clock_state)
        self.clock.on_expired(self._on_clock_expired)
        self.clock.start(
            session.time_limit_seconds,
            elapsed=session.total_elapsed,
            fired=session.fired_thresholds,
            paused=session.status == SessionStatus.PAUSED,
            at=at,
        )
        self._visit_started = self.clock.elapsed()
        self._sync_clock_state()

    def _make_warning_callback(self, level: str) -> Callable[[float, float], None]:
        def on_warning(fraction: float, remaining: float) -> None:
            self._log.info(f"Time warning: {remaining:.0f}s remaining ({fraction:.0%})")
            self.events.emit(
                SessionEventType.TIME_WARNING,
                fraction=fraction,
                remaining_seconds=remaining,
                level=level,
            )

        return on_warning

    # =========================================================================
    # Time
    # =========================================================================

    def _advance_clock(self, at: float, raise_store_errors: bool, expire_at_deadline: bool = True) -> TickResult:
        result = self.clock.tick(at, expire_at_deadline=expire_at_deadline)
        if not result.counted:
            self._sync_clock_state()
        if result.expired:
            try:
                self._submit(auto=True, at=at)
            except StoreUnavailableError as e:
                if raise_store_errors:
                    raise
                self._log.error(f"Automatic submission failed, will retry: {e.message}")
        return result

    def _on_clock_expired(self) -> None:
        session = self.session
        self._expired = True
        self._settle_visit()
        self._sync_clock_state()
        self._log.warning(f"Time expired with {session.total_questions - session.answered_count} unanswered")
        self._set_status(SessionStatus.TIME_EXPIRED)
        self.events.emit(SessionEventType.TIME_EXPIRED, answered=session.answered_count)

    def _settle_visit(self) -> None:
        """Credit time on the current question since it was shown."""
        session = self.session
        question_id = session.current_question_id if session else None
        if question_id is None:
            return
        now = self.clock.elapsed()
        spent = max(0.0, now - self._visit_started)
        session.time_per_question[question_id] = session.time_per_question.get(question_id, 0.0) + spent
        self._visit_started = now

    def _sync_clock_state(self, elapsed: float | None = None) -> None:
        """Copy clock readings onto the session (``elapsed`` is a tick's reading)."""
        if self.session is None:
            return
        elapsed = self.clock.elapsed() if elapsed is None else elapsed
        duration = self.clock.duration
        self.session.total_elapsed = elapsed
        self.session.remaining_time = None if duration is None else max(0.0, duration - elapsed)
        self.session.fired_thresholds = set(self.clock.fired_thresholds)

    # =========================================================================
    # Submission
    # =========================================================================

    def _submit(self, auto: bool, at: float) -> SessionResult:
        session = self.session
        previous_status = session.status

        times_before = dict(session.time_per_question)
        visit_started = self._visit_started
        if self._pending_result is None:
            if not auto:
                self._settle_visit()
                self.clock.pause(at=at)
                self._sync_clock_state()
            self._pending_result = self._build_result()
        result, final_scorer = self._pending_result

        if session.status != SessionStatus.SUBMITTING:
            self._set_status(SessionStatus.SUBMITTING)

        try:
            self.result_store.record_result(session.session_id, result)
        except StoreUnavailableError:
            if not auto:
                # User-initiated: hand the session back untouched
                self._pending_result = None
                session.time_per_question = times_before
                self._visit_started = visit_started
                self._set_status(previous_status)
                self.clock.resume(at=at)
            raise

        self.clock.stop(at=at)
        self.scorer = final_scorer
        self.result = result
        self._pending_result = None
        self._set_status(SessionStatus.RESULTS)
        self._log.info(
            f"Session {session.session_id} submitted: {result.correct_count}/{result.total_questions} "
            f"({result.score_percentage:.1f}%), {'PASS' if result.passed else 'FAIL'}"
        )
        self.events.emit(SessionEventType.RESULT_READY, **result.to_dict())
        self._checkpoint("results")
        return result

    def _build_result(self) -> tuple[SessionResult, MasteryScorer]:
        """Score the session on a copy of the scorer; skipped questions count as incorrect."""
        session = self.session
        scorer = copy.deepcopy(self.scorer)

        correct = incorrect = skipped = 0
        difficulty: dict[int, dict[str, int]] = {}
        answered_time = 0.0
        for question_id in session.question_ids:
            question = self._questions[question_id]
            bucket = difficulty.setdefault(question.difficulty, {"correct": 0, "total": 0})
            bucket["total"] += 1
            if question_id not in self._scored:
                skipped += 1
                scorer.record_unanswered(question.objective_id)
                continue
            answered_time += session.time_per_question.get(question_id, 0.0)
            if self._scored[question_id]:
                correct += 1
                bucket["correct"] += 1
            else:
                incorrect += 1

        total = session.total_questions
        score = correct / total if total else 0.0
        answered = correct + incorrect
        summary = self.monitor.summary() if self.monitor else {}

        result = SessionResult(
            session_id=session.session_id,
            exam_id=session.exam_id,
            mode=session.mode,
            total_questions=total,
            correct_count=correct,
            incorrect_count=incorrect,
            skipped_count=skipped,
            score=score,
            passing_score=session.passing_score,
            passed=score >= session.passing_score,
            objective_breakdown=scorer.breakdown(),
            difficulty_breakdown=dict(sorted(difficulty.items())),
            readiness_score=scorer.readiness_score,
            total_time_seconds=self.clock.elapsed(),
            average_time_per_question=answered_time / answered if answered else 0.0,
            flagged_count=len(session.flagged),
            best_streak=scorer.best_streak,
            violation_count=len(session.violations),
            violation_summary=summary,
            mastery_levels={oid: scorer.level_for(oid).value for oid in scorer.breakdown()},
            time_expired=self._expired,
        )
        return result, scorer

    # =========================================================================
    # Persistence
    # =========================================================================

    def _checkpoint(self, reason: str) -> bool:
        """
        Save a snapshot. Failures become warnings; memory stays authoritative.

        With a ``save_dispatcher`` installed the snapshot is handed off and
        the outcome arrives later through ``record_save_outcome``.
        """
        if self.persistence is None or self.session is None:
            return True

        self._sync_clock_state()
        self.session.revision += 1
        snapshot = SessionSnapshot.from_session(self.session)
        if self.save_dispatcher is not None:
            self.save_dispatcher(snapshot)
            return True

        try:
            self.persistence.save(snapshot)
        except Exception as e:  # Intentionally broad - durability is best-effort
            self.record_save_outcome(snapshot, e)
            return False
        self.record_save_outcome(snapshot, None, reason)
        return True

    def record_save_outcome(self, snapshot: SessionSnapshot, error: Exception | None, reason: str = "") -> None:
        """
        Report how a snapshot save ended.

        Called inline for direct saves, and by ``SessionRunner`` when a
        background save completes. Events emitted outside a command are
        delivered immediately.
        """
        if error is None:
            if not self.last_save_ok:
                self._log.info(
                    f"Session saved again after earlier failures (revision {snapshot.revision}"
                    + (f", {reason})" if reason else ")")
                )
            self.last_save_ok = True
            return

        self._persistence_failed("save", snapshot.session_id, error)
        if not self._processing:
            self.events.flush()

    def _persistence_failed(self, operation: str, session_id: str, error: Exception) -> None:
        reason = error.message if isinstance(error, SessionEngineError) else str(error)
        warning = PersistenceWarning(operation, session_id, reason)
        self.persistence_warnings.append(warning)
        self.last_save_ok = operation != "save" and self.last_save_ok
        self._log.warning(str(warning))
        self.events.emit(
            SessionEventType.PERSISTENCE_WARNING,
            operation=operation,
            session_id=session_id,
            reason=reason,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_session(self, operation: str) -> Session:
        if self.session is None:
            raise InvalidStateError(operation, SessionStatus.INSTRUCTIONS.value)
        return self.session

    def _require_active(self, operation: str) -> Session:
        session = self._require_session(operation)
        if session.status == SessionStatus.ACTIVE:
            return session
        if self._expired:
            raise SessionExpiredError()
        raise InvalidStateError(operation, session.status.value)

    def _set_status(self, status: SessionStatus) -> None:
        previous = self.session.status
        if previous == status:
            return
        self.session.status = status
        self._log.debug(f"Status {previous.value} -> {status.value}")
        self.events.emit(SessionEventType.STATUS_CHANGED, previous=previous.value, status=status.value)

    def _emit_question_changed(self, previous: int | None = None) -> None:
        session = self.session
        self.events.emit(
            SessionEventType.QUESTION_CHANGED,
            position=session.current_position,
            previous=previous,
            question_id=session.current_question_id,
            total=session.total_questions,
        )
