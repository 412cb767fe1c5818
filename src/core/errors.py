"""
Session engine error taxonomy.

Every error carries a short, user-facing message. Callers decide how to
surface it:

- ConfigurationError / StoreUnavailableError: blocking message before a session starts
- PolicyViolationError subclasses: inline, non-blocking notice
- SessionExpiredError: refresh the view to the results screen
- PersistenceWarning: "not saved" indicator, the session keeps running
"""

from __future__ import annotations


class SessionEngineError(Exception):
    """Base class for all session engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(SessionEngineError):
    """Bad session setup. The session never becomes active."""
    pass


class InvalidAnswerError(SessionEngineError):
    """Malformed answer selection. State is unchanged; re-prompt the user."""
    pass


class PolicyViolationError(SessionEngineError):
    """An operation the current mode does not allow."""
    pass


class NavigationForbiddenError(PolicyViolationError):
    """Backward navigation attempted in formal mode."""
    pass


class OperationForbiddenError(PolicyViolationError):
    """Operation not permitted in the current mode (e.g. pausing a formal exam)."""
    pass


class InvalidStateError(SessionEngineError):
    """Operation invoked in a lifecycle state where it is not valid."""

    def __init__(self, operation: str, status: str):
        super().__init__(f"Cannot {operation} while the session is {status}")
        self.operation = operation
        self.status = status


class SessionExpiredError(SessionEngineError):
    """Submission after the time limit ran out."""

    def __init__(self, message: str = "Time is up. Your answers have been submitted."):
        super().__init__(message)


class StoreUnavailableError(SessionEngineError):
    """Question or Result Store failure. Session state stays valid for retry."""
    pass


class PersistenceError(SessionEngineError):
    """Snapshot save/load failure raised by a persistence adapter."""
    pass


class SnapshotConflictError(PersistenceError):
    """A newer snapshot revision already exists for this session."""

    def __init__(self, session_id: str, stored_revision: int, incoming_revision: int):
        super().__init__(
            f"Session {session_id} was saved elsewhere "
            f"(stored revision {stored_revision}, this copy {incoming_revision})"
        )
        self.session_id = session_id
        self.stored_revision = stored_revision
        self.incoming_revision = incoming_revision


class PersistenceWarning(UserWarning):
    """
    Non-fatal report of a failed save or load.

    Not raised by the controller: it is delivered as a PERSISTENCE_WARNING
    event and kept on ``SessionController.persistence_warnings``.
    """

    def __init__(self, operation: str, session_id: str, reason: str):
        super().__init__(f"Could not {operation} session {session_id}: {reason}")
        self.operation = operation
        self.session_id = session_id
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PersistenceWarning):
            return NotImplemented
        return (self.operation, self.session_id, self.reason) == (
            other.operation,
            other.session_id,
            other.reason,
        )

    def __hash__(self) -> int:
        return hash((self.operation, self.session_id, self.reason))
