"""Error types for the change workflow."""

from __future__ import annotations

from enum import StrEnum

import click


class ErrorKind(StrEnum):
    """Category of a failure, reported in cycle outcomes."""

    TRANSIENT = "transient"
    PARSE = "parse"
    SESSION = "session"
    CONSISTENCY = "consistency"
    VALIDATION = "validation"
    STATE = "state"


class ChangeloopError(click.ClickException):
    """Base class for workflow errors.

    Subclasses ``click.ClickException`` so the CLI prints any of them as a
    clean error message with a non-zero exit status.
    """

    kind: ErrorKind = ErrorKind.STATE


class ChangeNotFoundError(ChangeloopError):
    """Raised when a change has no state record on disk."""


class ChangeExistsError(ChangeloopError):
    """Raised when creating a change whose directory already has state."""


class InvalidTransitionError(ChangeloopError):
    """Raised when a phase transition is not allowed from the current phase."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move from {current} to {target}")
        self.current = current
        self.target = target


class VerdictError(ChangeloopError):
    """Raised when a review carries no usable verdict."""

    kind = ErrorKind.PARSE


class ConsistencyError(ChangeloopError):
    """Raised when a review contradicts itself (revision requested, no issues)."""

    kind = ErrorKind.CONSISTENCY


class InvokeError(ChangeloopError):
    """Raised when an agent process fails."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, exit_status: int | None, stderr: str):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr output"
        super().__init__(f"Agent exited with status {exit_status}: {detail}")
        self.exit_status = exit_status
        self.stderr = stderr


class RetriesExhaustedError(ChangeloopError):
    """Raised when an agent call keeps failing after all retries."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, step: str, attempts: int, last_error: Exception):
        super().__init__(f"{step} failed after {attempts} attempts: {last_error}")
        self.step = step
        self.attempts = attempts
        self.last_error = last_error


class EmptyOutputError(ChangeloopError):
    """Raised when an agent returns no text for an artifact."""

    kind = ErrorKind.TRANSIENT


class SessionResolveError(ChangeloopError):
    """Base class for session listing failures."""

    kind = ErrorKind.SESSION


class SessionCommandFailed(SessionResolveError):
    """The session listing command could not be run or exited non-zero."""


class SessionListingUnparsable(SessionResolveError):
    """The session listing output does not have the expected shape."""


class SessionNotFound(SessionResolveError):
    """The stored session identifier is not in the listing."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found in session listing")
        self.session_id = session_id


class ValidationFailedError(ChangeloopError):
    """Raised when generated artifacts fail structural validation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, problems: list[str]):
        super().__init__("Structural validation failed:\n" + "\n".join(f"  - {p}" for p in problems))
        self.problems = problems


class TaskGraphError(ChangeloopError):
    """Raised when tasks.md cannot be turned into a valid task graph."""

    kind = ErrorKind.VALIDATION
