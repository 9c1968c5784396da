from __future__ import annotations

from typing import Any, Iterable


class PunchclockError(Exception):
    """Base error. The CLI maps each subclass to its own exit code."""

    code = "ERROR"
    exit_code = 1

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class StorageError(PunchclockError):
    code = "STORAGE_ERROR"
    exit_code = 8


class ValidationError(PunchclockError):
    code = "VALIDATION_ERROR"
    exit_code = 3

    def __init__(self, message: str | Iterable[str], **context: Any):
        if isinstance(message, str):
            errors = [message]
        else:
            errors = list(message)
        super().__init__("; ".join(errors), **context)
        self.errors = errors


class NotFoundError(PunchclockError):
    code = "NOT_FOUND"
    exit_code = 4


class ConflictError(PunchclockError):
    code = "CONFLICT"
    exit_code = 5


class InvalidStateError(PunchclockError):
    """A session transition that is not legal from its current state."""

    code = "INVALID_STATE"
    exit_code = 6

    def __init__(self, session_id: int | None, state: str, attempted: str):
        super().__init__(
            f"Cannot {attempted} session #{session_id}: it is {state}",
            session_id=session_id,
            state=state,
            attempted=attempted,
        )
        self.session_id = session_id
        self.state = state
        self.attempted = attempted


class ConfigurationError(PunchclockError):
    code = "CONFIGURATION_ERROR"
    exit_code = 7
