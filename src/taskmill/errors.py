"""Exception hierarchy shared across the mill runtime."""

from __future__ import annotations


class MillError(Exception):
    """Base class for every error raised by taskmill."""


class ConfigError(MillError, ValueError):
    """Configuration is malformed, invalid, or the environment is unusable."""


class ExternalCallError(MillError, RuntimeError):
    """A call into an external collaborator (tracker, review, git) failed."""

    def __init__(self, message: str, *, command: list[str] | None = None, stderr: str | None = None) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.stderr = stderr or ""


class RetryExhaustedError(MillError, RuntimeError):
    """A retried operation failed on every attempt."""

    def __init__(self, what: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{what} failed after {attempts} attempt(s): {last_error}")
        self.what = what
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(MillError, ValueError):
    """A task was asked to move between phases that are not connected."""


class LedgerError(MillError, RuntimeError):
    """The persisted ledger document cannot be read."""


class TaskNotFoundError(MillError, LookupError):
    """The task source has no task with the requested id."""
