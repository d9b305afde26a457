"""Exception types raised while building and invoking workers."""

from __future__ import annotations


class WorkerboxError(Exception):
    """Base exception for workerbox."""


class ExtractionError(WorkerboxError):
    """Raised when submitted source has no exported functions."""


class SessionError(WorkerboxError):
    """Raised when a runtime cannot be created, written to, or launched."""


class TransportError(WorkerboxError):
    """Raised when an invocation ends without a readable result marker."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class UserFunctionError(WorkerboxError):
    """Raised when the invoked function threw."""

    def __init__(self, message: str, duration: float | None = None):
        super().__init__(message)
        self.message = message
        self.duration = duration
