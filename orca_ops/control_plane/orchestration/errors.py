"""Error taxonomy for submission, scheduling and execution."""

from __future__ import annotations


class EngineError(Exception):
    """Base for engine errors that carry a machine-readable reason code."""

    def __init__(self, message: str, *, reason_code: str = "") -> None:
        super().__init__(message)
        self.reason_code = reason_code or message


class ValidationError(EngineError, ValueError):
    """Rejected submission; the operation never enters the state machine."""


class InvalidTransitionError(EngineError, ValueError):
    pass


class OperationNotFoundError(EngineError, ValueError):
    pass


class TargetNotFoundError(EngineError, ValueError):
    pass


class CapacityUnavailable(EngineError):
    """No free session slot on the target right now; not a failure."""


class PermanentExecutionError(EngineError, RuntimeError):
    """Non-retryable outcome of an attempt."""


class TransientExecutionError(EngineError, RuntimeError):
    """Retryable outcome of an attempt."""

    def __init__(
        self,
        message: str,
        *,
        reason_code: str = "",
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, reason_code=reason_code)
        self.retry_after_s = retry_after_s


class RetriesExhaustedError(EngineError, RuntimeError):
    """A transient failure arrived after the attempt ceiling was reached."""


class OperationCancelled(EngineError):
    """Raised at a cooperative checkpoint once cancellation was requested."""
