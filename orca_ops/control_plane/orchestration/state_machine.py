"""Operation lifecycle transitions and retry backoff policy."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from orca_ops.control_plane.models.operation_contracts import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RETRYING,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    TERMINAL_STATUSES,
)
from orca_ops.control_plane.orchestration.errors import InvalidTransitionError
from orca_ops.shared.settings import EngineSettings

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_RUNNING, STATUS_CANCELLED},
    STATUS_RUNNING: {STATUS_SUCCEEDED, STATUS_FAILED, STATUS_RETRYING, STATUS_CANCELLED},
    STATUS_RETRYING: {STATUS_PENDING, STATUS_FAILED, STATUS_CANCELLED},
    STATUS_SUCCEEDED: set(),
    STATUS_FAILED: set(),
    STATUS_CANCELLED: set(),
}


def assert_transition(from_status: str, to_status: str) -> None:
    if from_status in TERMINAL_STATUSES:
        raise InvalidTransitionError("invalid_transition:terminal_state")
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError("invalid_transition:not_allowed")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 300.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, rng: random.Random | None = None
    ) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            backoff_cap_seconds=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
            rng=rng or random.Random(),
        )

    def can_retry(self, attempt_count: int, max_attempts: int | None = None) -> bool:
        ceiling = self.max_attempts if max_attempts is None else max_attempts
        return attempt_count < ceiling

    def backoff_seconds(self, attempt: int, retry_after_s: float | None = None) -> float:
        """Delay before the next attempt; a server-provided hint is a floor."""

        exponent = max(attempt, 1) - 1
        delay = min(
            self.backoff_cap_seconds,
            self.backoff_base_seconds * (self.backoff_multiplier**exponent),
        )
        if self.jitter and delay > 0:
            delay = self.rng.uniform(delay / 2, delay)
        if retry_after_s is not None:
            delay = max(delay, min(float(retry_after_s), self.backoff_cap_seconds))
        return round(delay, 3)
