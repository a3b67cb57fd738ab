from __future__ import annotations

import random

import pytest

from orca_ops.control_plane.orchestration.errors import InvalidTransitionError
from orca_ops.control_plane.orchestration.state_machine import (
    ALLOWED_TRANSITIONS,
    RetryPolicy,
    assert_transition,
)


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    [
        ("pending", "running"),
        ("pending", "cancelled"),
        ("running", "succeeded"),
        ("running", "failed"),
        ("running", "retrying"),
        ("retrying", "pending"),
        ("retrying", "failed"),
    ],
)
def test_allowed_transitions_pass(from_status: str, to_status: str) -> None:
    assert_transition(from_status, to_status)


@pytest.mark.parametrize("terminal", ["succeeded", "failed", "cancelled"])
def test_terminal_states_have_no_exits(terminal: str) -> None:
    assert ALLOWED_TRANSITIONS[terminal] == set()
    with pytest.raises(InvalidTransitionError, match="invalid_transition:terminal_state"):
        assert_transition(terminal, "pending")


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    [("pending", "succeeded"), ("pending", "retrying"), ("retrying", "running"), ("running", "pending")],
)
def test_disallowed_transitions_raise(from_status: str, to_status: str) -> None:
    with pytest.raises(InvalidTransitionError, match="invalid_transition:not_allowed"):
        assert_transition(from_status, to_status)


def test_backoff_grows_exponentially_and_caps() -> None:
    policy = RetryPolicy(jitter=False)

    assert [policy.backoff_seconds(n) for n in (1, 2, 3, 4, 5, 6, 7)] == [
        10.0,
        20.0,
        40.0,
        80.0,
        160.0,
        300.0,
        300.0,
    ]


def test_jittered_backoff_stays_within_half_to_full_delay() -> None:
    policy = RetryPolicy(rng=random.Random(1234))

    for attempt in range(1, 8):
        full = min(300.0, 10.0 * 2 ** (attempt - 1))
        delay = policy.backoff_seconds(attempt)
        assert full / 2 <= delay <= full


def test_retry_after_hint_acts_as_floor() -> None:
    policy = RetryPolicy(jitter=False)

    assert policy.backoff_seconds(1, retry_after_s=45) == 45.0
    assert policy.backoff_seconds(1, retry_after_s=2) == 10.0
    assert policy.backoff_seconds(1, retry_after_s=9999) == 300.0


def test_can_retry_respects_per_operation_ceiling() -> None:
    policy = RetryPolicy(max_attempts=3)

    assert policy.can_retry(2)
    assert not policy.can_retry(3)
    assert policy.can_retry(4, max_attempts=5)
