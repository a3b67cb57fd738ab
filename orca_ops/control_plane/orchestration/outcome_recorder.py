"""Persist attempt outcomes, release slots and drive retry/terminal transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from orca_ops.control_plane.db.db import OperationStore, shift_iso, utc_now_iso
from orca_ops.control_plane.models.operation_contracts import (
    FAILURE_CANCELLED,
    FAILURE_PERMANENT,
    FAILURE_RETRIES_EXHAUSTED,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RETRYING,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    TERMINAL_STATUSES,
)
from orca_ops.control_plane.orchestration.errors import (
    InvalidTransitionError,
    OperationNotFoundError,
    RetriesExhaustedError,
)
from orca_ops.control_plane.orchestration.events import OperationEvents
from orca_ops.control_plane.orchestration.state_machine import RetryPolicy, assert_transition

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_PERMANENT = "permanent"
OUTCOME_TRANSIENT = "transient"
OUTCOME_CANCELLED = "cancelled"


@dataclass(frozen=True)
class AttemptOutcome:
    kind: str
    reason_code: str = ""
    error: str = ""
    result: dict[str, Any] | None = None
    retry_after_s: float | None = None
    latency_ms: float = 0.0

    @classmethod
    def succeeded(cls, result: dict[str, Any] | None, latency_ms: float = 0.0) -> "AttemptOutcome":
        return cls(kind=OUTCOME_SUCCEEDED, reason_code="succeeded", result=result, latency_ms=latency_ms)

    @classmethod
    def permanent(cls, reason_code: str, error: str, latency_ms: float = 0.0) -> "AttemptOutcome":
        return cls(kind=OUTCOME_PERMANENT, reason_code=reason_code, error=error, latency_ms=latency_ms)

    @classmethod
    def transient(
        cls,
        reason_code: str,
        error: str,
        retry_after_s: float | None = None,
        latency_ms: float = 0.0,
    ) -> "AttemptOutcome":
        return cls(
            kind=OUTCOME_TRANSIENT,
            reason_code=reason_code,
            error=error,
            retry_after_s=retry_after_s,
            latency_ms=latency_ms,
        )

    @classmethod
    def cancelled(cls, latency_ms: float = 0.0) -> "AttemptOutcome":
        return cls(kind=OUTCOME_CANCELLED, reason_code="cancelled", latency_ms=latency_ms)


class OutcomeRecorder:
    def __init__(
        self,
        store: OperationStore,
        retry_policy: RetryPolicy | None = None,
        events: OperationEvents | None = None,
        on_slot_released: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.events = events
        self.on_slot_released = on_slot_released

    def record(
        self, operation_id: str, outcome: AttemptOutcome, actor: str = "executor"
    ) -> dict[str, Any] | None:
        """Apply an attempt's outcome; a pending cancellation always wins."""

        with self.store.transaction():
            current = self.store.get_operation(operation_id)
            if current is None or current["status"] != STATUS_RUNNING:
                logger.warning(
                    "Ignoring %s outcome for %s: status is %s",
                    outcome.kind,
                    operation_id,
                    current["status"] if current else "missing",
                )
                return current
            if current["cancel_requested"] and outcome.kind != OUTCOME_CANCELLED:
                logger.info("Discarding %s outcome for cancelled %s", outcome.kind, operation_id)
                outcome = AttemptOutcome.cancelled(latency_ms=outcome.latency_ms)
            updated, event_type = self._apply(current, outcome, actor)
        self._after_commit(updated, event_type)
        return updated

    def _apply(
        self, current: dict[str, Any], outcome: AttemptOutcome, actor: str
    ) -> tuple[dict[str, Any], str]:
        operation_id = current["id"]
        attempt = int(current["attempt_count"])
        not_before: str | None = None
        last_error: str | None = None
        failure_reason = ""
        result: dict[str, Any] | None = None

        if outcome.kind == OUTCOME_SUCCEEDED:
            hops = [(STATUS_RUNNING, STATUS_SUCCEEDED, "succeeded")]
            result = outcome.result or {}
            event_type = "operation_succeeded"
        elif outcome.kind == OUTCOME_PERMANENT:
            hops = [(STATUS_RUNNING, STATUS_FAILED, outcome.reason_code or FAILURE_PERMANENT)]
            last_error = outcome.error
            failure_reason = FAILURE_PERMANENT
            event_type = "operation_failed"
        elif outcome.kind == OUTCOME_CANCELLED:
            hops = [(STATUS_RUNNING, STATUS_CANCELLED, "cancelled_by_operator")]
            failure_reason = FAILURE_CANCELLED
            event_type = "operation_cancelled"
        elif outcome.kind == OUTCOME_TRANSIENT:
            reason = outcome.reason_code or "transient_failure"
            if self.retry_policy.can_retry(attempt, int(current["max_attempts"])):
                delay = self.retry_policy.backoff_seconds(attempt, outcome.retry_after_s)
                hops = [(STATUS_RUNNING, STATUS_RETRYING, reason)]
                not_before = shift_iso(delay)
                last_error = outcome.error
                event_type = "operation_retry_scheduled"
            else:
                exhausted = RetriesExhaustedError(
                    f"retries exhausted: {outcome.error}", reason_code=FAILURE_RETRIES_EXHAUSTED
                )
                hops = [
                    (STATUS_RUNNING, STATUS_RETRYING, reason),
                    (STATUS_RETRYING, STATUS_FAILED, FAILURE_RETRIES_EXHAUSTED),
                ]
                last_error = str(exhausted)
                failure_reason = exhausted.reason_code
                event_type = "operation_dead_lettered"
        else:
            raise ValueError(f"unknown_outcome:{outcome.kind}")

        for from_status, to_status, _ in hops:
            assert_transition(from_status, to_status)

        updated = self.store.finish_running_operation(
            operation_id,
            hops=hops,
            last_error=last_error,
            failure_reason=failure_reason,
            result=result,
            not_before=not_before,
            actor=actor,
        )
        if updated is None:
            raise InvalidTransitionError("invalid_transition:not_running")
        self.store.append_audit_event(
            event_type,
            {
                "operation_id": operation_id,
                "operation_type": current["type"],
                "target_id": current["target_id"],
                "attempt": attempt,
                "reason_code": hops[-1][2],
                "not_before": not_before or "",
                "error": last_error or "",
            },
        )
        self.store.record_operation_metric(current["type"], updated["status"], outcome.latency_ms)
        return updated, event_type

    def _after_commit(self, operation: dict[str, Any], event_type: str) -> None:
        logger.info(
            "Operation %s -> %s (attempt %s/%s)",
            operation["id"],
            operation["status"],
            operation["attempt_count"],
            operation["max_attempts"],
        )
        if self.events is not None:
            self.events.publish(event_type, operation)
        if self.on_slot_released is not None:
            self.on_slot_released()

    def cancel(self, operation_id: str, actor: str = "") -> dict[str, Any]:
        """Cancel queued work now; running work stops at its next checkpoint."""

        operation = self.store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError("unknown_operation", reason_code="unknown_operation")
        if operation["status"] in TERMINAL_STATUSES:
            raise InvalidTransitionError("invalid_transition:terminal_state")

        if operation["status"] in {STATUS_PENDING, STATUS_RETRYING}:
            if self.store.cancel_queued_operation(operation_id, actor=actor):
                self.store.append_audit_event(
                    "operation_cancelled",
                    {"operation_id": operation_id, "actor": actor, "reason_code": "cancelled_by_operator"},
                )
                updated = self.store.get_operation(operation_id) or operation
                logger.info("Cancelled queued operation %s", operation_id)
                if self.events is not None:
                    self.events.publish("operation_cancelled", updated)
                return updated

        if self.store.set_cancel_requested(operation_id):
            self.store.append_audit_event(
                "operation_cancel_requested", {"operation_id": operation_id, "actor": actor}
            )
            logger.info("Cancellation requested for running operation %s", operation_id)
            updated = self.store.get_operation(operation_id) or operation
            if self.events is not None:
                self.events.publish("operation_cancel_requested", updated)
            return updated

        # The row moved between the read above and the guarded writes.
        latest = self.store.get_operation(operation_id) or operation
        if latest["status"] in TERMINAL_STATUSES:
            raise InvalidTransitionError("invalid_transition:terminal_state")
        return self.cancel(operation_id, actor=actor)

    def recover(
        self,
        policy: str = "requeue",
        reconcile: Callable[[], dict[str, int]] | None = None,
    ) -> dict[str, Any]:
        """Re-evaluate rows left ``running`` by a previous process, then reconcile slots."""

        requeued = 0
        failed = 0
        kept: list[str] = []
        for operation in self.store.list_running_operations():
            if policy == "keep":
                kept.append(operation["id"])
                self.store.append_audit_event(
                    "operation_recovered",
                    {"operation_id": operation["id"], "policy": policy, "status": STATUS_RUNNING},
                )
                continue
            attempt = int(operation["attempt_count"])
            if self.retry_policy.can_retry(attempt, int(operation["max_attempts"])):
                hops = [(STATUS_RUNNING, STATUS_RETRYING, "recovered_after_restart")]
                updated = self.store.finish_running_operation(
                    operation["id"],
                    hops=hops,
                    last_error="interrupted by restart",
                    not_before=utc_now_iso(),
                    actor="recovery",
                )
                event_type = "operation_retry_scheduled"
                requeued += 1
            else:
                hops = [
                    (STATUS_RUNNING, STATUS_RETRYING, "recovered_after_restart"),
                    (STATUS_RETRYING, STATUS_FAILED, FAILURE_RETRIES_EXHAUSTED),
                ]
                updated = self.store.finish_running_operation(
                    operation["id"],
                    hops=hops,
                    last_error="retries exhausted: interrupted by restart",
                    failure_reason=FAILURE_RETRIES_EXHAUSTED,
                    actor="recovery",
                )
                event_type = "operation_dead_lettered"
                failed += 1
            self.store.append_audit_event(
                "operation_recovered",
                {"operation_id": operation["id"], "policy": policy, "status": hops[-1][1]},
            )
            if updated is not None and self.events is not None:
                self.events.publish(event_type, updated)
        if kept:
            # No local executor owns these rows; their slots stay held until a later requeue recovery.
            logger.warning(
                "Recovery policy 'keep' left %d operation(s) running without an executor: %s",
                len(kept),
                ", ".join(kept),
            )
        reconciled = (reconcile or self.store.reconcile_target_in_flight)()
        summary = {"requeued": requeued, "failed": failed, "kept": len(kept), "reconciled": reconciled}
        logger.info("Recovery finished: %s", summary)
        return summary
