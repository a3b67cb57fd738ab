"""Run one attempt of a claimed operation and classify what happened."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from orca_ops.control_plane.db.db import OperationStore
from orca_ops.control_plane.orchestration.errors import (
    OperationCancelled,
    PermanentExecutionError,
    TransientExecutionError,
)
from orca_ops.control_plane.orchestration.outcome_recorder import AttemptOutcome, OutcomeRecorder
from orca_ops.execution_plane.vault.handlers import OperationHandler
from orca_ops.execution_plane.vault.sessions import VaultSessionPool
from orca_ops.shared.settings import EngineSettings

logger = logging.getLogger(__name__)


class OperationExecutor:
    """Performs a single attempt; retries are the recorder's decision, never ours."""

    def __init__(
        self,
        *,
        store: OperationStore,
        recorder: OutcomeRecorder,
        handlers: dict[str, OperationHandler],
        sessions: VaultSessionPool,
        settings: EngineSettings,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.handlers = handlers
        self.sessions = sessions
        self.settings = settings

    def execute(self, operation: dict[str, Any], worker_id: str = "executor") -> dict[str, Any] | None:
        started = time.monotonic()
        outcome: AttemptOutcome | None = None
        try:
            result = self._attempt(operation)
            outcome = AttemptOutcome.succeeded(result)
        except OperationCancelled:
            outcome = AttemptOutcome.cancelled()
        except PermanentExecutionError as exc:
            outcome = AttemptOutcome.permanent(exc.reason_code, str(exc))
        except TransientExecutionError as exc:
            outcome = AttemptOutcome.transient(exc.reason_code, str(exc), retry_after_s=exc.retry_after_s)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unclassified failure executing %s", operation["id"])
            outcome = AttemptOutcome.transient("unclassified_error", f"{type(exc).__name__}: {exc}")
        finally:
            latency_ms = round((time.monotonic() - started) * 1000, 3)
            if outcome is None:
                outcome = AttemptOutcome.transient("unclassified_error", "attempt interrupted")
            recorded = self.recorder.record(
                operation["id"], replace(outcome, latency_ms=latency_ms), actor=worker_id
            )
        return recorded

    def _attempt(self, operation: dict[str, Any]) -> dict[str, Any]:
        handler = self.handlers.get(operation["type"])
        if handler is None:
            raise PermanentExecutionError(
                f"no handler registered for {operation['type']}", reason_code="unknown_operation_type"
            )
        try:
            payload = handler.payload_model.model_validate(operation.get("payload") or {})
        except PydanticValidationError as exc:
            raise PermanentExecutionError(
                f"invalid payload: {exc.errors()[0].get('msg', 'invalid')}",
                reason_code="invalid_payload",
            ) from exc

        target_id = operation.get("target_id")
        if not target_id:
            raise PermanentExecutionError("operation has no target", reason_code="missing_target")
        target = self.store.get_target(target_id)
        if target is None:
            raise PermanentExecutionError("target no longer exists", reason_code="unknown_target")

        timeout = self.settings.timeout_for(operation["type"])
        self._checkpoint(operation["id"])
        client = self.sessions.acquire(target, timeout=timeout)
        try:
            self._checkpoint(operation["id"])
            logger.info(
                "Executing %s (%s) on %s attempt %s",
                operation["id"],
                operation["type"],
                target["name"],
                operation["attempt_count"],
            )
            return handler.execute(client, target, payload, timeout)
        except PermanentExecutionError as exc:
            if exc.reason_code in {"vault_401", "vault_403"}:
                self.sessions.invalidate(target_id, client)
            raise
        finally:
            self.sessions.release(target_id, client)

    def _checkpoint(self, operation_id: str) -> None:
        if self.store.is_cancel_requested(operation_id):
            raise OperationCancelled("cancel_requested", reason_code="cancelled_by_operator")
