"""Submission and query surface wiring the engine components together."""

from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Callable
from datetime import timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from orca_ops.control_plane.db.db import OperationStore, shift_iso, utc_now_iso
from orca_ops.control_plane.models.operation_contracts import (
    ALL_STATUSES,
    TERMINAL_STATUSES,
    OperationRecordV1,
    SubmitOperationRequestV1,
)
from orca_ops.control_plane.orchestration.dispatcher import Dispatcher
from orca_ops.control_plane.orchestration.errors import (
    EngineError,
    OperationNotFoundError,
    ValidationError,
)
from orca_ops.control_plane.orchestration.events import OperationEvents
from orca_ops.control_plane.orchestration.executor import OperationExecutor
from orca_ops.control_plane.orchestration.outcome_recorder import OutcomeRecorder
from orca_ops.control_plane.orchestration.state_machine import RetryPolicy
from orca_ops.control_plane.orchestration.targets import TargetRegistry
from orca_ops.execution_plane.vault.client import VaultClient, build_vault_client
from orca_ops.execution_plane.vault.handlers import registered_operation_handlers
from orca_ops.execution_plane.vault.sessions import VaultSessionPool
from orca_ops.shared import identifiers
from orca_ops.shared.session_tokens import generate_session_token, hash_session_token
from orca_ops.shared.settings import EngineSettings, get_engine_settings

logger = logging.getLogger(__name__)


class EngineApp:
    """Thin callable facade over the store, scheduler and executors."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        db_path: str | Path | None = None,
        client_factory: Callable[[dict[str, Any]], VaultClient] | None = None,
        pool_size: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or get_engine_settings()
        self.store = OperationStore(db_path if db_path is not None else self.settings.sqlite_path)
        self.events = OperationEvents()
        self.targets = TargetRegistry(self.store)
        self.handlers = registered_operation_handlers()
        self.client_factory = client_factory or (
            lambda target: build_vault_client(target, mode=self.settings.vault_client)
        )
        self.sessions = VaultSessionPool(
            self.client_factory,
            idle_seconds=self.settings.session_idle_seconds,
            expiry_seconds=self.settings.session_expiry_seconds,
        )
        self.retry_policy = RetryPolicy.from_settings(self.settings, rng=rng)
        self.recorder = OutcomeRecorder(self.store, self.retry_policy, self.events)
        self.executor = OperationExecutor(
            store=self.store,
            recorder=self.recorder,
            handlers=self.handlers,
            sessions=self.sessions,
            settings=self.settings,
        )
        self.dispatcher = Dispatcher(
            store=self.store,
            executor=self.executor,
            worker_id=f"dispatcher:{os.getpid()}",
            pool_size=self.settings.worker_pool_size if pool_size is None else pool_size,
            poll_interval_seconds=self.settings.poll_interval_seconds,
        )
        self.recorder.on_slot_released = self.dispatcher.notify

    # -- operator identity -------------------------------------------------

    def issue_operator_token(self, operator: str) -> dict[str, Any]:
        name = operator.strip()
        if not name:
            raise ValidationError("missing_operator", reason_code="missing_operator")
        token = generate_session_token()
        session_id = identifiers.new_id(identifiers.SESSION)
        expires_at = shift_iso(self.settings.operator_token_ttl_seconds)
        self.store.create_operator_session(
            session_id=session_id,
            token_hash=hash_session_token(token),
            operator=name,
            expires_at=expires_at,
        )
        self.store.append_audit_event(
            "operator_session_issued", {"session_id": session_id, "operator": name}
        )
        return {"token": token, "session_id": session_id, "operator": name, "expires_at": expires_at}

    def resolve_operator(self, token: str) -> str:
        session = self.store.get_operator_session(hash_session_token(token.strip()))
        if session is None:
            raise ValidationError("invalid_session_token", reason_code="invalid_session_token")
        if session["expires_at"] <= utc_now_iso():
            raise ValidationError("expired_session_token", reason_code="expired_session_token")
        return session["operator"]

    def _actor(self, token: str | None, actor: str) -> str:
        if token:
            return self.resolve_operator(token)
        return actor.strip()

    # -- targets -----------------------------------------------------------

    def register_target(
        self, spec: dict[str, Any], *, token: str | None = None, actor: str = ""
    ) -> dict[str, Any]:
        return self.targets.register_target(spec, created_by=self._actor(token, actor))

    def update_target(
        self,
        target_id: str,
        changes: dict[str, Any],
        *,
        token: str | None = None,
        actor: str = "",
    ) -> dict[str, Any]:
        updated = self.targets.update_target(
            self._resolve_target(target_id)["id"], changes, actor=self._actor(token, actor)
        )
        self.dispatcher.notify()
        return updated

    def get_target(self, target_ref: str) -> dict[str, Any]:
        return self._resolve_target(target_ref)

    def list_targets(self) -> list[dict[str, Any]]:
        return self.targets.list_targets()

    def test_target(self, target_ref: str) -> dict[str, Any]:
        target = self._resolve_target(target_ref)
        try:
            client = self.client_factory(target)
        except EngineError as exc:
            result = {"success": False, "message": str(exc), "reason_code": exc.reason_code}
        else:
            result = client.test_connection(timeout=self.settings.default_timeout_seconds)
        self.store.append_audit_event(
            "target_connection_tested",
            {"target_id": target["id"], "success": bool(result.get("success"))},
        )
        return {"target_id": target["id"], **result}

    def _resolve_target(self, target_ref: str) -> dict[str, Any]:
        target = self.store.get_target(target_ref)
        if target is None:
            return self.targets.get_target_by_name(target_ref)
        return target

    # -- operations --------------------------------------------------------

    def submit_operation(
        self,
        request: dict[str, Any],
        *,
        token: str | None = None,
        created_by: str = "",
    ) -> dict[str, Any]:
        """Validate and enqueue; rejected requests never reach the store."""

        try:
            parsed = SubmitOperationRequestV1.model_validate(request)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid_request: {_first_error(exc)}", reason_code="invalid_request"
            ) from exc
        handler = self.handlers.get(parsed.type)
        if handler is None:
            raise ValidationError(
                f"unknown_operation_type:{parsed.type}", reason_code="unknown_operation_type"
            )
        try:
            payload = handler.payload_model.model_validate(parsed.payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid_payload: {_first_error(exc)}", reason_code="invalid_payload"
            ) from exc
        if not parsed.target_id:
            raise ValidationError("missing_target", reason_code="missing_target")
        target = self.store.get_target(parsed.target_id) or self.store.get_target_by_name(
            parsed.target_id
        )
        if target is None:
            raise ValidationError("unknown_target", reason_code="unknown_target")

        actor = self._actor(token, created_by)
        not_before = None
        if parsed.scheduled_at is not None:
            scheduled = parsed.scheduled_at
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            not_before = scheduled.astimezone(timezone.utc).isoformat(timespec="microseconds")

        operation = self.store.create_operation(
            operation_id=identifiers.new_id(identifiers.OPERATION),
            operation_type=parsed.type,
            priority=parsed.priority,
            target_id=target["id"],
            payload=payload.model_dump(mode="json"),
            max_attempts=parsed.max_attempts or self.settings.max_attempts,
            created_by=actor,
            correlation_id=parsed.correlation_id or "",
            not_before=not_before,
        )
        self.store.append_audit_event(
            "operation_submitted",
            {
                "operation_id": operation["id"],
                "operation_type": operation["type"],
                "priority": operation["priority"],
                "target_id": operation["target_id"],
                "actor": actor,
            },
        )
        logger.info(
            "Submitted %s (%s, priority=%s) for target %s",
            operation["id"],
            operation["type"],
            operation["priority"],
            target["name"],
        )
        self.events.publish("operation_submitted", operation)
        self.dispatcher.notify()
        return _record(operation)

    def get_operation(self, operation_id: str) -> dict[str, Any]:
        operation = self.store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError("unknown_operation", reason_code="unknown_operation")
        return _record(operation)

    def list_operations(
        self,
        *,
        status: str | None = None,
        operation_type: str | None = None,
        priority: str | None = None,
        target: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        if status and status not in ALL_STATUSES:
            raise ValidationError(f"unknown_status:{status}", reason_code="unknown_status")
        target_id = self._resolve_target(target)["id"] if target else None
        rows = self.store.list_operations(
            status=status,
            operation_type=operation_type,
            priority=priority,
            target_id=target_id,
            limit=limit,
        )
        return [_record(row) for row in rows]

    def cancel_operation(
        self, operation_id: str, *, token: str | None = None, actor: str = ""
    ) -> dict[str, Any]:
        return _record(self.recorder.cancel(operation_id, actor=self._actor(token, actor)))

    def wait_for_operation(
        self, operation_id: str, timeout_seconds: float = 30.0, poll_interval: float = 0.5
    ) -> dict[str, Any]:
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        while True:
            operation = self.get_operation(operation_id)
            if operation["status"] in TERMINAL_STATUSES:
                return operation
            if time.monotonic() >= deadline:
                raise TimeoutError(f"operation_wait_timeout:{operation_id}")
            time.sleep(poll_interval)

    def operation_history(self, operation_id: str) -> dict[str, Any]:
        operation = self.get_operation(operation_id)
        return {
            "operation": operation,
            "transitions": self.store.list_transitions(operation_id),
            "audit_events": self.store.list_audit_events(operation_id=operation_id),
        }

    def pipeline_metrics(self) -> dict[str, Any]:
        stats = self.store.queue_statistics()
        targets = [
            {
                "target_id": target["id"],
                "name": target["name"],
                "in_flight": target["in_flight_count"],
                "max_concurrent_sessions": target["max_concurrent_sessions"],
                "available_slots": self.targets.available_slots(target["id"]),
                "is_active": target["is_active"],
            }
            for target in self.targets.list_targets()
        ]
        return {
            **stats,
            "targets": targets,
            "latency": self.store.list_operation_metrics(),
            "active_sessions": self.sessions.active_targets(),
            "active_workers": self.dispatcher.active_workers(),
        }

    # -- lifecycle ---------------------------------------------------------

    def recover(self) -> dict[str, Any]:
        return self.recorder.recover(
            self.settings.recovery_policy, reconcile=self.targets.reconcile_in_flight
        )

    def dispatch_once(self) -> dict[str, int]:
        result = self.dispatcher.run_once()
        self.dispatcher.drain()
        self.sessions.cleanup_expired()
        return result

    def dispatch_operation(self, operation_id: str) -> dict[str, Any]:
        return _record(self.dispatcher.dispatch_operation(operation_id))

    def start(self) -> None:
        self.dispatcher.start()

    def stop(self) -> None:
        self.dispatcher.stop()
        self.sessions.close_all()

    def close(self) -> None:
        self.stop()
        self.store.close()


def _record(operation: dict[str, Any]) -> dict[str, Any]:
    record = OperationRecordV1.model_validate(operation).model_dump()
    record["payload"] = operation.get("payload") or {}
    return record


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid"))
    return f"{location}: {message}" if location else message
