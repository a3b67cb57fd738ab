"""Registry of external vault targets and their concurrent-session budgets."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from orca_ops.control_plane.db.db import OperationStore
from orca_ops.control_plane.models.operation_contracts import (
    TargetSpecV1,
    resolve_concurrent_sessions_flag,
)
from orca_ops.control_plane.orchestration.errors import TargetNotFoundError, ValidationError
from orca_ops.shared import identifiers

logger = logging.getLogger(__name__)


class TargetRegistry:
    def __init__(self, store: OperationStore) -> None:
        self.store = store

    def register_target(self, spec: dict[str, Any], created_by: str = "") -> dict[str, Any]:
        try:
            parsed = TargetSpecV1.model_validate(spec)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid_target_spec: {exc.errors()[0].get('msg', 'invalid')}",
                reason_code="invalid_target_spec",
            ) from exc
        if self.store.get_target_by_name(parsed.name) is not None:
            raise ValidationError("target_name_taken", reason_code="target_name_taken")
        target_id = identifiers.new_id(identifiers.TARGET)
        try:
            target = self.store.create_target(
                target_id=target_id,
                name=parsed.name,
                base_url=parsed.base_url,
                username=parsed.username,
                credential_env=parsed.credential_env,
                max_concurrent_sessions=parsed.resolved_max_sessions(),
                skip_tls_verify=parsed.skip_tls_verify,
                is_active=parsed.is_active,
                created_by=created_by,
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError("target_name_taken", reason_code="target_name_taken") from exc
        self.store.append_audit_event(
            "target_registered",
            {
                "target_id": target_id,
                "name": parsed.name,
                "max_concurrent_sessions": target["max_concurrent_sessions"],
                "actor": created_by,
            },
        )
        logger.info(
            "Registered target %s (%s) max_sessions=%s",
            target_id,
            parsed.name,
            target["max_concurrent_sessions"],
        )
        return target

    def update_target(
        self, target_id: str, changes: dict[str, Any], actor: str = ""
    ) -> dict[str, Any]:
        """Apply limit or flag changes; running work is never preempted."""

        current = self.get_target(target_id)
        fields: dict[str, Any] = {}
        for key in ("name", "username", "credential_env", "skip_tls_verify", "is_active"):
            if key in changes:
                fields[key] = changes[key]
        if "base_url" in changes:
            merged = {"name": current["name"], "base_url": changes["base_url"]}
            try:
                fields["base_url"] = TargetSpecV1.model_validate(merged).base_url
            except PydanticValidationError as exc:
                raise ValidationError(
                    "invalid_base_url", reason_code="invalid_target_spec"
                ) from exc
        if changes.get("unlimited"):
            fields["max_concurrent_sessions"] = None
        elif "max_concurrent_sessions" in changes:
            limit = changes["max_concurrent_sessions"]
            if limit is not None and int(limit) < 1:
                raise ValidationError(
                    "max_concurrent_sessions must be at least 1",
                    reason_code="invalid_target_spec",
                )
            fields["max_concurrent_sessions"] = int(limit) if limit is not None else None
        elif "concurrent_sessions" in changes and changes["concurrent_sessions"] is not None:
            fields["max_concurrent_sessions"] = resolve_concurrent_sessions_flag(
                bool(changes["concurrent_sessions"])
            )
        if "name" in fields:
            existing = self.store.get_target_by_name(str(fields["name"]))
            if existing is not None and existing["id"] != target_id:
                raise ValidationError("target_name_taken", reason_code="target_name_taken")
        updated = self.store.update_target(target_id, **fields) or current
        self.store.append_audit_event(
            "target_updated",
            {"target_id": target_id, "fields": sorted(fields), "actor": actor},
        )
        if (
            updated["max_concurrent_sessions"] is not None
            and updated["in_flight_count"] > updated["max_concurrent_sessions"]
        ):
            logger.warning(
                "Target %s is over its new limit (%s running, limit %s); new claims deferred",
                target_id,
                updated["in_flight_count"],
                updated["max_concurrent_sessions"],
            )
        return updated

    def deactivate_target(self, target_id: str, actor: str = "") -> dict[str, Any]:
        return self.update_target(target_id, {"is_active": False}, actor=actor)

    def get_target(self, target_id: str) -> dict[str, Any]:
        target = self.store.get_target(target_id)
        if target is None:
            raise TargetNotFoundError("unknown_target", reason_code="unknown_target")
        return target

    def get_target_by_name(self, name: str) -> dict[str, Any]:
        target = self.store.get_target_by_name(name)
        if target is None:
            raise TargetNotFoundError("unknown_target", reason_code="unknown_target")
        return target

    def list_targets(self) -> list[dict[str, Any]]:
        return self.store.list_targets()

    def available_slots(self, target_id: str) -> int | None:
        """Free slots right now, or None for an unlimited target."""

        target = self.get_target(target_id)
        if not target["is_active"]:
            return 0
        limit = target["max_concurrent_sessions"]
        if limit is None:
            return None
        return max(0, int(limit) - int(target["in_flight_count"]))

    def reconcile_in_flight(self, target_id: str | None = None) -> dict[str, int]:
        before = {t["id"]: t["in_flight_count"] for t in self.store.list_targets()}
        counts = self.store.reconcile_target_in_flight(target_id)
        for tid, count in counts.items():
            if before.get(tid) != count:
                logger.warning(
                    "Reconciled in-flight count for %s: %s -> %s", tid, before.get(tid), count
                )
        return counts
