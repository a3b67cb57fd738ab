"""Look up a vault user and report the attributes the engine tracks."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from orca_ops.control_plane.models.operation_contracts import SYNC_SUBJECT
from orca_ops.control_plane.orchestration.errors import PermanentExecutionError
from orca_ops.execution_plane.vault.client import VaultClient


class SyncSubjectPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1, max_length=128)
    include_groups: bool = True


class SyncSubjectHandler:
    operation_type = SYNC_SUBJECT
    payload_model = SyncSubjectPayload

    def execute(
        self,
        client: VaultClient,
        target: dict[str, Any],
        payload: SyncSubjectPayload,
        timeout: float,
    ) -> dict[str, Any]:
        user = client.find_user(payload.username, timeout=timeout)
        if user is None:
            raise PermanentExecutionError(
                f"user {payload.username} not found on target {target['name']}",
                reason_code="subject_not_found",
            )
        result: dict[str, Any] = {
            "username": str(user.get("username", payload.username)),
            "vault_user_id": user.get("id"),
            "source": str(user.get("source", "")),
            "user_type": str(user.get("userType", "")),
            "enabled": bool(user.get("enableUser", True)),
            "suspended": bool(user.get("suspended", False)),
        }
        if payload.include_groups:
            result["groups"] = sorted(
                str(group.get("groupName", ""))
                for group in user.get("groupsMembership") or []
                if isinstance(group, dict)
            )
        return result
