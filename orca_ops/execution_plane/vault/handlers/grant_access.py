"""Add a member with permissions to an existing safe."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from orca_ops.control_plane.models.operation_contracts import GRANT_ACCESS
from orca_ops.control_plane.orchestration.errors import PermanentExecutionError
from orca_ops.execution_plane.vault.client import VaultClient


class GrantAccessPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    safe_name: str = Field(min_length=3, max_length=28)
    member_name: str = Field(min_length=1, max_length=128)
    member_type: Literal["User", "Group"] = "User"
    permissions: dict[str, bool] = Field(min_length=1)


class GrantAccessHandler:
    operation_type = GRANT_ACCESS
    payload_model = GrantAccessPayload

    def execute(
        self,
        client: VaultClient,
        target: dict[str, Any],
        payload: GrantAccessPayload,
        timeout: float,
    ) -> dict[str, Any]:
        granted = True
        try:
            client.add_safe_member(
                payload.safe_name,
                {
                    "member_name": payload.member_name,
                    "member_type": payload.member_type,
                    "permissions": payload.permissions,
                },
                timeout=timeout,
            )
        except PermanentExecutionError as exc:
            if exc.reason_code != "vault_409":
                raise
            granted = False
        return {
            "safe_name": payload.safe_name,
            "member_name": payload.member_name,
            "granted": granted,
            "permissions": sorted(name for name, allowed in payload.permissions.items() if allowed),
        }
