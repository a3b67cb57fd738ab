"""Delete a safe; an already-missing safe counts as done."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from orca_ops.control_plane.models.operation_contracts import DELETE_RESOURCE
from orca_ops.control_plane.orchestration.errors import PermanentExecutionError
from orca_ops.execution_plane.vault.client import VaultClient


class DeleteResourcePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    safe_name: str = Field(min_length=3, max_length=28)


class DeleteResourceHandler:
    operation_type = DELETE_RESOURCE
    payload_model = DeleteResourcePayload

    def execute(
        self,
        client: VaultClient,
        target: dict[str, Any],
        payload: DeleteResourcePayload,
        timeout: float,
    ) -> dict[str, Any]:
        try:
            client.delete_safe(payload.safe_name, timeout=timeout)
        except PermanentExecutionError as exc:
            if exc.reason_code != "vault_404":
                raise
            return {"safe_name": payload.safe_name, "deleted": False, "already_absent": True}
        return {"safe_name": payload.safe_name, "deleted": True, "already_absent": False}
