"""Create a safe and seed its initial members."""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from orca_ops.control_plane.models.operation_contracts import PROVISION_RESOURCE
from orca_ops.control_plane.orchestration.errors import PermanentExecutionError
from orca_ops.execution_plane.vault.client import VaultClient

logger = logging.getLogger(__name__)


class SafeMemberSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    member_name: str = Field(min_length=1, max_length=128)
    member_type: Literal["User", "Group"] = "User"
    permissions: dict[str, bool] = Field(default_factory=dict)


class ProvisionResourcePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    safe_name: str = Field(min_length=3, max_length=28)
    description: str = Field(default="", max_length=100)
    managing_cpm: str = ""
    retention_days: int = Field(default=7, ge=1, le=3650)
    members: list[SafeMemberSpec] = Field(default_factory=list)


class ProvisionResourceHandler:
    operation_type = PROVISION_RESOURCE
    payload_model = ProvisionResourcePayload

    def execute(
        self,
        client: VaultClient,
        target: dict[str, Any],
        payload: ProvisionResourcePayload,
        timeout: float,
    ) -> dict[str, Any]:
        created = True
        try:
            client.add_safe(payload.model_dump(exclude={"members"}), timeout=timeout)
        except PermanentExecutionError as exc:
            if exc.reason_code != "vault_409":
                raise
            # A replayed attempt may find its own safe from the previous try.
            created = False
            logger.info("Safe %s already exists on %s", payload.safe_name, target["id"])

        added = 0
        existing = 0
        for member in payload.members:
            try:
                client.add_safe_member(payload.safe_name, member.model_dump(), timeout=timeout)
                added += 1
            except PermanentExecutionError as exc:
                if exc.reason_code != "vault_409":
                    raise
                existing += 1
        return {
            "safe_name": payload.safe_name,
            "created": created,
            "members_added": added,
            "members_existing": existing,
        }
