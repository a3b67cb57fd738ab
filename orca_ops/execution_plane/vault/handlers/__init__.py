"""Operation handler registration: one capability per operation type."""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel

from orca_ops.execution_plane.vault.client import VaultClient
from orca_ops.execution_plane.vault.handlers.delete_resource import DeleteResourceHandler
from orca_ops.execution_plane.vault.handlers.grant_access import GrantAccessHandler
from orca_ops.execution_plane.vault.handlers.provision_resource import ProvisionResourceHandler
from orca_ops.execution_plane.vault.handlers.sync_subject import SyncSubjectHandler


class OperationHandler(Protocol):
    operation_type: str
    payload_model: type[BaseModel]

    def execute(
        self,
        client: VaultClient,
        target: dict[str, Any],
        payload: BaseModel,
        timeout: float,
    ) -> dict[str, Any]: ...


def registered_operation_handlers() -> dict[str, OperationHandler]:
    handlers: list[OperationHandler] = [
        ProvisionResourceHandler(),
        GrantAccessHandler(),
        SyncSubjectHandler(),
        DeleteResourceHandler(),
    ]
    return dict(sorted(((h.operation_type, h) for h in handlers), key=lambda kv: kv[0]))
