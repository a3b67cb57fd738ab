from __future__ import annotations

from typing import Any

import pytest

from orca_ops.control_plane.api.app import EngineApp
from orca_ops.control_plane.orchestration.errors import TargetNotFoundError


def test_deactivated_target_keeps_operations_pending(engine: EngineApp, target: dict[str, Any]) -> None:
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )

    deactivated = engine.targets.deactivate_target(target["id"], actor="ops-lead")

    assert deactivated["is_active"] is False
    assert engine.targets.available_slots(target["id"]) == 0
    assert engine.dispatch_once()["claimed"] == 0
    assert engine.get_operation(op["id"])["status"] == "pending"

    engine.update_target(target["id"], {"is_active": True})
    engine.dispatch_once()
    assert engine.get_operation(op["id"])["status"] == "succeeded"


def test_reconcile_in_flight_recomputes_from_running_rows(engine: EngineApp, target: dict[str, Any]) -> None:
    engine.update_target(target["id"], {"max_concurrent_sessions": 5})
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )
    engine.store.claim_operation(op["id"], "other-worker")
    engine.store.conn.execute("UPDATE targets SET in_flight_count = 4 WHERE id = ?", (target["id"],))
    engine.store.conn.commit()

    assert engine.targets.reconcile_in_flight() == {target["id"]: 1}
    assert engine.targets.available_slots(target["id"]) == 4


def test_lowering_limit_below_in_flight_defers_new_claims(engine: EngineApp, target: dict[str, Any]) -> None:
    engine.update_target(target["id"], {"max_concurrent_sessions": 2})
    first = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )
    second = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeB"}}
    )
    third = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeC"}}
    )
    assert engine.store.claim_operation(first["id"], "w").claimed
    assert engine.store.claim_operation(second["id"], "w").claimed

    engine.update_target(target["id"], {"max_concurrent_sessions": 1})

    assert engine.get_operation(first["id"])["status"] == "running"
    assert engine.get_operation(second["id"])["status"] == "running"
    assert engine.targets.available_slots(target["id"]) == 0
    assert engine.store.claim_operation(third["id"], "w").reason_code == "capacity_unavailable"


def test_lookup_by_name_and_unknown_target(engine: EngineApp, target: dict[str, Any]) -> None:
    assert engine.targets.get_target_by_name("vault-a")["id"] == target["id"]
    assert engine.get_target("vault-a")["id"] == target["id"]

    with pytest.raises(TargetNotFoundError):
        engine.targets.get_target_by_name("vault-z")
    with pytest.raises(TargetNotFoundError):
        engine.get_target("tgt_missing")
