from __future__ import annotations

from typing import Any

import pytest

from orca_ops.control_plane.api.app import EngineApp
from orca_ops.control_plane.orchestration.errors import (
    OperationNotFoundError,
    TargetNotFoundError,
    ValidationError,
)
from orca_ops.control_plane.orchestration.events import OperationEvents
from orca_ops.shared import identifiers


def test_submit_assigns_identifier_and_pending_status(engine: EngineApp, target: dict[str, Any]) -> None:
    op = engine.submit_operation(
        {
            "type": "Provision_Resource",
            "target_id": "vault-a",
            "priority": "high",
            "payload": {"safe_name": "SafeOne"},
            "correlation_id": "req-42",
        },
        created_by="alice",
    )

    assert identifiers.is_valid(op["id"], identifiers.OPERATION)
    assert op["type"] == "provision-resource"
    assert op["status"] == "pending"
    assert op["target_id"] == target["id"]
    assert op["max_attempts"] == 3
    assert op["created_by"] == "alice"
    assert op["correlation_id"] == "req-42"
    assert op["payload"]["retention_days"] == 7


@pytest.mark.parametrize(
    ("request_body", "reason"),
    [
        ({"type": "mine-bitcoin", "target_id": "vault-a"}, "unknown_operation_type"),
        ({"type": "provision-resource", "target_id": "vault-a", "priority": "urgent"}, "invalid_request"),
        ({"type": "provision-resource", "target_id": "vault-a", "payload": {"safe_name": "x"}}, "invalid_payload"),
        ({"type": "provision-resource", "payload": {"safe_name": "SafeOne"}}, "missing_target"),
        ({"type": "provision-resource", "target_id": "nowhere", "payload": {"safe_name": "SafeOne"}}, "unknown_target"),
        ({"type": "provision-resource", "target_id": "vault-a", "bogus": 1}, "invalid_request"),
    ],
)
def test_invalid_submissions_never_enter_the_store(
    engine: EngineApp, target: dict[str, Any], request_body: dict[str, Any], reason: str
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        engine.submit_operation(request_body)

    assert exc_info.value.reason_code == reason
    assert engine.list_operations() == []


def test_operator_token_attributes_submissions(engine: EngineApp, target: dict[str, Any]) -> None:
    issued = engine.issue_operator_token("ops-lead")

    assert identifiers.is_valid(issued["session_id"], identifiers.SESSION)
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeOne"}},
        token=issued["token"],
    )
    assert op["created_by"] == "ops-lead"

    with pytest.raises(ValidationError, match="invalid_session_token"):
        engine.resolve_operator("not-a-token")


def test_expired_operator_token_is_rejected(engine: EngineApp) -> None:
    issued = engine.issue_operator_token("ops-lead")
    engine.store.conn.execute(
        "UPDATE operator_sessions SET expires_at = '2000-01-01T00:00:00.000000+00:00'"
    )
    engine.store.conn.commit()

    with pytest.raises(ValidationError, match="expired_session_token"):
        engine.resolve_operator(issued["token"])


def test_register_target_validates_url_and_unique_name(engine: EngineApp, target: dict[str, Any]) -> None:
    assert identifiers.is_valid(target["id"], identifiers.TARGET)
    assert target["max_concurrent_sessions"] == 1
    assert target["concurrent_sessions"] is False

    with pytest.raises(ValidationError):
        engine.register_target({"name": "vault-b", "base_url": "ftp://b.test"})
    with pytest.raises(ValidationError, match="target_name_taken"):
        engine.register_target({"name": "vault-a", "base_url": "https://other.test"})


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ({}, None),
        ({"concurrent_sessions": True}, None),
        ({"concurrent_sessions": False}, 1),
        ({"max_concurrent_sessions": 4}, 4),
        ({"unlimited": True}, None),
    ],
)
def test_target_limit_resolution(engine: EngineApp, spec: dict[str, Any], expected: int | None) -> None:
    created = engine.register_target({"name": "vault-x", "base_url": "https://x.test/", **spec})

    assert created["max_concurrent_sessions"] == expected
    assert created["base_url"] == "https://x.test"


def test_update_target_changes_limit_without_preempting(engine: EngineApp, target: dict[str, Any]) -> None:
    updated = engine.update_target(target["id"], {"max_concurrent_sessions": 3})
    assert updated["max_concurrent_sessions"] == 3
    assert engine.targets.available_slots(target["id"]) == 3

    unlimited = engine.update_target("vault-a", {"unlimited": True})
    assert unlimited["max_concurrent_sessions"] is None
    assert engine.targets.available_slots(target["id"]) is None

    with pytest.raises(ValidationError):
        engine.update_target(target["id"], {"max_concurrent_sessions": 0})
    with pytest.raises(TargetNotFoundError):
        engine.update_target("tgt_missing", {"is_active": False})


def test_list_operations_filters(engine: EngineApp, target: dict[str, Any]) -> None:
    engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "priority": "high", "payload": {"safe_name": "SafeA"}}
    )
    engine.submit_operation(
        {"type": "sync-subject", "target_id": target["id"], "priority": "low", "payload": {"username": "alice"}}
    )

    assert len(engine.list_operations()) == 2
    assert [op["type"] for op in engine.list_operations(priority="high")] == ["delete-resource"]
    assert [op["priority"] for op in engine.list_operations(operation_type="sync-subject")] == ["low"]
    assert len(engine.list_operations(target="vault-a", status="pending")) == 2
    with pytest.raises(ValidationError):
        engine.list_operations(status="exploded")


def test_history_and_metrics(engine: EngineApp, target: dict[str, Any]) -> None:
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )
    engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "priority": "low", "payload": {"safe_name": "SafeB"}}
    )
    engine.dispatch_operation(op["id"])

    history = engine.operation_history(op["id"])
    metrics = engine.pipeline_metrics()

    assert [t["to_status"] for t in history["transitions"]] == ["pending", "running", "succeeded"]
    assert {e["event_type"] for e in history["audit_events"]} >= {
        "operation_submitted",
        "operation_claimed",
        "operation_succeeded",
    }
    assert metrics["queue_depth"] == {"low": 1}
    assert metrics["outcomes_by_type"] == {"delete-resource": {"succeeded": 1}}
    assert metrics["targets"][0]["available_slots"] == 1
    with pytest.raises(OperationNotFoundError):
        engine.operation_history("op_missing")


def test_wait_for_operation_times_out(engine: EngineApp, target: dict[str, Any]) -> None:
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )

    with pytest.raises(TimeoutError):
        engine.wait_for_operation(op["id"], timeout_seconds=0.05, poll_interval=0.01)


def test_test_target_uses_client_connection_check(engine: EngineApp, target: dict[str, Any]) -> None:
    result = engine.test_target("vault-a")

    assert result["success"] is True
    assert result["target_id"] == target["id"]


def test_events_published_for_lifecycle(engine: EngineApp, target: dict[str, Any]) -> None:
    subscription = engine.events.subscribe()
    op = engine.submit_operation(
        {"type": "delete-resource", "target_id": target["id"], "payload": {"safe_name": "SafeA"}}
    )
    engine.dispatch_once()

    events = subscription.drain()

    assert [e.type for e in events] == ["operation_submitted", "operation_succeeded"]
    assert events[-1].operation["id"] == op["id"]
    engine.events.unsubscribe(subscription)
    assert engine.events.subscriber_count() == 0


def test_full_subscriber_buffer_drops_events() -> None:
    events = OperationEvents(buffer_size=2)
    subscription = events.subscribe()

    for index in range(5):
        events.publish("operation_submitted", {"id": f"op_{index}"})

    assert [e.operation["id"] for e in subscription.drain()] == ["op_0", "op_1"]
