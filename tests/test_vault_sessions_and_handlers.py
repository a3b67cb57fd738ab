from __future__ import annotations

import threading
from typing import Any

import pytest

from orca_ops.control_plane.orchestration.errors import PermanentExecutionError
from orca_ops.execution_plane.vault.client_inmemory import InMemoryVaultClient
from orca_ops.execution_plane.vault.handlers import registered_operation_handlers
from orca_ops.execution_plane.vault.handlers.delete_resource import DeleteResourcePayload
from orca_ops.execution_plane.vault.handlers.grant_access import GrantAccessPayload
from orca_ops.execution_plane.vault.handlers.provision_resource import ProvisionResourcePayload
from orca_ops.execution_plane.vault.handlers.sync_subject import SyncSubjectPayload
from orca_ops.execution_plane.vault.sessions import VaultSessionPool

TARGET = {"id": "tgt_a", "name": "vault-a", "base_url": "https://a.test"}


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _pool(clock: _Clock) -> tuple[VaultSessionPool, list[InMemoryVaultClient]]:
    created: list[InMemoryVaultClient] = []

    def _factory(target: dict[str, Any]) -> InMemoryVaultClient:
        client = InMemoryVaultClient(base_url=target["base_url"])
        created.append(client)
        return client

    return VaultSessionPool(_factory, idle_seconds=900, expiry_seconds=1200, clock=clock), created


def test_session_reused_while_idle_below_threshold() -> None:
    clock = _Clock()
    pool, created = _pool(clock)

    first = pool.acquire(TARGET)
    pool.release(TARGET["id"], first)
    clock.now += 600
    second = pool.acquire(TARGET)

    assert first is second
    assert len(created) == 1
    assert created[0].logon_count == 1


def test_idle_session_is_replaced_and_logged_off() -> None:
    clock = _Clock()
    pool, created = _pool(clock)

    first = pool.acquire(TARGET)
    pool.release(TARGET["id"], first)
    clock.now += 901
    pool.acquire(TARGET)

    assert len(created) == 2
    assert created[0].logoff_count == 1
    assert created[1].is_authenticated()


def test_cleanup_expired_and_close_all_log_off() -> None:
    clock = _Clock()
    pool, created = _pool(clock)
    first = pool.acquire(TARGET)
    second = pool.acquire({**TARGET, "id": "tgt_b"})
    pool.release(TARGET["id"], first)

    clock.now += 1201

    assert pool.cleanup_expired() == 1
    assert pool.active_targets() == ["tgt_b"]
    pool.release("tgt_b", second)
    pool.close_all()
    assert pool.active_targets() == []
    assert all(client.logoff_count == 1 for client in created)


def test_invalidated_session_stays_logged_on_until_last_user_releases() -> None:
    clock = _Clock()
    pool, created = _pool(clock)
    first = pool.acquire(TARGET)
    second = pool.acquire(TARGET)
    assert first is second
    assert pool.users(TARGET["id"]) == 2

    pool.invalidate(TARGET["id"], first)
    assert pool.active_targets() == []
    pool.release(TARGET["id"], first)
    assert created[0].logoff_count == 0
    assert created[0].is_authenticated()

    pool.release(TARGET["id"], second)
    assert created[0].logoff_count == 1


def test_slow_logon_does_not_block_other_targets() -> None:
    logon_started = threading.Event()
    finish_logon = threading.Event()

    def _hook(method: str) -> None:
        if method == "logon":
            logon_started.set()
            finish_logon.wait(timeout=5)

    def _factory(target: dict[str, Any]) -> InMemoryVaultClient:
        if target["id"] == "tgt_slow":
            return InMemoryVaultClient(base_url=target["base_url"], call_hook=_hook)
        return InMemoryVaultClient(base_url=target["base_url"])

    pool = VaultSessionPool(_factory)
    slow = threading.Thread(target=pool.acquire, args=({**TARGET, "id": "tgt_slow"},))
    slow.start()
    assert logon_started.wait(timeout=5)

    fast = threading.Thread(target=pool.acquire, args=({**TARGET, "id": "tgt_fast"},))
    fast.start()
    fast.join(timeout=2)
    fast_finished_first = not fast.is_alive()
    finish_logon.set()
    slow.join(timeout=5)
    fast.join(timeout=5)

    assert fast_finished_first
    assert pool.active_targets() == ["tgt_fast", "tgt_slow"]


def test_registry_covers_every_operation_type() -> None:
    handlers = registered_operation_handlers()

    assert list(handlers) == ["delete-resource", "grant-access", "provision-resource", "sync-subject"]


@pytest.mark.parametrize("safe_name", ["ab", "x" * 29])
def test_provision_payload_enforces_safe_name_length(safe_name: str) -> None:
    with pytest.raises(ValueError):
        ProvisionResourcePayload.model_validate({"safe_name": safe_name})


def test_provision_is_idempotent_on_conflict() -> None:
    vault = InMemoryVaultClient()
    vault.logon()
    handler = registered_operation_handlers()["provision-resource"]
    payload = ProvisionResourcePayload.model_validate(
        {"safe_name": "SafeOne", "members": [{"member_name": "alice", "permissions": {"listAccounts": True}}]}
    )

    first = handler.execute(vault, TARGET, payload, 5.0)
    replay = handler.execute(vault, TARGET, payload, 5.0)

    assert first == {"safe_name": "SafeOne", "created": True, "members_added": 1, "members_existing": 0}
    assert replay == {"safe_name": "SafeOne", "created": False, "members_added": 0, "members_existing": 1}


def test_grant_access_reports_granted_permissions() -> None:
    vault = InMemoryVaultClient()
    vault.logon()
    vault.add_safe({"safe_name": "SafeOne"})
    handler = registered_operation_handlers()["grant-access"]
    payload = GrantAccessPayload.model_validate(
        {
            "safe_name": "SafeOne",
            "member_name": "auditors",
            "member_type": "Group",
            "permissions": {"listAccounts": True, "useAccounts": False, "viewAuditLog": True},
        }
    )

    result = handler.execute(vault, TARGET, payload, 5.0)

    assert result["granted"] is True
    assert result["permissions"] == ["listAccounts", "viewAuditLog"]
    assert vault.safes["SafeOne"]["members"]["auditors"]["memberType"] == "Group"


def test_sync_subject_missing_user_is_permanent() -> None:
    vault = InMemoryVaultClient()
    vault.logon()
    handler = registered_operation_handlers()["sync-subject"]

    with pytest.raises(PermanentExecutionError) as exc_info:
        handler.execute(vault, TARGET, SyncSubjectPayload(username="ghost"), 5.0)

    assert exc_info.value.reason_code == "subject_not_found"


def test_delete_missing_safe_counts_as_done() -> None:
    vault = InMemoryVaultClient()
    vault.logon()
    handler = registered_operation_handlers()["delete-resource"]

    result = handler.execute(vault, TARGET, DeleteResourcePayload(safe_name="SafeGone"), 5.0)

    assert result == {"safe_name": "SafeGone", "deleted": False, "already_absent": True}
