"""In-memory vault client for deterministic tests and local runs."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from orca_ops.control_plane.orchestration.errors import EngineError, PermanentExecutionError
from orca_ops.execution_plane.vault.client import DEFAULT_TIMEOUT_S, error_for_status


class InMemoryVaultClient:
    """Keeps safes and users in dictionaries and can script failures per call."""

    def __init__(
        self,
        base_url: str = "https://vault.local",
        users: list[dict[str, Any]] | None = None,
        call_hook: Callable[[str], None] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = ""
        self.safes: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, Any]] = {
            str(user["username"]).lower(): dict(user) for user in (users or [])
        }
        self.calls: list[str] = []
        self.logon_count = 0
        self.logoff_count = 0
        self.call_hook = call_hook
        self._scripted_failures: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    def inject_failures(self, method: str, count: int = 1, status_code: int = 503) -> None:
        """Fail the next ``count`` calls of ``method`` with ``status_code``."""

        with self._lock:
            self._scripted_failures.setdefault(method, []).extend([status_code] * count)

    def _enter(self, method: str) -> None:
        with self._lock:
            self.calls.append(method)
            pending = self._scripted_failures.get(method)
            status = pending.pop(0) if pending else None
        if self.call_hook is not None:
            self.call_hook(method)
        if status is not None:
            raise error_for_status(status)

    def _require_token(self) -> None:
        if not self.token:
            raise PermanentExecutionError("client not authenticated", reason_code="vault_not_authenticated")

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def logon(self, timeout: float = DEFAULT_TIMEOUT_S) -> str:
        self._enter("logon")
        with self._lock:
            self.logon_count += 1
            self.token = f"token-{self.logon_count}"
        return self.token

    def logoff(self, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        if not self.token:
            return
        self._enter("logoff")
        with self._lock:
            self.logoff_count += 1
            self.token = ""

    def test_connection(self, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]:
        try:
            self.logon(timeout=timeout)
        except EngineError as exc:
            return {"success": False, "message": str(exc), "reason_code": exc.reason_code}
        self.logoff(timeout=timeout)
        return {"success": True, "message": f"Successfully connected to {self.base_url}", "response_time_ms": 0}

    def add_safe(self, safe: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]:
        self._enter("add_safe")
        self._require_token()
        name = str(safe["safe_name"])
        with self._lock:
            if name in self.safes:
                raise error_for_status(409)
            self.safes[name] = {
                "safeName": name,
                "description": safe.get("description", ""),
                "managingCPM": safe.get("managing_cpm", ""),
                "numberOfDaysRetention": safe.get("retention_days", 7),
                "members": {},
            }
            return {k: v for k, v in self.safes[name].items() if k != "members"}

    def add_safe_member(
        self, safe_name: str, member: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S
    ) -> dict[str, Any]:
        self._enter("add_safe_member")
        self._require_token()
        with self._lock:
            safe = self.safes.get(safe_name)
            if safe is None:
                raise error_for_status(404)
            member_name = str(member["member_name"])
            if member_name in safe["members"]:
                raise error_for_status(409)
            safe["members"][member_name] = {
                "memberType": member.get("member_type", "User"),
                "permissions": dict(member.get("permissions") or {}),
            }
            return {"safeName": safe_name, "memberName": member_name, **safe["members"][member_name]}

    def delete_safe(self, safe_name: str, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self._enter("delete_safe")
        self._require_token()
        with self._lock:
            if safe_name not in self.safes:
                raise error_for_status(404)
            del self.safes[safe_name]

    def find_user(self, username: str, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any] | None:
        self._enter("find_user")
        self._require_token()
        with self._lock:
            user = self.users.get(username.strip().lower())
            return dict(user) if user is not None else None

    def list_users(
        self,
        search: str = "",
        page_size: int = 100,
        page_offset: int = 0,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> list[dict[str, Any]]:
        self._enter("list_users")
        self._require_token()
        with self._lock:
            rows = [
                dict(user)
                for key, user in sorted(self.users.items())
                if not search or search.lower() in key
            ]
        return rows[page_offset : page_offset + page_size]
