"""Vault REST client contract, status classification and requests implementation."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Protocol
from urllib.parse import quote

import requests

from orca_ops.control_plane.orchestration.errors import (
    EngineError,
    PermanentExecutionError,
    TransientExecutionError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
DEFAULT_TIMEOUT_S = 60.0

_STATUS_MESSAGES = {
    401: "authentication failed: invalid username or password",
    403: "authentication failed: user is not authorized",
    404: "resource or API endpoint not found",
    409: "resource already exists",
}


class VaultClient(Protocol):
    """Contract shared by every vault client implementation."""

    base_url: str

    def logon(self, timeout: float = DEFAULT_TIMEOUT_S) -> str: ...

    def logoff(self, timeout: float = DEFAULT_TIMEOUT_S) -> None: ...

    def is_authenticated(self) -> bool: ...

    def test_connection(self, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]: ...

    def add_safe(self, safe: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]: ...

    def add_safe_member(
        self, safe_name: str, member: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S
    ) -> dict[str, Any]: ...

    def delete_safe(self, safe_name: str, timeout: float = DEFAULT_TIMEOUT_S) -> None: ...

    def find_user(self, username: str, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any] | None: ...

    def list_users(
        self,
        search: str = "",
        page_size: int = 100,
        page_offset: int = 0,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> list[dict[str, Any]]: ...


def error_for_status(
    status_code: int, message: str = "", retry_after_s: float | None = None
) -> EngineError:
    """Map a vault HTTP status to the transient/permanent taxonomy."""

    reason_code = f"vault_{status_code}"
    detail = message or _STATUS_MESSAGES.get(status_code, f"vault request failed with status {status_code}")
    if status_code in RETRYABLE_STATUSES:
        return TransientExecutionError(detail, reason_code=reason_code, retry_after_s=retry_after_s)
    return PermanentExecutionError(detail, reason_code=reason_code)


class VaultAPIClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        skip_tls_verify: bool = False,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._password = password
        self.verify = not skip_tls_verify
        self.session = session or requests.Session()
        self.token = ""

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def logon(self, timeout: float = DEFAULT_TIMEOUT_S) -> str:
        response = self._send(
            "POST",
            "/API/auth/Cyberark/Logon",
            json={"username": self.username, "password": self._password},
            timeout=timeout,
            authenticated=False,
        )
        token = _parse_logon_token(response)
        if not token:
            raise PermanentExecutionError("no token found in auth response", reason_code="vault_bad_logon_response")
        self.token = token
        return token

    def logoff(self, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        if not self.token:
            return
        try:
            self._send("POST", "/API/auth/Logoff", timeout=timeout)
        finally:
            self.token = ""

    def test_connection(self, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]:
        started = time.monotonic()
        try:
            self.logon(timeout=timeout)
        except EngineError as exc:
            return {"success": False, "message": str(exc), "reason_code": exc.reason_code}
        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            self.logoff(timeout=timeout)
        except EngineError as exc:
            logger.warning("Logoff after connection test to %s failed: %s", self.base_url, exc)
        return {
            "success": True,
            "message": f"Successfully connected to {self.base_url} (Response time: {elapsed_ms}ms)",
            "response_time_ms": elapsed_ms,
        }

    def add_safe(self, safe: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any]:
        body = {
            "safeName": safe["safe_name"],
            "description": safe.get("description", ""),
            "managingCPM": safe.get("managing_cpm", ""),
            "numberOfDaysRetention": safe.get("retention_days", 7),
        }
        payload = self._request("POST", "/API/Safes", json=body, timeout=timeout)
        return payload if isinstance(payload, dict) else {"safeName": safe["safe_name"]}

    def add_safe_member(
        self, safe_name: str, member: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S
    ) -> dict[str, Any]:
        body = {
            "memberName": member["member_name"],
            "memberType": member.get("member_type", "User"),
            "permissions": dict(member.get("permissions") or {}),
        }
        payload = self._request(
            "POST", f"/API/Safes/{quote(safe_name, safe='')}/Members", json=body, timeout=timeout
        )
        return payload if isinstance(payload, dict) else {"memberName": member["member_name"]}

    def delete_safe(self, safe_name: str, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self._request("DELETE", f"/API/Safes/{quote(safe_name, safe='')}", timeout=timeout)

    def find_user(self, username: str, timeout: float = DEFAULT_TIMEOUT_S) -> dict[str, Any] | None:
        wanted = username.strip().lower()
        for user in self.list_users(search=username, timeout=timeout):
            if str(user.get("username", "")).lower() == wanted:
                return user
        return None

    def list_users(
        self,
        search: str = "",
        page_size: int = 100,
        page_offset: int = 0,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> list[dict[str, Any]]:
        params = {"pageSize": str(page_size), "pageOffset": str(page_offset)}
        if search:
            params["search"] = search
        payload = self._request("GET", "/API/Users", params=params, timeout=timeout)
        if isinstance(payload, dict) and isinstance(payload.get("Users"), list):
            return payload["Users"]
        return []

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> Any:
        if not self.token:
            raise PermanentExecutionError("client not authenticated", reason_code="vault_not_authenticated")
        response = self._send(method, path, json=json, params=params, timeout=timeout)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        authenticated: bool = True,
    ) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if authenticated and self.token:
            headers["Authorization"] = self.token
        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers=headers,
                json=json,
                params=params,
                timeout=timeout,
                verify=self.verify,
            )
        except requests.Timeout as exc:
            raise TransientExecutionError(
                f"vault request timed out: {exc}", reason_code="vault_timeout"
            ) from exc
        except requests.ConnectionError as exc:
            raise TransientExecutionError(
                f"failed to connect to vault: {exc}", reason_code="vault_unreachable"
            ) from exc

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
            )
        return response


def build_vault_client(
    target: dict[str, Any],
    mode: str = "in_memory",
    env: dict[str, str] | None = None,
    session: requests.Session | None = None,
) -> VaultClient:
    """Create a client for ``target``; the secret comes from its ``credential_env``."""

    env_map = os.environ if env is None else env
    if mode == "api":
        password = env_map.get(target.get("credential_env") or "", "")
        if not password:
            raise PermanentExecutionError(
                f"credential variable {target.get('credential_env')} is not set",
                reason_code="missing_credentials",
            )
        return VaultAPIClient(
            base_url=target["base_url"],
            username=target.get("username", ""),
            password=password,
            skip_tls_verify=bool(target.get("skip_tls_verify")),
            session=session,
        )

    from orca_ops.execution_plane.vault.client_inmemory import InMemoryVaultClient

    return InMemoryVaultClient(base_url=target["base_url"])


def _parse_logon_token(response: requests.Response) -> str:
    body = (response.text or "").strip()
    if not body:
        return ""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    if isinstance(parsed, str):
        return parsed.strip()
    if isinstance(parsed, dict):
        return str(parsed.get("CyberArkLogonResult") or "").strip()
    return ""


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
