"""Per-target authenticated vault sessions with idle reuse and expiry."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from orca_ops.control_plane.orchestration.errors import EngineError
from orca_ops.execution_plane.vault.client import DEFAULT_TIMEOUT_S, VaultClient

logger = logging.getLogger(__name__)


@dataclass
class _SessionEntry:
    target_id: str
    client: VaultClient
    created_at: float
    last_used: float
    users: int = 0
    retired: bool = False


class VaultSessionPool:
    """One logged-on client per target, reused while it stays fresh.

    Workers on the same target share the client, so entries are reference
    counted: a replaced or invalidated session is only logged off once its
    last user releases it. Network calls (logon, logoff) never run under the
    pool-wide lock; logons for one target are serialized by a per-target lock.
    """

    def __init__(
        self,
        client_factory: Callable[[dict[str, Any]], VaultClient],
        idle_seconds: float = 900.0,
        expiry_seconds: float = 1200.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_factory = client_factory
        self.idle_seconds = idle_seconds
        self.expiry_seconds = expiry_seconds
        self.clock = clock
        self._sessions: dict[str, _SessionEntry] = {}
        self._retired: list[_SessionEntry] = []
        self._target_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def acquire(self, target: dict[str, Any], timeout: float = DEFAULT_TIMEOUT_S) -> VaultClient:
        target_id = target["id"]
        with self._target_lock(target_id):
            stale: _SessionEntry | None = None
            with self._lock:
                now = self.clock()
                entry = self._sessions.get(target_id)
                if entry is not None and self._is_fresh(entry, now):
                    entry.users += 1
                    entry.last_used = now
                    return entry.client
                if entry is not None:
                    del self._sessions[target_id]
                    stale = self._retire(entry)
            if stale is not None:
                self._logoff(stale)

            client = self.client_factory(target)
            client.logon(timeout=timeout)
            with self._lock:
                now = self.clock()
                self._sessions[target_id] = _SessionEntry(
                    target_id=target_id, client=client, created_at=now, last_used=now, users=1
                )
            logger.info("Opened vault session for target %s", target_id)
            return client

    def release(self, target_id: str, client: VaultClient) -> None:
        finished: _SessionEntry | None = None
        with self._lock:
            entry = self._find(target_id, client)
            if entry is None:
                return
            entry.users = max(0, entry.users - 1)
            entry.last_used = self.clock()
            if entry.retired and entry.users == 0:
                self._retired.remove(entry)
                finished = entry
        if finished is not None:
            self._logoff(finished)

    def invalidate(self, target_id: str, client: VaultClient | None = None) -> None:
        """Stop handing out a target's session; it is logged off once unused."""

        stale: _SessionEntry | None = None
        with self._lock:
            entry = self._sessions.get(target_id)
            if entry is not None and (client is None or entry.client is client):
                del self._sessions[target_id]
                stale = self._retire(entry)
        if stale is not None:
            self._logoff(stale)

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self.clock()
            expired = [
                entry
                for entry in self._sessions.values()
                if entry.users == 0 and now - entry.last_used > self.expiry_seconds
            ]
            for entry in expired:
                del self._sessions[entry.target_id]
        for entry in expired:
            self._logoff(entry)
        if expired:
            logger.info("Closed %d expired vault session(s)", len(expired))
        return len(expired)

    def close_all(self) -> None:
        with self._lock:
            entries = list(self._sessions.values()) + self._retired
            self._sessions.clear()
            self._retired = []
        for entry in entries:
            if entry.users:
                logger.warning(
                    "Closing vault session for target %s with %d active user(s)",
                    entry.target_id,
                    entry.users,
                )
            self._logoff(entry)

    def active_targets(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def users(self, target_id: str) -> int:
        with self._lock:
            entry = self._sessions.get(target_id)
            return entry.users if entry is not None else 0

    def _target_lock(self, target_id: str) -> threading.Lock:
        with self._lock:
            return self._target_locks.setdefault(target_id, threading.Lock())

    def _is_fresh(self, entry: _SessionEntry, now: float) -> bool:
        if not entry.client.is_authenticated():
            return False
        return entry.users > 0 or now - entry.last_used < self.idle_seconds

    def _retire(self, entry: _SessionEntry) -> _SessionEntry | None:
        """Caller holds ``_lock``; returns the entry when it can be logged off now."""

        if entry.users == 0:
            return entry
        entry.retired = True
        self._retired.append(entry)
        return None

    def _find(self, target_id: str, client: VaultClient) -> _SessionEntry | None:
        entry = self._sessions.get(target_id)
        if entry is not None and entry.client is client:
            return entry
        for retired in self._retired:
            if retired.target_id == target_id and retired.client is client:
                return retired
        return None

    def _logoff(self, entry: _SessionEntry) -> None:
        try:
            entry.client.logoff()
        except EngineError as exc:
            logger.warning("Logoff for target %s failed: %s", entry.target_id, exc)
