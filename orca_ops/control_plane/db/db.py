"""SQLite persistence for operations, targets, transitions, and audit events."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from orca_ops.control_plane.models.operation_contracts import (
    PRIORITY_RANK,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_RETRYING,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
)

_PRIORITY_ORDER_SQL = (
    "CASE o.priority "
    + " ".join(f"WHEN '{name}' THEN {rank}" for name, rank in PRIORITY_RANK.items())
    + f" ELSE {len(PRIORITY_RANK)} END"
)

_TARGET_UPDATABLE = {
    "name",
    "base_url",
    "username",
    "credential_env",
    "max_concurrent_sessions",
    "skip_tls_verify",
    "is_active",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def shift_iso(seconds: float, now: str | None = None) -> str:
    base = datetime.fromisoformat(now) if now else datetime.now(timezone.utc)
    return (base + timedelta(seconds=seconds)).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    reason_code: str
    operation: dict[str, Any] | None = None


class OperationStore:
    """Durable source of truth for operation state and per-target slot accounting."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent reads."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS targets (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                base_url TEXT NOT NULL,
                username TEXT NOT NULL DEFAULT '',
                credential_env TEXT NOT NULL DEFAULT 'ORCA_VAULT_PASSWORD',
                max_concurrent_sessions INTEGER,
                in_flight_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_by TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (max_concurrent_sessions IS NULL OR max_concurrent_sessions >= 1),
                CHECK (in_flight_count >= 0)
            );

            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                priority TEXT NOT NULL DEFAULT 'normal',
                target_id TEXT,
                payload_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                not_before TEXT,
                last_error TEXT NOT NULL DEFAULT '',
                failure_reason TEXT NOT NULL DEFAULT '',
                result_json TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                claimed_by TEXT,
                created_by TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                FOREIGN KEY(target_id) REFERENCES targets(id)
            );

            CREATE INDEX IF NOT EXISTS idx_operations_status_created
                ON operations(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_operations_target_status
                ON operations(target_id, status);

            CREATE TABLE IF NOT EXISTS operation_transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_id TEXT NOT NULL,
                from_status TEXT,
                to_status TEXT NOT NULL,
                reason_code TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                actor TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                FOREIGN KEY(operation_id) REFERENCES operations(id)
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS operator_sessions (
                session_id TEXT PRIMARY KEY,
                token_hash TEXT NOT NULL UNIQUE,
                operator TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_type TEXT NOT NULL,
                outcome TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                total_latency_ms REAL NOT NULL DEFAULT 0,
                UNIQUE(operation_type, outcome)
            )
            """
        )
        if not self._has_column("targets", "skip_tls_verify"):
            self.conn.execute(
                "ALTER TABLE targets ADD COLUMN skip_tls_verify INTEGER NOT NULL DEFAULT 0"
            )
        if not self._has_column("operations", "correlation_id"):
            self.conn.execute(
                "ALTER TABLE operations ADD COLUMN correlation_id TEXT NOT NULL DEFAULT ''"
            )
        self.conn.commit()

    def _has_column(self, table: str, column: str) -> bool:
        rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(row["name"]) == column for row in rows)

    @contextmanager
    def transaction(self) -> Iterator["OperationStore"]:
        """Serialize writers; only the outermost scope commits or rolls back."""

        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if self._tx_depth == 1:
                    self.conn.rollback()
                raise
            else:
                if self._tx_depth == 1:
                    self.conn.commit()
            finally:
                self._tx_depth -= 1

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # -- targets -----------------------------------------------------------

    def create_target(
        self,
        *,
        target_id: str,
        name: str,
        base_url: str,
        username: str = "",
        credential_env: str = "ORCA_VAULT_PASSWORD",
        max_concurrent_sessions: int | None = None,
        skip_tls_verify: bool = False,
        is_active: bool = True,
        created_by: str = "",
    ) -> dict[str, Any]:
        now = utc_now_iso()
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO targets (
                    id, name, base_url, username, credential_env, max_concurrent_sessions,
                    skip_tls_verify, is_active, created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    target_id,
                    name,
                    base_url,
                    username,
                    credential_env,
                    max_concurrent_sessions,
                    int(skip_tls_verify),
                    int(is_active),
                    created_by,
                    now,
                    now,
                ),
            )
        return self.get_target(target_id) or {}

    def get_target(self, target_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
        return _target_row_to_dict(row) if row is not None else None

    def get_target_by_name(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM targets WHERE name = ?", (name,)).fetchone()
        return _target_row_to_dict(row) if row is not None else None

    def list_targets(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM targets ORDER BY name ASC").fetchall()
        return [_target_row_to_dict(row) for row in rows]

    def update_target(self, target_id: str, **fields: Any) -> dict[str, Any] | None:
        unknown = set(fields) - _TARGET_UPDATABLE
        if unknown:
            raise ValueError(f"unknown_target_fields:{','.join(sorted(unknown))}")
        if not fields:
            return self.get_target(target_id)
        updates: list[str] = []
        args: list[Any] = []
        for key, value in sorted(fields.items()):
            updates.append(f"{key} = ?")
            args.append(int(value) if isinstance(value, bool) else value)
        updates.append("updated_at = ?")
        args.append(utc_now_iso())
        args.append(target_id)
        with self.transaction():
            self.conn.execute(f"UPDATE targets SET {', '.join(updates)} WHERE id = ?", args)
        return self.get_target(target_id)

    def release_target_slot(self, target_id: str, now: str | None = None) -> None:
        with self.transaction():
            self.conn.execute(
                """
                UPDATE targets
                SET in_flight_count = MAX(in_flight_count - 1, 0), updated_at = ?
                WHERE id = ?
                """,
                (now or utc_now_iso(), target_id),
            )

    def reconcile_target_in_flight(self, target_id: str | None = None) -> dict[str, int]:
        """Recompute in-flight counters from rows actually in ``running``."""

        with self.transaction():
            if target_id is None:
                target_ids = [
                    str(row["id"]) for row in self.conn.execute("SELECT id FROM targets")
                ]
            else:
                target_ids = [target_id]
            counts: dict[str, int] = {}
            for tid in target_ids:
                running = self.conn.execute(
                    "SELECT COUNT(*) FROM operations WHERE target_id = ? AND status = ?",
                    (tid, STATUS_RUNNING),
                ).fetchone()[0]
                self.conn.execute(
                    "UPDATE targets SET in_flight_count = ?, updated_at = ? WHERE id = ?",
                    (int(running), utc_now_iso(), tid),
                )
                counts[tid] = int(running)
        return counts

    # -- operations --------------------------------------------------------

    def create_operation(
        self,
        *,
        operation_id: str,
        operation_type: str,
        priority: str,
        target_id: str | None,
        payload: dict[str, Any],
        max_attempts: int,
        created_by: str = "",
        correlation_id: str = "",
        not_before: str | None = None,
    ) -> dict[str, Any]:
        now = utc_now_iso()
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO operations (
                    id, type, priority, target_id, payload_json, status, max_attempts,
                    not_before, created_by, correlation_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation_id,
                    operation_type,
                    priority,
                    target_id,
                    json.dumps(payload, sort_keys=True),
                    STATUS_PENDING,
                    int(max_attempts),
                    not_before,
                    created_by,
                    correlation_id,
                    now,
                    now,
                ),
            )
            self.append_transition(
                operation_id,
                from_status=None,
                to_status=STATUS_PENDING,
                reason_code="submitted",
                attempt=0,
                actor=created_by,
                now=now,
            )
        return self.get_operation(operation_id) or {}

    def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
        return _operation_row_to_dict(row) if row is not None else None

    def list_operations(
        self,
        *,
        status: str | None = None,
        operation_type: str | None = None,
        priority: str | None = None,
        target_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        for column, value in (
            ("status", status),
            ("type", operation_type),
            ("priority", priority),
            ("target_id", target_id),
        ):
            if value:
                clauses.append(f"{column} = ?")
                args.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(max(1, int(limit)))
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM operations {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                args,
            ).fetchall()
        return [_operation_row_to_dict(row) for row in rows]

    def list_running_operations(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM operations WHERE status = ? ORDER BY created_at ASC, id ASC",
                (STATUS_RUNNING,),
            ).fetchall()
        return [_operation_row_to_dict(row) for row in rows]

    def list_dispatchable_operations(
        self,
        now: str | None = None,
        limit: int = 500,
        exclude_target_ids: set[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Pending, due, non-cancelled work on active targets with a free slot, in dispatch order."""

        excluded = sorted(exclude_target_ids or ())
        exclude_sql = ""
        if excluded:
            exclude_sql = f"AND o.target_id NOT IN ({', '.join('?' for _ in excluded)})"
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT o.*
                FROM operations o
                LEFT JOIN targets t ON t.id = o.target_id
                WHERE o.status = ?
                  AND o.cancel_requested = 0
                  AND (o.not_before IS NULL OR o.not_before <= ?)
                  AND (
                    o.target_id IS NULL
                    OR (
                      t.is_active = 1
                      AND (t.max_concurrent_sessions IS NULL
                           OR t.in_flight_count < t.max_concurrent_sessions)
                    )
                  )
                  {exclude_sql}
                ORDER BY {_PRIORITY_ORDER_SQL} ASC, o.created_at ASC, o.id ASC
                LIMIT ?
                """,
                (STATUS_PENDING, now or utc_now_iso(), *excluded, max(1, int(limit))),
            ).fetchall()
        return [_operation_row_to_dict(row) for row in rows]

    def promote_due_retries(self, now: str | None = None) -> list[str]:
        """Move ``retrying`` rows whose backoff has elapsed back to ``pending``."""

        current = now or utc_now_iso()
        with self.transaction():
            rows = self.conn.execute(
                """
                SELECT id, attempt_count FROM operations
                WHERE status = ? AND cancel_requested = 0
                  AND (not_before IS NULL OR not_before <= ?)
                ORDER BY created_at ASC, id ASC
                """,
                (STATUS_RETRYING, current),
            ).fetchall()
            promoted: list[str] = []
            for row in rows:
                cur = self.conn.execute(
                    "UPDATE operations SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (STATUS_PENDING, current, row["id"], STATUS_RETRYING),
                )
                if not cur.rowcount:
                    continue
                self.append_transition(
                    str(row["id"]),
                    from_status=STATUS_RETRYING,
                    to_status=STATUS_PENDING,
                    reason_code="backoff_elapsed",
                    attempt=int(row["attempt_count"]),
                    now=current,
                )
                promoted.append(str(row["id"]))
        return promoted

    def claim_operation(
        self, operation_id: str, worker_id: str, now: str | None = None
    ) -> ClaimResult:
        """Reserve a target slot and move the operation to ``running`` atomically."""

        current = now or utc_now_iso()
        with self.transaction():
            row = self.conn.execute(
                "SELECT * FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
            if row is None:
                return ClaimResult(claimed=False, reason_code="operation_not_found")
            status = str(row["status"])
            if status in TERMINAL_STATUSES:
                return ClaimResult(
                    claimed=False,
                    reason_code="terminal_state",
                    operation=_operation_row_to_dict(row),
                )
            if status != STATUS_PENDING:
                return ClaimResult(
                    claimed=False,
                    reason_code=f"not_pending:{status}",
                    operation=_operation_row_to_dict(row),
                )
            if int(row["cancel_requested"]):
                return ClaimResult(claimed=False, reason_code="cancel_requested")
            if row["not_before"] and str(row["not_before"]) > current:
                return ClaimResult(claimed=False, reason_code="not_due")

            target_id = row["target_id"]
            if target_id:
                reserved = self.conn.execute(
                    """
                    UPDATE targets
                    SET in_flight_count = in_flight_count + 1, updated_at = ?
                    WHERE id = ?
                      AND is_active = 1
                      AND (max_concurrent_sessions IS NULL
                           OR in_flight_count < max_concurrent_sessions)
                    """,
                    (current, target_id),
                )
                if not reserved.rowcount:
                    target = self.conn.execute(
                        "SELECT is_active FROM targets WHERE id = ?", (target_id,)
                    ).fetchone()
                    if target is None:
                        return ClaimResult(claimed=False, reason_code="target_not_found")
                    if not int(target["is_active"]):
                        return ClaimResult(claimed=False, reason_code="target_inactive")
                    return ClaimResult(claimed=False, reason_code="capacity_unavailable")

            moved = self.conn.execute(
                """
                UPDATE operations
                SET status = ?, attempt_count = attempt_count + 1, claimed_by = ?,
                    started_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND cancel_requested = 0
                """,
                (STATUS_RUNNING, worker_id, current, current, operation_id, STATUS_PENDING),
            )
            if not moved.rowcount:
                if target_id:
                    self.release_target_slot(str(target_id), now=current)
                return ClaimResult(claimed=False, reason_code="claim_conflict")
            self.append_transition(
                operation_id,
                from_status=STATUS_PENDING,
                to_status=STATUS_RUNNING,
                reason_code="slot_reserved",
                attempt=int(row["attempt_count"]) + 1,
                actor=worker_id,
                now=current,
            )
        return ClaimResult(
            claimed=True, reason_code="claimed", operation=self.get_operation(operation_id)
        )

    def finish_running_operation(
        self,
        operation_id: str,
        *,
        hops: list[tuple[str, str, str]],
        last_error: str | None = None,
        failure_reason: str = "",
        result: dict[str, Any] | None = None,
        not_before: str | None = None,
        actor: str = "",
        now: str | None = None,
    ) -> dict[str, Any] | None:
        """Persist the outcome of a running attempt and release its slot together."""

        if not hops or hops[0][0] != STATUS_RUNNING:
            raise ValueError("invalid_transition:must_start_from_running")
        current = now or utc_now_iso()
        to_status = hops[-1][1]
        with self.transaction():
            row = self.conn.execute(
                "SELECT * FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
            if row is None or str(row["status"]) != STATUS_RUNNING:
                return None
            completed_at = current if to_status in TERMINAL_STATUSES else None
            self.conn.execute(
                """
                UPDATE operations
                SET status = ?, last_error = COALESCE(?, last_error), failure_reason = ?,
                    result_json = ?, not_before = ?, claimed_by = NULL,
                    completed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    to_status,
                    last_error,
                    failure_reason,
                    json.dumps(result, sort_keys=True) if result is not None else None,
                    not_before,
                    completed_at,
                    current,
                    operation_id,
                    STATUS_RUNNING,
                ),
            )
            if row["target_id"]:
                self.release_target_slot(str(row["target_id"]), now=current)
            for from_status, hop_to, reason_code in hops:
                self.append_transition(
                    operation_id,
                    from_status=from_status,
                    to_status=hop_to,
                    reason_code=reason_code,
                    attempt=int(row["attempt_count"]),
                    actor=actor,
                    now=current,
                )
        return self.get_operation(operation_id)

    def set_cancel_requested(self, operation_id: str, now: str | None = None) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                """
                UPDATE operations SET cancel_requested = 1, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (now or utc_now_iso(), operation_id, STATUS_RUNNING),
            )
        return bool(cur.rowcount)

    def cancel_queued_operation(
        self, operation_id: str, actor: str = "", now: str | None = None
    ) -> bool:
        current = now or utc_now_iso()
        with self.transaction():
            row = self.conn.execute(
                "SELECT status, attempt_count FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
            if row is None or str(row["status"]) not in {STATUS_PENDING, STATUS_RETRYING}:
                return False
            self.conn.execute(
                """
                UPDATE operations
                SET status = ?, cancel_requested = 1, failure_reason = 'cancelled',
                    completed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (STATUS_CANCELLED, current, current, operation_id),
            )
            self.append_transition(
                operation_id,
                from_status=str(row["status"]),
                to_status=STATUS_CANCELLED,
                reason_code="cancelled_by_operator",
                attempt=int(row["attempt_count"]),
                actor=actor,
                now=current,
            )
        return True

    def is_cancel_requested(self, operation_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT cancel_requested FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
        return bool(row and int(row["cancel_requested"]))

    # -- transitions, audit, metrics --------------------------------------

    def append_transition(
        self,
        operation_id: str,
        *,
        from_status: str | None,
        to_status: str,
        reason_code: str,
        attempt: int = 0,
        actor: str = "",
        now: str | None = None,
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO operation_transitions (
                    operation_id, from_status, to_status, reason_code, attempt, actor, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation_id,
                    from_status,
                    to_status,
                    reason_code,
                    int(attempt),
                    actor,
                    now or utc_now_iso(),
                ),
            )

    def list_transitions(self, operation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT from_status, to_status, reason_code, attempt, actor, created_at
                FROM operation_transitions
                WHERE operation_id = ?
                ORDER BY id ASC
                """,
                (operation_id,),
            ).fetchall()
        return [
            {
                "from_status": row["from_status"],
                "to_status": str(row["to_status"]),
                "reason_code": str(row["reason_code"]),
                "attempt": int(row["attempt"]),
                "actor": str(row["actor"] or ""),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def append_audit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        with self.transaction():
            self.conn.execute(
                "INSERT INTO audit_events (event_type, event_json) VALUES (?, ?)",
                (event_type, json.dumps(payload, sort_keys=True)),
            )

    def list_audit_events(
        self,
        event_type: str | None = None,
        operation_id: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        if event_type:
            clauses.append("event_type = ?")
            args.append(event_type)
        if operation_id:
            clauses.append("json_extract(event_json, '$.operation_id') = ?")
            args.append(operation_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT id, event_type, event_json, created_at FROM audit_events {where} "
                "ORDER BY id ASC",
                args,
            ).fetchall()
        return [
            {
                "id": int(row["id"]),
                "event_type": row["event_type"],
                "payload": json.loads(row["event_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def record_operation_metric(
        self, operation_type: str, outcome: str, latency_ms: float
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO operation_metrics (operation_type, outcome, count, total_latency_ms)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(operation_type, outcome)
                DO UPDATE SET count = count + 1, total_latency_ms = total_latency_ms + excluded.total_latency_ms
                """,
                (operation_type, outcome, float(latency_ms)),
            )

    def list_operation_metrics(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT operation_type, outcome, count, total_latency_ms
                FROM operation_metrics
                ORDER BY operation_type ASC, outcome ASC
                """
            ).fetchall()
        return [
            {
                "operation_type": row["operation_type"],
                "outcome": row["outcome"],
                "count": int(row["count"]),
                "avg_latency_ms": round(float(row["total_latency_ms"]) / int(row["count"]), 3)
                if int(row["count"])
                else 0.0,
            }
            for row in rows
        ]

    def queue_statistics(self) -> dict[str, Any]:
        with self._lock:
            depth_rows = self.conn.execute(
                """
                SELECT priority, COUNT(*) AS count FROM operations
                WHERE status IN (?, ?) GROUP BY priority
                """,
                (STATUS_PENDING, STATUS_RETRYING),
            ).fetchall()
            running_rows = self.conn.execute(
                """
                SELECT COALESCE(target_id, '') AS target_id, COUNT(*) AS count FROM operations
                WHERE status = ? GROUP BY target_id
                """,
                (STATUS_RUNNING,),
            ).fetchall()
            outcome_rows = self.conn.execute(
                f"""
                SELECT type, status, COUNT(*) AS count FROM operations
                WHERE status IN ({', '.join('?' for _ in TERMINAL_STATUSES)})
                GROUP BY type, status
                """,
                sorted(TERMINAL_STATUSES),
            ).fetchall()
        outcomes: dict[str, dict[str, int]] = {}
        for row in outcome_rows:
            outcomes.setdefault(str(row["type"]), {})[str(row["status"])] = int(row["count"])
        return {
            "queue_depth": {str(row["priority"]): int(row["count"]) for row in depth_rows},
            "running_by_target": {
                str(row["target_id"]): int(row["count"]) for row in running_rows
            },
            "outcomes_by_type": outcomes,
        }

    # -- operator sessions -------------------------------------------------

    def create_operator_session(
        self, *, session_id: str, token_hash: str, operator: str, expires_at: str
    ) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO operator_sessions (session_id, token_hash, operator, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, token_hash, operator, utc_now_iso(), expires_at),
            )

    def get_operator_session(self, token_hash: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM operator_sessions WHERE token_hash = ?", (token_hash,)
            ).fetchone()
        if row is None:
            return None
        return {
            "session_id": str(row["session_id"]),
            "operator": str(row["operator"]),
            "created_at": str(row["created_at"]),
            "expires_at": str(row["expires_at"]),
        }


def _target_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    max_sessions = row["max_concurrent_sessions"]
    return {
        "id": str(row["id"]),
        "name": str(row["name"]),
        "base_url": str(row["base_url"]),
        "username": str(row["username"] or ""),
        "credential_env": str(row["credential_env"] or ""),
        "max_concurrent_sessions": int(max_sessions) if max_sessions is not None else None,
        "concurrent_sessions": max_sessions is None or int(max_sessions) > 1,
        "in_flight_count": int(row["in_flight_count"]),
        "skip_tls_verify": bool(row["skip_tls_verify"]),
        "is_active": bool(row["is_active"]),
        "created_by": str(row["created_by"] or ""),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def _operation_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "type": str(row["type"]),
        "priority": str(row["priority"]),
        "target_id": str(row["target_id"]) if row["target_id"] is not None else None,
        "payload": json.loads(row["payload_json"] or "{}"),
        "status": str(row["status"]),
        "attempt_count": int(row["attempt_count"]),
        "max_attempts": int(row["max_attempts"]),
        "not_before": str(row["not_before"] or ""),
        "last_error": str(row["last_error"] or ""),
        "failure_reason": str(row["failure_reason"] or ""),
        "result": json.loads(row["result_json"]) if row["result_json"] else None,
        "cancel_requested": bool(row["cancel_requested"]),
        "claimed_by": str(row["claimed_by"] or ""),
        "created_by": str(row["created_by"] or ""),
        "correlation_id": str(row["correlation_id"] or ""),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
        "started_at": str(row["started_at"] or ""),
        "completed_at": str(row["completed_at"] or ""),
    }
