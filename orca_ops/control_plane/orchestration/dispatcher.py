"""Scheduling passes: promote due retries, claim slots, hand work to executors."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from orca_ops.control_plane.db.db import OperationStore, utc_now_iso
from orca_ops.control_plane.orchestration.errors import (
    CapacityUnavailable,
    InvalidTransitionError,
    OperationNotFoundError,
)
from orca_ops.control_plane.orchestration.executor import OperationExecutor
from orca_ops.control_plane.orchestration.state_machine import is_terminal

logger = logging.getLogger(__name__)

_TARGET_BLOCKED = {"capacity_unavailable", "target_inactive", "target_not_found"}


class Dispatcher:
    """Claims dispatchable operations in priority/age order within target budgets.

    ``pool_size == 0`` runs every claimed attempt inline inside the pass, which
    keeps tests deterministic. Otherwise attempts run on a bounded thread pool
    and a pass stops claiming once every worker is busy.
    """

    def __init__(
        self,
        *,
        store: OperationStore,
        executor: OperationExecutor,
        worker_id: str = "dispatcher",
        pool_size: int = 4,
        poll_interval_seconds: float = 1.0,
        batch_size: int = 500,
    ) -> None:
        self.store = store
        self.executor = executor
        self.worker_id = worker_id
        self.pool_size = max(0, int(pool_size))
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = max(1, int(batch_size))
        self._pool: ThreadPoolExecutor | None = None
        self._futures: set[Future[Any]] = set()
        self._futures_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> dict[str, int]:
        with self._pass_lock:
            promoted = self.store.promote_due_retries()
            now = utc_now_iso()
            blocked_targets: set[str] = set()
            claimed = 0
            skipped = 0
            pool_full = False
            while not pool_full:
                batch = self.store.list_dispatchable_operations(
                    now=now, limit=self.batch_size, exclude_target_ids=blocked_targets
                )
                progressed = False
                for operation in batch:
                    if not self._has_free_worker():
                        pool_full = True
                        break
                    target_id = operation["target_id"]
                    if target_id and target_id in blocked_targets:
                        skipped += 1
                        continue
                    result = self.store.claim_operation(operation["id"], self.worker_id, now=now)
                    if not result.claimed or result.operation is None:
                        if target_id and result.reason_code in _TARGET_BLOCKED:
                            blocked_targets.add(target_id)
                            progressed = True
                        skipped += 1
                        continue
                    claimed += 1
                    progressed = True
                    self._record_claim(result.operation)
                    self._submit(result.operation)
                # A short batch means nothing due is left behind it.
                if len(batch) < self.batch_size or not progressed:
                    break
        if claimed or promoted:
            logger.info(
                "Scheduling pass: promoted=%d claimed=%d skipped=%d",
                len(promoted),
                claimed,
                skipped,
            )
        return {"promoted": len(promoted), "claimed": claimed, "skipped": skipped}

    def dispatch_operation(self, operation_id: str) -> dict[str, Any]:
        """Claim and start one specific operation outside the ordering of a pass."""

        operation = self.store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError("unknown_operation", reason_code="unknown_operation")
        if is_terminal(operation["status"]):
            raise InvalidTransitionError("invalid_transition:terminal_state")
        result = self.store.claim_operation(operation_id, self.worker_id)
        if not result.claimed or result.operation is None:
            if result.reason_code in _TARGET_BLOCKED:
                raise CapacityUnavailable(
                    f"no free session slot for {operation_id}", reason_code=result.reason_code
                )
            if result.reason_code == "terminal_state":
                raise InvalidTransitionError("invalid_transition:terminal_state")
            raise InvalidTransitionError(f"invalid_transition:{result.reason_code}")
        self._record_claim(result.operation)
        self._submit(result.operation)
        return result.operation

    def notify(self) -> None:
        self._wake.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="orca-dispatcher", daemon=True)
        self._thread.start()
        logger.info(
            "Dispatcher started (pool_size=%d, poll_interval=%.2fs)",
            self.pool_size,
            self.poll_interval_seconds,
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.drain(timeout)
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        logger.info("Dispatcher stopped")

    def drain(self, timeout: float | None = None) -> None:
        """Wait for attempts already handed to the worker pool."""

        with self._futures_lock:
            pending = set(self._futures)
        if pending:
            wait(pending, timeout=timeout)

    def active_workers(self) -> int:
        with self._futures_lock:
            return len(self._futures)

    def _loop(self) -> None:
        while not self._stopping.is_set():
            # Cleared before the pass so a release during it triggers another one.
            self._wake.clear()
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduling pass failed")
            self._wake.wait(self.poll_interval_seconds)

    def _has_free_worker(self) -> bool:
        if self.pool_size == 0:
            return True
        return self.active_workers() < self.pool_size

    def _record_claim(self, operation: dict[str, Any]) -> None:
        self.store.append_audit_event(
            "operation_claimed",
            {
                "operation_id": operation["id"],
                "target_id": operation["target_id"],
                "attempt": operation["attempt_count"],
                "worker_id": self.worker_id,
            },
        )

    def _submit(self, operation: dict[str, Any]) -> None:
        if self.pool_size == 0:
            self._run(operation)
            return
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix="orca-worker")
        future = self._pool.submit(self._run, operation)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[Any]) -> None:
        with self._futures_lock:
            self._futures.discard(future)
        # The recorder's notify fires before this worker counts as free.
        self.notify()

    def _run(self, operation: dict[str, Any]) -> None:
        try:
            self.executor.execute(operation, worker_id=self.worker_id)
        except Exception:  # noqa: BLE001
            logger.exception("Executor crashed while recording %s", operation["id"])
