"""Shared runtime settings for the local-first operation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

RECOVERY_POLICIES = {"requeue", "keep"}
VAULT_CLIENT_MODES = {"in_memory", "api"}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_timeouts(raw: str) -> dict[str, float]:
    """Parse ``type=seconds`` pairs separated by commas."""

    timeouts: dict[str, float] = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        name, _, value = part.partition("=")
        name = name.strip()
        if not name:
            continue
        try:
            seconds = float(value.strip())
        except ValueError:
            continue
        if seconds > 0:
            timeouts[name] = seconds
    return timeouts


@dataclass(frozen=True)
class EngineSettings:
    """Filesystem locations, worker sizing and retry knobs for the engine."""

    data_dir: Path
    sqlite_path: Path
    worker_pool_size: int = 4
    poll_interval_seconds: float = 1.0
    max_attempts: int = 3
    backoff_base_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 300.0
    backoff_jitter: bool = True
    default_timeout_seconds: float = 60.0
    operation_timeouts: dict[str, float] = field(default_factory=dict)
    recovery_policy: str = "requeue"
    session_idle_seconds: float = 900.0
    session_expiry_seconds: float = 1200.0
    operator_token_ttl_seconds: int = 43200
    vault_client: str = "in_memory"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "EngineSettings":
        source = os.environ if env is None else env
        data_dir = Path(source.get("ORCA_DATA_DIR", "./data"))
        sqlite_path = Path(source.get("ORCA_SQLITE_PATH", str(data_dir / "orca_ops.sqlite")))
        recovery_policy = str(source.get("ORCA_RECOVERY_POLICY", "requeue")).strip().lower()
        if recovery_policy not in RECOVERY_POLICIES:
            recovery_policy = "requeue"
        vault_client = str(source.get("ORCA_VAULT_CLIENT", "in_memory")).strip().lower()
        if vault_client not in VAULT_CLIENT_MODES:
            vault_client = "in_memory"
        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            worker_pool_size=max(1, int(source.get("ORCA_WORKER_POOL_SIZE", "4"))),
            poll_interval_seconds=max(0.05, float(source.get("ORCA_POLL_INTERVAL_SECONDS", "1"))),
            max_attempts=max(1, int(source.get("ORCA_MAX_ATTEMPTS", "3"))),
            backoff_base_seconds=max(0.0, float(source.get("ORCA_BACKOFF_BASE_SECONDS", "10"))),
            backoff_multiplier=max(1.0, float(source.get("ORCA_BACKOFF_MULTIPLIER", "2"))),
            backoff_cap_seconds=max(0.0, float(source.get("ORCA_BACKOFF_CAP_SECONDS", "300"))),
            backoff_jitter=_parse_bool(source.get("ORCA_BACKOFF_JITTER"), True),
            default_timeout_seconds=max(
                1.0, float(source.get("ORCA_DEFAULT_TIMEOUT_SECONDS", "60"))
            ),
            operation_timeouts=_parse_timeouts(source.get("ORCA_OPERATION_TIMEOUTS", "")),
            recovery_policy=recovery_policy,
            session_idle_seconds=float(source.get("ORCA_SESSION_IDLE_SECONDS", "900")),
            session_expiry_seconds=float(source.get("ORCA_SESSION_EXPIRY_SECONDS", "1200")),
            operator_token_ttl_seconds=max(
                60, int(source.get("ORCA_OPERATOR_TOKEN_TTL_SECONDS", "43200"))
            ),
            vault_client=vault_client,
            log_level=str(source.get("ORCA_LOG_LEVEL", "INFO")).strip().upper() or "INFO",
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    def timeout_for(self, operation_type: str) -> float:
        return self.operation_timeouts.get(operation_type, self.default_timeout_seconds)


def get_engine_settings(env: dict[str, str] | None = None) -> EngineSettings:
    """Build and hydrate engine settings from environment variables."""

    settings = EngineSettings.from_env(env)
    settings.ensure_directories()
    return settings
