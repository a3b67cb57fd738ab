"""Operation and target contracts shared by the store, scheduler and facade."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROVISION_RESOURCE = "provision-resource"
GRANT_ACCESS = "grant-access"
SYNC_SUBJECT = "sync-subject"
DELETE_RESOURCE = "delete-resource"

OPERATION_TYPES = (PROVISION_RESOURCE, GRANT_ACCESS, SYNC_SUBJECT, DELETE_RESOURCE)

# Ordered highest first; the rank drives dispatch order only.
PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "normal": 2, "low": 3}
DEFAULT_PRIORITY = "normal"

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_RETRYING = "retrying"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

ALL_STATUSES = {
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_RETRYING,
    STATUS_SUCCEEDED,
    STATUS_FAILED,
    STATUS_CANCELLED,
}
TERMINAL_STATUSES = {STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELLED}

FAILURE_PERMANENT = "permanent_failure"
FAILURE_RETRIES_EXHAUSTED = "retries_exhausted"
FAILURE_CANCELLED = "cancelled"


def priority_rank(priority: str) -> int:
    return PRIORITY_RANK.get(priority, PRIORITY_RANK[DEFAULT_PRIORITY])


class SubmitOperationRequestV1(BaseModel):
    """Submission contract; the payload is validated later by the type's handler."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal["submit_operation/v1"] = "submit_operation/v1"
    type: str = Field(min_length=1)
    priority: Literal["high", "medium", "normal", "low"] = DEFAULT_PRIORITY
    target_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int | None = Field(default=None, ge=1, le=50)
    correlation_id: str | None = Field(default=None, max_length=64)
    scheduled_at: datetime | None = None

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().lower().replace("_", "-")


class TargetSpecV1(BaseModel):
    """Administrative registration of an external vault instance."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal["target_spec/v1"] = "target_spec/v1"
    name: str = Field(min_length=1, max_length=255)
    base_url: str = Field(min_length=1)
    username: str = Field(default="", max_length=255)
    credential_env: str = Field(default="ORCA_VAULT_PASSWORD", min_length=1)
    max_concurrent_sessions: int | None = Field(default=None, ge=1)
    concurrent_sessions: bool | None = None
    unlimited: bool = False
    skip_tls_verify: bool = False
    is_active: bool = True

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"}:
            raise ValueError("URL must use HTTP or HTTPS protocol")
        if not parsed.netloc:
            raise ValueError("URL must include a host")
        return value.strip().rstrip("/")

    @model_validator(mode="after")
    def _check_limit_flags(self) -> "TargetSpecV1":
        if self.unlimited and self.max_concurrent_sessions is not None:
            raise ValueError("unlimited targets cannot also set max_concurrent_sessions")
        return self

    def resolved_max_sessions(self) -> int | None:
        """Numeric limit, or None for unlimited."""

        if self.unlimited:
            return None
        if self.max_concurrent_sessions is not None:
            return self.max_concurrent_sessions
        if self.concurrent_sessions is None:
            return None
        return resolve_concurrent_sessions_flag(self.concurrent_sessions)


def resolve_concurrent_sessions_flag(allow_concurrent: bool) -> int | None:
    return None if allow_concurrent else 1


class OperationRecordV1(BaseModel):
    """Read model returned to pollers."""

    model_config = ConfigDict(extra="ignore")

    schema_version: Literal["operation_record/v1"] = "operation_record/v1"
    id: str
    type: str
    priority: str
    target_id: str | None = None
    status: str
    attempt_count: int = 0
    max_attempts: int = 1
    last_error: str = ""
    failure_reason: str = ""
    cancel_requested: bool = False
    result: dict[str, Any] | None = None
    created_by: str = ""
    correlation_id: str = ""
    not_before: str = ""
    created_at: str
    updated_at: str
    started_at: str = ""
    completed_at: str = ""
