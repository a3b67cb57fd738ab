"""Opaque session tokens for operator attribution."""

from __future__ import annotations

import base64
import hashlib
import secrets

SESSION_TOKEN_BYTES = 32


class SessionTokenError(RuntimeError):
    pass


def generate_session_token() -> str:
    try:
        raw = secrets.token_bytes(SESSION_TOKEN_BYTES)
    except (NotImplementedError, OSError) as exc:
        raise SessionTokenError("failed to generate session token") from exc
    return base64.urlsafe_b64encode(raw).decode("ascii")


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
