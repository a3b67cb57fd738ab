"""Kind-tagged, lexically time-sortable identifiers (ULID encoding)."""

from __future__ import annotations

import os
import re
import threading
import time

OPERATION = "op"
TARGET = "tgt"
USER = "usr"
SESSION = "ses"
SAFE = "saf"
ROLE = "rol"
CONFIG = "cfg"
CERTIFICATE_AUTHORITY = "ca"

KNOWN_KINDS = {OPERATION, TARGET, USER, SESSION, SAFE, ROLE, CONFIG, CERTIFICATE_AUTHORITY}

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH = 26
_RANDOM_BITS = 80
_RANDOM_LIMIT = 1 << _RANDOM_BITS
_TIMESTAMP_LIMIT = 1 << 48
_KIND_RE = re.compile(r"^[a-z][a-z0-9]{0,7}$")
_DECODE = {char: index for index, char in enumerate(CROCKFORD_ALPHABET)}


class IdentifierExhaustedError(RuntimeError):
    """Raised when no further monotonic identifier can be produced safely."""


class _MonotonicEntropy:
    """Per-kind entropy that increments within the same millisecond."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def next(self, now_ms: int) -> tuple[int, int]:
        with self._lock:
            if now_ms <= self._last_ms:
                # same millisecond or the clock stepped backwards
                now_ms = self._last_ms
                random_part = self._last_random + 1
                if random_part >= _RANDOM_LIMIT:
                    raise IdentifierExhaustedError("ulid_entropy_overflow")
            else:
                try:
                    random_part = int.from_bytes(os.urandom(_RANDOM_BITS // 8), "big")
                except NotImplementedError as exc:
                    raise IdentifierExhaustedError("randomness_source_unavailable") from exc
            self._last_ms = now_ms
            self._last_random = random_part
            return now_ms, random_part


_entropy_by_kind: dict[str, _MonotonicEntropy] = {}
_registry_lock = threading.Lock()


def _entropy_for(kind: str) -> _MonotonicEntropy:
    with _registry_lock:
        entropy = _entropy_by_kind.get(kind)
        if entropy is None:
            entropy = _MonotonicEntropy()
            _entropy_by_kind[kind] = entropy
        return entropy


def encode_ulid(timestamp_ms: int, random_part: int) -> str:
    if not 0 <= timestamp_ms < _TIMESTAMP_LIMIT:
        raise ValueError("ulid_timestamp_out_of_range")
    value = (timestamp_ms << _RANDOM_BITS) | random_part
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def decode_ulid(text: str) -> int:
    if len(text) != ULID_LENGTH:
        raise ValueError("ulid_invalid_length")
    value = 0
    for char in text:
        digit = _DECODE.get(char)
        if digit is None:
            raise ValueError("ulid_invalid_character")
        value = (value << 5) | digit
    if value >> 128:
        raise ValueError("ulid_overflow")
    return value


def new_id(kind: str, now_ms: int | None = None) -> str:
    """Return ``<kind>_<ULID>`` where later ids sort after earlier ones."""

    if not _KIND_RE.match(kind):
        raise ValueError(f"invalid_id_kind:{kind}")
    timestamp_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    timestamp_ms, random_part = _entropy_for(kind).next(timestamp_ms)
    return f"{kind}_{encode_ulid(timestamp_ms, random_part)}"


def is_valid(identifier: str, kind: str) -> bool:
    expected = f"{kind}_"
    if not isinstance(identifier, str) or len(identifier) != len(expected) + ULID_LENGTH:
        return False
    if not identifier.startswith(expected):
        return False
    try:
        decode_ulid(identifier[len(expected) :])
    except ValueError:
        return False
    return True


def id_timestamp_ms(identifier: str) -> int:
    _, _, suffix = identifier.rpartition("_")
    return decode_ulid(suffix) >> _RANDOM_BITS
