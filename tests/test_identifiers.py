from __future__ import annotations

import threading

import pytest

from orca_ops.shared import identifiers
from orca_ops.shared.identifiers import (
    IdentifierExhaustedError,
    _MonotonicEntropy,
    decode_ulid,
    encode_ulid,
    id_timestamp_ms,
    is_valid,
    new_id,
)
from orca_ops.shared.session_tokens import generate_session_token, hash_session_token


def test_new_id_has_kind_tag_and_ulid_suffix() -> None:
    value = new_id(identifiers.OPERATION)

    assert value.startswith("op_")
    assert len(value) == len("op_") + identifiers.ULID_LENGTH
    assert is_valid(value, identifiers.OPERATION)
    assert not is_valid(value, identifiers.TARGET)


def test_ids_sort_by_creation_order_within_same_millisecond() -> None:
    generated = [new_id("tst", now_ms=1_700_000_000_000) for _ in range(200)]

    assert generated == sorted(generated)
    assert len(set(generated)) == len(generated)


def test_ids_sort_across_milliseconds() -> None:
    early = new_id("srt", now_ms=1_700_000_000_000)
    late = new_id("srt", now_ms=1_700_000_000_001)

    assert early < late
    assert id_timestamp_ms(late) == 1_700_000_000_001


def test_concurrent_generation_stays_unique() -> None:
    results: list[str] = []
    lock = threading.Lock()

    def _worker() -> None:
        local = [new_id("cc") for _ in range(250)]
        with lock:
            results.extend(local)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 2000


def test_entropy_overflow_is_fatal() -> None:
    entropy = _MonotonicEntropy()
    entropy._last_ms = 5
    entropy._last_random = (1 << 80) - 1

    with pytest.raises(IdentifierExhaustedError):
        entropy.next(5)


def test_clock_moving_backwards_keeps_order() -> None:
    first = new_id("bk", now_ms=1_800_000_000_500)
    second = new_id("bk", now_ms=1_800_000_000_100)

    assert first < second


@pytest.mark.parametrize(
    "candidate",
    [
        "",
        "op_",
        "op_01ARZ3NDEKTSV4RRFFQ69G5FA",
        "op_01ARZ3NDEKTSV4RRFFQ69G5FAVX",
        "op_01ARZ3NDEKTSV4RRFFQ69G5FAU",
        "op-01ARZ3NDEKTSV4RRFFQ69G5FAV",
        "op_81ARZ3NDEKTSV4RRFFQ69G5FAV",
    ],
)
def test_is_valid_rejects_malformed_identifiers(candidate: str) -> None:
    assert not is_valid(candidate, "op")


def test_is_valid_accepts_canonical_ulid() -> None:
    assert is_valid("op_01ARZ3NDEKTSV4RRFFQ69G5FAV", "op")


def test_encode_decode_ulid_timestamp() -> None:
    text = encode_ulid(1_469_918_176_385, 0)

    assert text.startswith("01ARYZ6S41")
    assert decode_ulid(text) >> 80 == 1_469_918_176_385


def test_new_id_rejects_bad_kind() -> None:
    with pytest.raises(ValueError, match="invalid_id_kind"):
        new_id("Bad Kind")


def test_session_token_is_urlsafe_and_hashed() -> None:
    token = generate_session_token()
    other = generate_session_token()

    assert len(token) == 44
    assert token != other
    assert set(token) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_=")
    assert hash_session_token(token) == hash_session_token(token)
    assert len(hash_session_token(token)) == 64
