"""Unit tests for auditchain.services.chain.hasher."""
from datetime import UTC, datetime, timedelta, timezone

import pytest

from auditchain.core.errors import ConfigurationError, ErrorCode, ValidationError
from auditchain.services.chain.hasher import (
    canonical_details,
    canonical_timestamp,
    compute_hash,
    hashes_equal,
)

SECRET = "unit-test-secret-0123456789-abcdefghijklmno"
TS = datetime(2025, 3, 1, 12, 30, 45, 123456, tzinfo=UTC)


def _hash(**overrides):
    fields = {
        "previous_hash": "",
        "actor_id": "user-1",
        "action": "record_viewed",
        "resource_type": "client",
        "resource_id": "client-9",
        "details": {"a": 1, "b": [1, 2]},
        "timestamp": TS,
        "secret": SECRET,
    }
    fields.update(overrides)
    return compute_hash(**fields)


# ─── Determinism ──────────────────────────────────────────────────────────────

def test_hash_is_deterministic():
    assert _hash() == _hash()


def test_hash_is_64_lowercase_hex():
    digest = _hash()
    assert len(digest) == 64
    assert digest == digest.lower()
    int(digest, 16)


def test_detail_key_order_does_not_matter():
    a = _hash(details={"x": 1, "y": {"p": 1, "q": 2}})
    b = _hash(details={"y": {"q": 2, "p": 1}, "x": 1})
    assert a == b


def test_canonical_details_sorted_and_compact():
    assert canonical_details({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_none_details_equal_empty_details():
    assert _hash(details=None) == _hash(details={})


# ─── Sensitivity ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "field,value",
    [
        ("previous_hash", "f" * 64),
        ("actor_id", "user-2"),
        ("action", "record_edited"),
        ("resource_type", "note"),
        ("resource_id", "client-10"),
        ("details", {"a": 2, "b": [1, 2]}),
        ("timestamp", TS + timedelta(microseconds=1)),
        ("secret", SECRET + "x"),
    ],
)
def test_every_field_changes_the_hash(field, value):
    assert _hash(**{field: value}) != _hash()


def test_field_boundaries_cannot_be_shifted():
    assert _hash(actor_id="a|b", action="c") != _hash(actor_id="a", action="b|c")


def test_missing_resource_id_differs_from_empty_string():
    assert _hash(resource_id=None) != _hash(resource_id="")


# ─── Timestamps ───────────────────────────────────────────────────────────────

def test_naive_timestamp_is_treated_as_utc():
    assert _hash(timestamp=TS.replace(tzinfo=None)) == _hash()


def test_offset_timestamp_normalised_to_utc():
    local = TS.astimezone(timezone(timedelta(hours=2)))
    assert _hash(timestamp=local) == _hash()


def test_canonical_timestamp_format():
    assert canonical_timestamp(TS) == "2025-03-01T12:30:45.123456Z"


# ─── Rejections ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize("secret", [None, "", "   "])
def test_missing_secret_rejected(secret):
    with pytest.raises(ConfigurationError) as exc_info:
        _hash(secret=secret)
    assert exc_info.value.code == ErrorCode.CFG_SECRET_MISSING


@pytest.mark.parametrize(
    "secret",
    ["CHANGE-THIS-AUDIT-SECRET-IN-PRODUCTION", "default-audit-secret-CHANGE-IN-PRODUCTION"],
)
def test_placeholder_secret_rejected(secret):
    with pytest.raises(ConfigurationError) as exc_info:
        _hash(secret=secret)
    assert exc_info.value.code == ErrorCode.CFG_SECRET_WEAK


def test_non_json_details_rejected():
    with pytest.raises(ValidationError):
        _hash(details={"when": {1, 2}})


def test_nan_details_rejected():
    with pytest.raises(ValidationError):
        _hash(details={"score": float("nan")})


def test_hashes_equal_is_exact():
    digest = _hash()
    assert hashes_equal(digest, digest)
    assert not hashes_equal(digest, digest[:-1] + ("0" if digest[-1] != "0" else "1"))
