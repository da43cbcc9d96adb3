"""
Keyed hashing for audit chain entries.

Every entry hash is HMAC-SHA256 over a canonical message built from the
previous entry's hash and the entry's own fields. The writer and the
verifier both go through compute_hash(); any second implementation would
drift and report phantom tampering.

Canonical message
-----------------
A compact JSON array, in this fixed order:

    [previous_hash, actor_id, action, resource_type, resource_id,
     details, timestamp]

JSON string escaping makes the encoding injective, so no combination of
field values can collide with another (a "|" inside an action cannot shift
a field boundary the way plain delimiter joining would). ``details`` is
serialized with sorted keys at every nesting level, and ``timestamp`` is
normalised to UTC with microsecond precision and a ``Z`` suffix.

The field order and formatting must never change once entries have been
written: doing so silently invalidates every stored hash.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from auditchain.config.settings import PLACEHOLDER_SECRETS
from auditchain.core.errors import ConfigurationError, ErrorCode, ValidationError


def _check_secret(secret: str | None) -> bytes:
    if secret is None or not secret.strip():
        raise ConfigurationError(
            "Audit secret is not provisioned; refusing to hash",
            code=ErrorCode.CFG_SECRET_MISSING,
        )
    if secret.strip() in PLACEHOLDER_SECRETS:
        raise ConfigurationError(
            "Audit secret is a known placeholder; rotate the key before writing",
            code=ErrorCode.CFG_SECRET_WEAK,
        )
    return secret.encode("utf-8")


def _reject_non_finite(value: Any) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("details may not contain NaN or Infinity")
    if isinstance(value, Mapping):
        for item in value.values():
            _reject_non_finite(item)
    elif isinstance(value, list | tuple):
        for item in value:
            _reject_non_finite(item)


def canonical_details(details: Mapping[str, Any] | None) -> str:
    """
    Serialize details deterministically: sorted keys, no whitespace.

    Two maps holding the same pairs in different insertion order produce
    the same string.
    """
    payload = dict(details or {})
    _reject_non_finite(payload)
    try:
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )
    except TypeError as exc:
        raise ValidationError(
            "details must contain only JSON values (str, int, float, bool, null, list, map)",
            detail={"reason": str(exc)},
        ) from exc


def canonical_timestamp(timestamp: datetime) -> str:
    """Render a timestamp as UTC ISO-8601 with microseconds, e.g. 2025-01-02T03:04:05.000006Z."""
    if timestamp.tzinfo is None:
        # SQLite returns naive datetimes for timezone-aware columns.
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_message(
    previous_hash: str,
    actor_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None,
    details: Mapping[str, Any] | None,
    timestamp: datetime,
) -> bytes:
    """Build the exact bytes that get keyed-hashed for one entry."""
    fields = [
        previous_hash,
        actor_id,
        action,
        resource_type,
        resource_id,
        # Embedded as a parsed value so the array stays one JSON document.
        json.loads(canonical_details(details)),
        canonical_timestamp(timestamp),
    ]
    return json.dumps(
        fields,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    ).encode("ascii")


def compute_hash(
    previous_hash: str,
    actor_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None,
    details: Mapping[str, Any] | None,
    timestamp: datetime,
    secret: str | None,
) -> str:
    """
    Compute the chain hash for one entry.

    Returns a 64-character lowercase hex HMAC-SHA256 digest.

    Raises:
        ConfigurationError: If ``secret`` is missing, blank or a placeholder.
        ValidationError: If ``details`` is not JSON-serializable.
    """
    key = _check_secret(secret)
    message = canonical_message(
        previous_hash,
        actor_id,
        action,
        resource_type,
        resource_id,
        details,
        timestamp,
    )
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def hashes_equal(a: str, b: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(a.encode("ascii", "replace"), b.encode("ascii", "replace"))
