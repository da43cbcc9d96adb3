"""Prometheus counters for the audit chain, scraped from /metrics."""

from __future__ import annotations

from prometheus_client import Counter

CHAIN_APPENDS = Counter(
    "auditchain_appends_total",
    "Audit entries successfully appended to the chain",
)
CHAIN_APPEND_FAILURES = Counter(
    "auditchain_append_failures_total",
    "Append attempts that did not persist an entry",
    ["reason"],
)
VERIFICATION_RUNS = Counter(
    "auditchain_verification_runs_total",
    "Completed verification passes by outcome",
    ["status"],
)
CHAIN_BREAKS = Counter(
    "auditchain_breaks_detected_total",
    "Chain breaks reported by the verifier",
    ["reason"],
)
KEY_ROTATIONS = Counter(
    "auditchain_key_rotations_total",
    "New audit key versions registered",
)
