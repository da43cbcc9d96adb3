"""
Security utilities: audit key generation and constant-time comparison.

Secrets are never logged.
"""

from __future__ import annotations

import secrets


def generate_audit_secret() -> str:
    """Return 64 characters of fresh URL-safe key material."""
    return secrets.token_urlsafe(48)


def safe_str_compare(a: str, b: str) -> bool:
    """Constant-time string comparison to prevent timing attacks."""
    return secrets.compare_digest(a.encode(), b.encode())


__all__ = [
    "generate_audit_secret",
    "safe_str_compare",
]
