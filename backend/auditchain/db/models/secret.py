"""
Versioned HMAC key material for the audit chain.

Versions are created by rotation and never deleted or mutated: every
historical entry must stay verifiable with the key it was written under.
"""

from __future__ import annotations

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.db.base import Base, CreatedAtMixin


class SecretVersion(Base, CreatedAtMixin):
    """One key version. The highest version is the active signing key."""

    __tablename__ = "audit_secrets"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    secret: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<SecretVersion v{self.version}>"
