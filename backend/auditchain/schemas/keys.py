"""Key rotation schemas. Key material only ever flows in, never out."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, SecretStr


class RotateKeyRequest(BaseModel):
    secret: SecretStr | None = Field(
        default=None, description="New secret; generated server-side when omitted"
    )


class RotateKeyResponse(BaseModel):
    version: int


class KeyVersionOut(BaseModel):
    version: int
    created_at: datetime
    active: bool = False

    model_config = {"from_attributes": True}
