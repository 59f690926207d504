from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from removal_engine.models.email_suppression import (
    BounceType,
    SuppressionCategory,
    SuppressionReason,
)


class _EmailPayload(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)

    @field_validator("email")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class BounceEvent(_EmailPayload):
    bounce_type: BounceType = BounceType.UNDETERMINED
    category: SuppressionCategory | None = None
    broker_key: str | None = Field(None, max_length=100)


class ComplaintEvent(_EmailPayload):
    category: SuppressionCategory | None = None


class SuppressRequest(_EmailPayload):
    reason: SuppressionReason = SuppressionReason.MANUAL


class SuppressionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    suppressed: bool
    reason: str | None = None
    suppressed_at: datetime | None = None
    bounce_count: int
    last_bounce_type: str | None = None
    category: str | None = None


class SuppressionStats(BaseModel):
    tracked: int
    suppressed: int
    by_category: dict[str, int]
    by_reason: dict[str, int]
    by_bounce_type: dict[str, int]
