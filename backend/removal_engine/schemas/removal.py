import re
from datetime import datetime
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from removal_engine.models.removal_request import RemovalMethod, RemovalStatus

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RemovalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    exposure_id: UUID
    status: RemovalStatus
    method: RemovalMethod | None = None
    attempts: int
    last_error: str | None = None
    next_retry_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    verify_after: datetime | None = None
    last_verified_at: datetime | None = None
    verification_count: int
    override_privacy_email: str | None = None
    override_opt_out_url: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class CancelRemovalRequest(BaseModel):
    reason: str = Field(default="Cancelled by operator", max_length=500)


class ReactivateRemovalRequest(BaseModel):
    privacy_email: str | None = Field(None, max_length=320)
    opt_out_url: str | None = Field(None, max_length=2048)

    @field_validator("privacy_email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if not re.match(EMAIL_PATTERN, v):
            raise ValueError("Invalid email address")
        return v

    @field_validator("opt_out_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("Opt-out URL must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def require_channel(self):
        if not self.privacy_email and not self.opt_out_url:
            raise ValueError("Provide a privacy email or an opt-out URL")
        return self


class StatusOverrideRequest(BaseModel):
    status: RemovalStatus
    reason: Annotated[str, Field(min_length=3, max_length=500)]
