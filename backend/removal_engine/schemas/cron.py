from datetime import datetime

from pydantic import BaseModel


class JobRunResponse(BaseModel):
    job_name: str
    status: str
    message: str
    duration_ms: int
    details: dict


class JobHealth(BaseModel):
    job_name: str
    last_run: datetime | None = None
    last_status: str | None = None
    expected_interval_minutes: int
    is_overdue: bool
