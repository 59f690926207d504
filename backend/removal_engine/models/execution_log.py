import enum
import uuid

from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class ExecutionStatus(str, enum.Enum):
    """Outcome of a scheduled job run"""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    PARTIAL = "PARTIAL"


class ExecutionLog(Base):
    __tablename__ = "execution_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_name = Column(String, nullable=False, index=True)

    status = Column(
        SQLEnum(ExecutionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    duration_ms = Column(Integer, nullable=True)
    message = Column(String, nullable=True)  # Human-readable summary
    details = Column(Text, nullable=True)  # Structured metadata (JSON string)

    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
