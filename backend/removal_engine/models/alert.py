import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class AlertType(str, enum.Enum):
    REMOVAL_COMPLETED = "REMOVAL_COMPLETED"
    FIRST_REMOVAL = "FIRST_REMOVAL"
    REMOVAL_NEEDS_ATTENTION = "REMOVAL_NEEDS_ATTENTION"


class Alert(Base):
    """User-facing notification; delivered by the dashboard, not this service."""

    __tablename__ = "alerts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    removal_request_id = Column(Uuid, nullable=True, index=True)

    alert_type = Column(
        SQLEnum(AlertType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
