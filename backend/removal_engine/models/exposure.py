import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, String, Uuid
from sqlalchemy.orm import relationship

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class ExposureStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REMOVAL_PENDING = "REMOVAL_PENDING"
    REMOVAL_IN_PROGRESS = "REMOVAL_IN_PROGRESS"
    REMOVED = "REMOVED"
    MONITORING = "MONITORING"
    WHITELISTED = "WHITELISTED"


class Exposure(Base):
    """A user's data found at a broker. Written by the scanner; status is
    projected from the linked removal request."""

    __tablename__ = "exposures"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)

    source = Column(String, nullable=False, index=True)  # broker key, e.g. WHITEPAGES
    source_name = Column(String, nullable=False)
    source_url = Column(String, nullable=True)
    data_type = Column(String, nullable=False)
    severity = Column(String, default="MEDIUM", nullable=False)

    status = Column(Enum(ExposureStatus), default=ExposureStatus.ACTIVE, nullable=False)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    removal_request = relationship("RemovalRequest", back_populates="exposure", uselist=False)
