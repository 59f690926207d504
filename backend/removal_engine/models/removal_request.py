import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class RemovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    IN_PROGRESS = "IN_PROGRESS"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    COMPLETED = "COMPLETED"
    REQUIRES_MANUAL = "REQUIRES_MANUAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class RemovalMethod(str, enum.Enum):
    AUTO_EMAIL = "AUTO_EMAIL"
    AUTO_FORM = "AUTO_FORM"
    MANUAL_GUIDE = "MANUAL_GUIDE"


class RemovalRequest(Base):
    __tablename__ = "removal_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Foreign keys
    user_id = Column(Uuid, nullable=False, index=True)
    exposure_id = Column(Uuid, ForeignKey("exposures.id"), nullable=False, unique=True)

    # Request details
    status = Column(Enum(RemovalStatus), default=RemovalStatus.PENDING, nullable=False, index=True)
    method = Column(Enum(RemovalMethod), nullable=True)
    requester_email = Column(String, nullable=True)

    # Channel supplied by an operator when the directory has none
    override_privacy_email = Column(String, nullable=True)
    override_opt_out_url = Column(String, nullable=True)

    # Tracking
    submitted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_verified_at = Column(DateTime, nullable=True)
    verification_count = Column(Integer, default=0, nullable=False)
    verify_after = Column(DateTime, nullable=True, index=True)

    # Retry bookkeeping
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    # Proof of removal
    before_screenshot = Column(String, nullable=True)
    before_screenshot_at = Column(DateTime, nullable=True)
    after_screenshot = Column(String, nullable=True)
    after_screenshot_at = Column(DateTime, nullable=True)
    form_screenshot = Column(String, nullable=True)
    form_screenshot_at = Column(DateTime, nullable=True)

    # Audit trail, appended to by the system
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    exposure = relationship("Exposure", back_populates="removal_request")

    def append_note(self, line: str) -> None:
        self.notes = f"{self.notes}\n{line}" if self.notes else line
