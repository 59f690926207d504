import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Uuid

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class BounceType(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNDETERMINED = "undetermined"


class SuppressionReason(str, enum.Enum):
    HARD_BOUNCE = "hard_bounce"
    SOFT_BOUNCE_REPEATED = "soft_bounce_repeated"
    COMPLAINT = "complaint"
    MANUAL = "manual"


class SuppressionCategory(str, enum.Enum):
    CCPA_BROKER = "ccpa_broker"
    PLATFORM = "platform"
    DRIP = "drip"
    ADMIN = "admin"


class EmailSuppression(Base):
    __tablename__ = "email_suppressions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False, index=True)  # normalized

    suppressed = Column(Boolean, default=False, nullable=False)
    reason = Column(String, nullable=True)
    suppressed_at = Column(DateTime, nullable=True)

    bounce_count = Column(Integer, default=0, nullable=False)
    bounce_history = Column(JSON, default=list, nullable=False)  # bounce types, oldest first
    last_bounce_type = Column(String, nullable=True)
    category = Column(String, nullable=True)
    broker_key = Column(String, nullable=True)

    first_bounced_at = Column(DateTime, nullable=True)
    last_bounced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
