import uuid

from sqlalchemy import Column, DateTime, String, Text, Uuid

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class SupportTicket(Base):
    """Internal ticket for operators picking up removals automation could not finish."""

    __tablename__ = "support_tickets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    removal_request_id = Column(Uuid, nullable=False, index=True)

    category = Column(String, nullable=False)  # no_channel, suppressed, attempts_exhausted
    subject = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default="OPEN", nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
