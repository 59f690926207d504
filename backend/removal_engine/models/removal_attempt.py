import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now


class RemovalAttempt(Base):
    """One observed send outcome. Broker intelligence is derived from these rows."""

    __tablename__ = "removal_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    removal_request_id = Column(Uuid, nullable=False, index=True)
    broker_key = Column(String, nullable=False, index=True)
    data_type = Column(String, nullable=True)

    succeeded = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
