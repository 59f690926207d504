import uuid

from sqlalchemy import Column, Date, DateTime, Integer, String, UniqueConstraint, Uuid

from removal_engine.database import Base


class RateLimitWindow(Base):
    """Sends to one broker within one UTC day."""

    __tablename__ = "rate_limit_windows"
    __table_args__ = (UniqueConstraint("broker_key", "day_bucket", name="uq_rate_window_broker_day"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    broker_key = Column(String, nullable=False, index=True)
    day_bucket = Column(Date, nullable=False)
    count_sent = Column(Integer, default=0, nullable=False)
    last_sent_at = Column(DateTime, nullable=True)
