from sqlalchemy import Column, DateTime, String

from removal_engine.database import Base


class JobLock(Base):
    """Leased lock row, at most one per job name."""

    __tablename__ = "job_locks"

    job_name = Column(String, primary_key=True)
    holder_token = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    lease_expires_at = Column(DateTime, nullable=False, index=True)
