import uuid

from sqlalchemy import Column, DateTime, String, UniqueConstraint, Uuid

from removal_engine.database import Base
from removal_engine.utils.clock import utc_now

FIRST_REMOVAL = "FIRST_REMOVAL"


class UserMilestone(Base):
    __tablename__ = "user_milestones"
    __table_args__ = (UniqueConstraint("user_id", "milestone", name="uq_user_milestone"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    milestone = Column(String, nullable=False)
    removal_request_id = Column(Uuid, nullable=True)

    achieved_at = Column(DateTime, default=utc_now, nullable=False)
