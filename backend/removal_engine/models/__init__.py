from removal_engine.models.alert import Alert
from removal_engine.models.email_suppression import EmailSuppression
from removal_engine.models.execution_log import ExecutionLog
from removal_engine.models.exposure import Exposure
from removal_engine.models.job_lock import JobLock
from removal_engine.models.rate_limit_window import RateLimitWindow
from removal_engine.models.removal_attempt import RemovalAttempt
from removal_engine.models.removal_request import RemovalRequest
from removal_engine.models.support_ticket import SupportTicket
from removal_engine.models.user_milestone import UserMilestone

__all__ = [
    "Alert",
    "EmailSuppression",
    "ExecutionLog",
    "Exposure",
    "JobLock",
    "RateLimitWindow",
    "RemovalAttempt",
    "RemovalRequest",
    "SupportTicket",
    "UserMilestone",
]
