import logging
from uuid import UUID

from sqlalchemy.orm import Session

from removal_engine.models.alert import Alert, AlertType
from removal_engine.models.removal_request import RemovalRequest
from removal_engine.models.support_ticket import SupportTicket
from removal_engine.models.user_milestone import FIRST_REMOVAL, UserMilestone

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates alerts, support tickets and milestones inside the caller's transaction.

    Nothing here commits; the state machine commits these rows together with
    the status change that caused them.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_alert(
        self,
        user_id: UUID,
        alert_type: AlertType,
        title: str,
        message: str,
        removal_request_id: UUID | None = None,
    ) -> Alert:
        alert = Alert(
            user_id=user_id,
            alert_type=alert_type,
            title=title,
            message=message,
            removal_request_id=removal_request_id,
        )
        self.db.add(alert)
        return alert

    def create_support_ticket(
        self, request: RemovalRequest, category: str, subject: str, description: str | None = None
    ) -> SupportTicket:
        """Open a ticket for a request, reusing the open one if it already has one."""
        existing = (
            self.db.query(SupportTicket)
            .filter(
                SupportTicket.removal_request_id == request.id,
                SupportTicket.status == "OPEN",
            )
            .first()
        )
        if existing:
            existing.description = description or existing.description
            return existing

        ticket = SupportTicket(
            user_id=request.user_id,
            removal_request_id=request.id,
            category=category,
            subject=subject,
            description=description,
        )
        self.db.add(ticket)
        logger.info("Opened %s support ticket for removal %s", category, request.id)
        return ticket

    def check_and_fire_first_removal_milestone(self, request: RemovalRequest, source_name: str) -> bool:
        """Record the user's first completed removal. Returns True only the first time."""
        self.db.flush()
        existing = (
            self.db.query(UserMilestone)
            .filter(
                UserMilestone.user_id == request.user_id,
                UserMilestone.milestone == FIRST_REMOVAL,
            )
            .first()
        )
        if existing:
            return False

        self.db.add(
            UserMilestone(
                user_id=request.user_id,
                milestone=FIRST_REMOVAL,
                removal_request_id=request.id,
            )
        )
        self.create_alert(
            user_id=request.user_id,
            alert_type=AlertType.FIRST_REMOVAL,
            title="Your first removal is complete",
            message=f"{source_name} was the first broker to remove your data.",
            removal_request_id=request.id,
        )
        return True
