"""
Email delivery gate.

Every outbound email passes through here: suppression list first, then the
daily volume quota, then the transport. Bounce and complaint events feed the
suppression list.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.exceptions import EmailTransportError
from removal_engine.models.email_suppression import (
    BounceType,
    EmailSuppression,
    SuppressionCategory,
    SuppressionReason,
)
from removal_engine.services.email_transport import EmailTransport
from removal_engine.services.rate_limiter import RateLimiter
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

DELIVERY_SENT = "sent"
DELIVERY_SUPPRESSED = "suppressed"
DELIVERY_QUOTA_EXCEEDED = "quota_exceeded"
DELIVERY_FAILED = "failed"


@dataclass
class DeliveryResult:
    status: str
    message_id: str | None = None
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.status == DELIVERY_SENT


def normalize_email(email: str) -> str:
    return email.strip().lower()


class EmailDeliveryGate:
    def __init__(
        self,
        db: Session,
        transport: EmailTransport,
        limiter: RateLimiter | None = None,
        clock: Clock = utc_now,
        daily_limit: int | None = None,
    ):
        self.db = db
        self.transport = transport
        self.limiter = limiter
        self.clock = clock
        self.daily_limit = daily_limit if daily_limit is not None else settings.daily_email_limit

    def is_suppressed(self, email: str) -> bool:
        record = self._get(normalize_email(email))
        return bool(record and record.suppressed)

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        *,
        reply_to: str | None = None,
    ) -> DeliveryResult:
        """Deliver one message unless the address is suppressed or the quota is spent.

        Suppression and quota are reported in the result, never raised.
        """
        address = normalize_email(to)
        if self.is_suppressed(address):
            logger.info("Skipping suppressed address %s", address)
            return DeliveryResult(status=DELIVERY_SUPPRESSED, error=f"{address} is suppressed")

        if self.limiter is not None:
            day = self.clock().date().isoformat()
            quota = self.limiter.check_limit(day, "email", self.daily_limit, 24 * 60 * 60)
            if not quota.allowed:
                logger.warning("Daily email quota of %d reached", self.daily_limit)
                return DeliveryResult(status=DELIVERY_QUOTA_EXCEEDED, error="daily email quota reached")

        try:
            message_id = self.transport.send(address, subject, body, reply_to=reply_to)
        except EmailTransportError as exc:
            return DeliveryResult(status=DELIVERY_FAILED, error=str(exc))

        return DeliveryResult(status=DELIVERY_SENT, message_id=message_id)

    # ------------------------------------------------------------------
    # Bounce and complaint ingestion
    # ------------------------------------------------------------------

    def record_bounce(
        self,
        email: str,
        bounce_type: BounceType,
        category: SuppressionCategory | None = None,
        broker_key: str | None = None,
    ) -> EmailSuppression:
        """Track a bounce; suppress on a permanent bounce or repeated transient ones."""
        now = self.clock()
        record = self._get_or_create(normalize_email(email))

        record.bounce_count = (record.bounce_count or 0) + 1
        record.bounce_history = [*(record.bounce_history or []), bounce_type.value]
        record.last_bounce_type = bounce_type.value
        record.first_bounced_at = record.first_bounced_at or now
        record.last_bounced_at = now
        if category:
            record.category = category.value
        if broker_key:
            record.broker_key = broker_key.upper()

        if not record.suppressed:
            if bounce_type == BounceType.PERMANENT:
                self._mark_suppressed(record, SuppressionReason.HARD_BOUNCE)
            elif bounce_type == BounceType.TRANSIENT:
                transient = record.bounce_history.count(BounceType.TRANSIENT.value)
                if transient >= settings.transient_bounce_suppress_threshold:
                    self._mark_suppressed(record, SuppressionReason.SOFT_BOUNCE_REPEATED)

        self.db.commit()
        return record

    def record_complaint(
        self, email: str, category: SuppressionCategory | None = None
    ) -> EmailSuppression:
        record = self._get_or_create(normalize_email(email))
        if category:
            record.category = category.value
        if not record.suppressed:
            self._mark_suppressed(record, SuppressionReason.COMPLAINT)
        self.db.commit()
        return record

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def suppress(
        self,
        email: str,
        reason: SuppressionReason = SuppressionReason.MANUAL,
        category: SuppressionCategory = SuppressionCategory.ADMIN,
    ) -> EmailSuppression:
        record = self._get_or_create(normalize_email(email))
        record.category = record.category or category.value
        self._mark_suppressed(record, reason)
        self.db.commit()
        return record

    def unsuppress(self, email: str) -> bool:
        """Lift a suppression. The bounce tally restarts from zero."""
        record = self._get(normalize_email(email))
        if not record or not record.suppressed:
            return False

        record.suppressed = False
        record.reason = None
        record.suppressed_at = None
        record.bounce_count = 0
        record.bounce_history = []
        self.db.commit()
        logger.info("Unsuppressed %s", record.email)
        return True

    def get_stats(self) -> dict:
        tracked = self.db.query(func.count(EmailSuppression.id)).scalar() or 0
        suppressed = (
            self.db.query(func.count(EmailSuppression.id))
            .filter(EmailSuppression.suppressed.is_(True))
            .scalar()
            or 0
        )

        def grouped(column) -> dict[str, int]:
            rows = (
                self.db.query(column, func.count(EmailSuppression.id))
                .filter(EmailSuppression.suppressed.is_(True))
                .group_by(column)
                .all()
            )
            return {(key or "unknown"): count for key, count in rows}

        return {
            "tracked": tracked,
            "suppressed": suppressed,
            "by_category": grouped(EmailSuppression.category),
            "by_reason": grouped(EmailSuppression.reason),
            "by_bounce_type": grouped(EmailSuppression.last_bounce_type),
        }

    def _mark_suppressed(self, record: EmailSuppression, reason: SuppressionReason) -> None:
        record.suppressed = True
        record.reason = reason.value
        record.suppressed_at = self.clock()
        logger.info("Suppressed %s (%s)", record.email, reason.value)

    def _get(self, address: str) -> EmailSuppression | None:
        return self.db.query(EmailSuppression).filter(EmailSuppression.email == address).first()

    def _get_or_create(self, address: str) -> EmailSuppression:
        record = self._get(address)
        if record:
            return record

        record = EmailSuppression(email=address, suppressed=False, bounce_count=0, bounce_history=[])
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            record = self._get(address)
        return record
