import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from removal_engine.config import settings
from removal_engine.exceptions import PersistenceError
from removal_engine.models.exposure import Exposure
from removal_engine.models.removal_request import RemovalRequest, RemovalStatus
from removal_engine.services.batch_processor import MAX_REPORTED_ERRORS, DeadlineGuard
from removal_engine.services.broker_intelligence import BrokerIntelligenceService
from removal_engine.services.removal_state_machine import RemovalStateMachine
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

VERIFIABLE_STATUSES = (RemovalStatus.SUBMITTED, RemovalStatus.IN_PROGRESS, RemovalStatus.ACKNOWLEDGED)


@dataclass
class VerifyResult:
    verified: int = 0
    waiting: int = 0
    persistence_errors: int = 0
    time_boxed: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class VerificationService:
    """Completes submitted removals once the broker's processing window has passed.

    Brokers with a poor success record get ``low_success_extra_verify_days``
    on top of their normal window before a request is marked COMPLETED.
    """

    def __init__(
        self,
        db: Session,
        state_machine: RemovalStateMachine,
        intelligence: BrokerIntelligenceService,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.state_machine = state_machine
        self.intelligence = intelligence
        self.clock = clock

    def auto_verify(self, max_batch_size: int, deadline: datetime) -> VerifyResult:
        result = VerifyResult()
        now = self.clock()
        ready = (
            self.db.query(RemovalRequest)
            .outerjoin(Exposure, RemovalRequest.exposure_id == Exposure.id)
            .filter(
                RemovalRequest.status.in_(VERIFIABLE_STATUSES),
                RemovalRequest.verify_after.isnot(None),
                RemovalRequest.verify_after <= now,
            )
        )
        held = self._extra_wait_filter(ready, now)
        if held is not None:
            result.waiting = ready.filter(held).count()
            ready = ready.filter(~held)

        due = (
            ready.options(joinedload(RemovalRequest.exposure))
            .order_by(RemovalRequest.verify_after.asc(), RemovalRequest.id.asc())
            .limit(max_batch_size)
            .all()
        )
        guard = DeadlineGuard(deadline, self.clock)

        for request in due:
            if not guard.start_item():
                result.time_boxed = True
                break

            request_id = request.id
            try:
                self._complete(request)
                result.verified += 1
            except (PersistenceError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.error("Failed to verify removal %s: %s", request_id, exc)
                result.persistence_errors += 1
                if len(result.errors) < MAX_REPORTED_ERRORS:
                    result.errors.append(f"{request_id}: {exc}")
            guard.finish_item()

        logger.info("Auto-verify complete: %d verified, %d waiting", result.verified, result.waiting)
        return result

    def _extra_wait_filter(self, ready, now: datetime):
        """Match due requests whose low-success broker still has them in the extra wait."""
        broker_key = func.upper(func.coalesce(Exposure.source, ""))
        sources = {row[0] for row in ready.with_entities(broker_key).distinct() if row[0]}
        slow = sorted(
            key for key in sources if self.intelligence.get_broker_intelligence(key).is_low_success
        )
        if not slow:
            return None
        extra = timedelta(days=settings.low_success_extra_verify_days)
        return and_(broker_key.in_(slow), RemovalRequest.verify_after > now - extra)

    def _complete(self, request: RemovalRequest) -> None:
        request.last_verified_at = self.clock()
        request.verification_count = (request.verification_count or 0) + 1
        self.state_machine.transition(
            request, RemovalStatus.COMPLETED, "Broker processing window elapsed"
        )
