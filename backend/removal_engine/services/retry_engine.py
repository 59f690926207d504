import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from removal_engine.exceptions import PersistenceError
from removal_engine.models.removal_request import RemovalRequest, RemovalStatus
from removal_engine.services.batch_processor import MAX_REPORTED_ERRORS, DeadlineGuard
from removal_engine.services.removal_executor import ItemOutcome, RemovalExecutor
from removal_engine.services.removal_state_machine import RemovalStateMachine
from removal_engine.services.retry_policy import RetryPolicy
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    retried: int = 0
    succeeded: int = 0
    still_failed: int = 0
    escalated: int = 0
    skipped: int = 0
    persistence_errors: int = 0
    time_boxed: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RetryEngine:
    """Second pass over FAILED requests whose backoff window has passed."""

    def __init__(
        self,
        db: Session,
        executor: RemovalExecutor,
        state_machine: RemovalStateMachine,
        retry_policy: RetryPolicy,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.executor = executor
        self.state_machine = state_machine
        self.retry_policy = retry_policy
        self.clock = clock

    def select_due(self, max_batch_size: int) -> list[RemovalRequest]:
        now = self.clock()
        return (
            self.db.query(RemovalRequest)
            .options(joinedload(RemovalRequest.exposure))
            .filter(
                RemovalRequest.status == RemovalStatus.FAILED,
                or_(RemovalRequest.next_retry_at.is_(None), RemovalRequest.next_retry_at <= now),
            )
            .order_by(RemovalRequest.created_at.asc(), RemovalRequest.id.asc())
            .limit(max_batch_size)
            .all()
        )

    def retry_failed(self, max_batch_size: int, deadline: datetime) -> RetryResult:
        result = RetryResult()
        if max_batch_size <= 0:
            return result

        due = self.select_due(max_batch_size)
        guard = DeadlineGuard(deadline, self.clock)
        logger.info("Retrying %d failed removals", len(due))

        for request in due:
            if not guard.start_item():
                result.time_boxed = True
                break

            request_id = request.id
            try:
                self._retry_one(request, result)
            except (PersistenceError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.error("Failed to persist retry of removal %s: %s", request_id, exc)
                result.persistence_errors += 1
                if len(result.errors) < MAX_REPORTED_ERRORS:
                    result.errors.append(f"{request_id}: {exc}")
            guard.finish_item()

        logger.info(
            "Retry complete: %d retried, %d succeeded, %d still failed, %d escalated",
            result.retried,
            result.succeeded,
            result.still_failed,
            result.escalated,
        )
        return result

    def _retry_one(self, request: RemovalRequest, result: RetryResult) -> None:
        if self.retry_policy.is_exhausted(request.attempts or 0):
            self.state_machine.route_to_manual(
                request,
                "attempts_exhausted",
                f"Gave up after {request.attempts} failed attempts: {request.last_error}",
            )
            result.escalated += 1
            return

        item = self.executor.execute(request)
        if item.outcome == ItemOutcome.SUBMITTED:
            result.retried += 1
            result.succeeded += 1
        elif item.outcome == ItemOutcome.FAILED:
            result.retried += 1
            result.still_failed += 1
        elif item.outcome == ItemOutcome.MANUAL:
            result.escalated += 1
        else:
            result.skipped += 1
