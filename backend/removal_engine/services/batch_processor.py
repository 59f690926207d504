import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from removal_engine.exceptions import PersistenceError
from removal_engine.models.exposure import Exposure
from removal_engine.models.removal_request import RemovalRequest, RemovalStatus
from removal_engine.services.broker_intelligence import BrokerIntelligenceService
from removal_engine.services.broker_rate_limiter import BrokerRateLimiter
from removal_engine.services.removal_executor import ItemOutcome, ItemResult, RemovalExecutor
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

# How many candidates beyond the batch size to consider when ranking brokers
CANDIDATE_POOL_FACTOR = 4
MAX_REPORTED_ERRORS = 20


@dataclass
class BatchResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    manual: int = 0
    rate_limited: int = 0
    deferred: int = 0
    persistence_errors: int = 0
    time_boxed: bool = False
    per_broker: dict[str, dict[str, int]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def record(self, item: ItemResult) -> None:
        counts = self.per_broker.setdefault(
            item.broker_key, {"sent": 0, "failed": 0, "manual": 0, "skipped": 0}
        )
        if item.processed:
            self.processed += 1

        if item.outcome == ItemOutcome.SUBMITTED:
            self.successful += 1
            counts["sent"] += 1
        elif item.outcome == ItemOutcome.FAILED:
            self.failed += 1
            counts["failed"] += 1
        elif item.outcome == ItemOutcome.MANUAL:
            self.manual += 1
            counts["manual"] += 1
        else:
            self.skipped += 1
            counts["skipped"] += 1
            if item.outcome == ItemOutcome.RATE_LIMITED:
                self.rate_limited += 1
            elif item.outcome == ItemOutcome.DEFERRED:
                self.deferred += 1

    def record_error(self, request_id, error: Exception) -> None:
        self.persistence_errors += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(f"{request_id}: {error}")

    def to_dict(self) -> dict:
        return asdict(self)


class DeadlineGuard:
    """Cooperative time box checked between items, never mid-item."""

    def __init__(self, deadline: datetime, clock: Clock):
        self.deadline = deadline
        self.clock = clock
        self._items = 0
        self._elapsed = timedelta(0)
        self._started: datetime | None = None

    def start_item(self) -> bool:
        """False when the deadline has passed or the next item would likely overrun it."""
        now = self.clock()
        if now >= self.deadline:
            return False
        if self._items and now + self._elapsed / self._items > self.deadline:
            return False
        self._started = now
        return True

    def finish_item(self) -> None:
        if self._started is not None:
            self._elapsed += self.clock() - self._started
            self._items += 1
            self._started = None


class BatchProcessor:
    def __init__(
        self,
        db: Session,
        executor: RemovalExecutor,
        rate_limiter: BrokerRateLimiter,
        intelligence: BrokerIntelligenceService,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.intelligence = intelligence
        self.clock = clock

    def select_candidates(self, max_batch_size: int) -> list[RemovalRequest]:
        """Oldest PENDING requests, skipping brokers already at today's cap.

        When more candidates exist than fit in the batch, higher-priority
        brokers keep their items; the chosen items are still returned
        oldest-first.
        """
        if max_batch_size <= 0:
            return []

        query = (
            self.db.query(RemovalRequest)
            .join(Exposure, RemovalRequest.exposure_id == Exposure.id)
            .options(joinedload(RemovalRequest.exposure))
            .filter(RemovalRequest.status == RemovalStatus.PENDING)
        )
        capped = self.rate_limiter.brokers_at_cap(self.clock())
        if capped:
            query = query.filter(func.upper(Exposure.source).notin_(capped))

        pool = (
            query.order_by(RemovalRequest.created_at.asc(), RemovalRequest.id.asc())
            .limit(max_batch_size * CANDIDATE_POOL_FACTOR)
            .all()
        )
        if len(pool) <= max_batch_size:
            return pool

        priorities = self.intelligence.get_smart_priorities(
            sorted({r.exposure.source.upper() for r in pool})
        )
        ranked = sorted(
            enumerate(pool),
            key=lambda pair: (-priorities.get(pair[1].exposure.source.upper(), 50), pair[0]),
        )
        chosen = sorted(index for index, _ in ranked[:max_batch_size])
        return [pool[index] for index in chosen]

    def process_pending(self, max_batch_size: int, deadline: datetime) -> BatchResult:
        result = BatchResult()
        candidates = self.select_candidates(max_batch_size)
        guard = DeadlineGuard(deadline, self.clock)
        logger.info("Processing %d pending removals", len(candidates))

        for request in candidates:
            if not guard.start_item():
                result.time_boxed = True
                break

            request_id = request.id
            try:
                item = self.executor.execute(request)
            except (PersistenceError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.error("Failed to persist removal %s: %s", request_id, exc)
                result.record_error(request_id, exc)
            else:
                result.record(item)
            guard.finish_item()

        if result.time_boxed:
            logger.info("Batch time-boxed after %d items", result.processed)
        logger.info(
            "Batch complete: %d processed, %d sent, %d failed, %d manual, %d skipped",
            result.processed,
            result.successful,
            result.failed,
            result.manual,
            result.skipped,
        )
        return result
