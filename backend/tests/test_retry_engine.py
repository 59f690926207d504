"""Tests for retrying FAILED removals and escalating exhausted ones"""

from datetime import timedelta

from sqlalchemy.orm import Session

from removal_engine.models.removal_request import RemovalStatus
from removal_engine.models.support_ticket import SupportTicket
from removal_engine.services.batch_processor import BatchProcessor
from removal_engine.services.removal_sender import SendOutcome, SendResult
from removal_engine.services.retry_engine import RetryEngine
from removal_engine.services.retry_policy import RetryPolicy

FAILING = SendResult(SendOutcome.FAILED, error="smtp timeout")


def make_engine(db: Session, executor, clock) -> RetryEngine:
    return RetryEngine(db, executor, executor.state_machine, executor.retry_policy, clock=clock)


class TestRetryPolicy:
    def test_backoff_doubles_and_is_capped(self):
        policy = RetryPolicy(base_minutes=60, max_minutes=300)

        assert policy.backoff(1, "LOW") == timedelta(minutes=60)
        assert policy.backoff(2, "LOW") == timedelta(minutes=120)
        assert policy.backoff(3, "LOW") == timedelta(minutes=240)
        assert policy.backoff(4, "LOW") == timedelta(minutes=300)

    def test_risky_brokers_wait_longer(self):
        policy = RetryPolicy(base_minutes=60)

        assert policy.backoff(1, "MEDIUM") == timedelta(minutes=90)
        assert policy.backoff(1, "HIGH") == timedelta(minutes=120)
        assert policy.backoff(1, "UNKNOWN") == timedelta(minutes=60)

    def test_thresholds(self):
        policy = RetryPolicy(max_attempts=3, failed_after_attempts=2)

        assert policy.should_mark_failed(1) is False
        assert policy.should_mark_failed(2) is True
        assert policy.is_exhausted(2) is False
        assert policy.is_exhausted(3) is True


class TestRetryFailed:
    def test_successful_retry_submits(self, db: Session, clock, make_request, make_sender, build_executor):
        request = make_request(
            source="SPOKEO", status=RemovalStatus.FAILED, attempts=2, last_error="smtp timeout"
        )
        executor = build_executor(make_sender())

        result = make_engine(db, executor, clock).retry_failed(50, clock() + timedelta(hours=1))

        db.refresh(request)
        assert result.retried == 1
        assert result.succeeded == 1
        assert request.status == RemovalStatus.SUBMITTED
        assert request.attempts == 0
        assert request.last_error is None
        assert "FAILED -> PENDING" in request.notes
        assert "PENDING -> SUBMITTED" in request.notes

    def test_backoff_window_is_respected(self, db: Session, clock, make_request, make_sender, build_executor):
        request = make_request(
            source="SPOKEO",
            status=RemovalStatus.FAILED,
            attempts=2,
            next_retry_at=clock() + timedelta(hours=1),
        )
        sender = make_sender()
        engine = make_engine(db, build_executor(sender), clock)

        assert engine.select_due(50) == []

        clock.advance(hours=1)
        assert [r.id for r in engine.select_due(50)] == [request.id]

    def test_attempt_ceiling_escalates_to_manual(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO")
        sender = make_sender(default=FAILING)
        executor = build_executor(sender, spacing_minutes=15)
        batch = BatchProcessor(db, executor, executor.rate_limiter, executor.intelligence, clock=clock)
        engine = make_engine(db, executor, clock)

        batch.process_pending(150, clock() + timedelta(hours=1))
        db.refresh(request)
        assert (request.status, request.attempts) == (RemovalStatus.PENDING, 1)

        clock.advance(minutes=20)
        batch.process_pending(150, clock() + timedelta(hours=1))
        db.refresh(request)
        assert (request.status, request.attempts) == (RemovalStatus.FAILED, 2)

        clock.advance(days=1)
        third = engine.retry_failed(50, clock() + timedelta(hours=1))
        db.refresh(request)
        assert third.still_failed == 1
        assert (request.status, request.attempts) == (RemovalStatus.FAILED, 3)

        clock.advance(days=1)
        fourth = engine.retry_failed(50, clock() + timedelta(hours=1))
        db.refresh(request)
        assert fourth.escalated == 1
        assert request.status == RemovalStatus.REQUIRES_MANUAL
        assert len(sender.calls) == 3
        ticket = db.query(SupportTicket).one()
        assert ticket.category == "attempts_exhausted"
        assert "Gave up after 3 failed attempts: smtp timeout" in ticket.description

    def test_rate_limited_retry_stays_failed(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO", status=RemovalStatus.FAILED, attempts=2)
        sender = make_sender()
        executor = build_executor(sender, daily_cap=1)
        executor.rate_limiter.try_reserve("SPOKEO")

        result = make_engine(db, executor, clock).retry_failed(50, clock() + timedelta(hours=1))

        db.refresh(request)
        assert result.skipped == 1
        assert result.retried == 0
        assert request.status == RemovalStatus.FAILED
        assert request.attempts == 2
        assert sender.calls == []

    def test_zero_batch_size(self, db: Session, clock, make_request, make_sender, build_executor):
        make_request(source="SPOKEO", status=RemovalStatus.FAILED, attempts=2)
        sender = make_sender()

        result = make_engine(db, build_executor(sender), clock).retry_failed(
            0, clock() + timedelta(hours=1)
        )

        assert result.retried == 0
        assert sender.calls == []
