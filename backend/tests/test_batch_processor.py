"""Tests for the time-boxed batch pass over PENDING removals"""

import uuid
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.orm import Session

from removal_engine.exceptions import PersistenceError
from removal_engine.models.exposure import ExposureStatus
from removal_engine.models.removal_attempt import RemovalAttempt
from removal_engine.models.removal_request import RemovalMethod, RemovalRequest, RemovalStatus
from removal_engine.models.support_ticket import SupportTicket
from removal_engine.services.batch_processor import BatchProcessor, DeadlineGuard
from removal_engine.services.removal_sender import SendOutcome, SendResult


def make_processor(db: Session, executor, clock) -> BatchProcessor:
    return BatchProcessor(db, executor, executor.rate_limiter, executor.intelligence, clock=clock)


def statuses(db: Session) -> dict[RemovalStatus, int]:
    counts: dict[RemovalStatus, int] = {}
    for request in db.query(RemovalRequest).all():
        counts[request.status] = counts.get(request.status, 0) + 1
    return counts


class TestDeadlineGuard:
    def test_refuses_once_deadline_passed(self, clock):
        guard = DeadlineGuard(clock() + timedelta(minutes=1), clock)

        assert guard.start_item() is True
        clock.advance(minutes=1)
        guard.finish_item()

        assert guard.start_item() is False

    def test_refuses_when_next_item_would_overrun(self, clock):
        guard = DeadlineGuard(clock() + timedelta(minutes=25), clock)

        assert guard.start_item() is True
        clock.advance(minutes=15)
        guard.finish_item()

        # 15 + 15 average > 25
        assert guard.start_item() is False


class TestProcessPending:
    def test_daily_cap_and_spacing_for_one_broker(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        for _ in range(30):
            make_request(source="WHITEPAGES")
        sender = make_sender(send_duration=timedelta(minutes=15))
        executor = build_executor(sender, daily_cap=25, spacing_minutes=15)

        result = make_processor(db, executor, clock).process_pending(150, clock() + timedelta(days=1))

        assert result.processed == 25
        assert result.successful == 25
        assert result.rate_limited == 5
        assert result.time_boxed is False
        assert result.per_broker["WHITEPAGES"]["sent"] == 25
        assert len(sender.calls) == 25
        assert statuses(db) == {RemovalStatus.SUBMITTED: 25, RemovalStatus.PENDING: 5}
        assert executor.rate_limiter.sent_today("WHITEPAGES") == 25

    def test_submitted_requests_are_fully_stamped(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO")
        executor = build_executor(make_sender())

        make_processor(db, executor, clock).process_pending(10, clock() + timedelta(hours=1))

        db.refresh(request)
        assert request.status == RemovalStatus.SUBMITTED
        assert request.method == RemovalMethod.AUTO_EMAIL
        assert request.submitted_at == clock()
        assert request.verify_after == clock() + timedelta(days=3)
        assert request.exposure.status == ExposureStatus.REMOVAL_IN_PROGRESS
        assert "Sent to Spokeo via email" in request.notes
        attempt = db.query(RemovalAttempt).one()
        assert attempt.succeeded is True

    def test_second_run_is_a_noop(self, db: Session, clock, make_request, make_sender, build_executor):
        for _ in range(3):
            make_request(source="WHITEPAGES")
        sender = make_sender()
        executor = build_executor(sender, daily_cap=2, spacing_minutes=0)
        processor = make_processor(db, executor, clock)
        deadline = clock() + timedelta(hours=1)

        first = processor.process_pending(150, deadline)
        second = processor.process_pending(150, deadline)

        assert first.successful == 2
        assert second.processed == 0
        assert len(sender.calls) == 2

    def test_stops_at_deadline_between_items(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        for source in ("SPOKEO", "WHITEPAGES", "INTELIUS", "PEOPLEFINDER"):
            make_request(source=source)
        sender = make_sender(send_duration=timedelta(minutes=15))
        executor = build_executor(sender)

        result = make_processor(db, executor, clock).process_pending(
            150, clock() + timedelta(minutes=40)
        )

        assert result.processed == 2
        assert result.time_boxed is True
        assert statuses(db) == {RemovalStatus.SUBMITTED: 2, RemovalStatus.PENDING: 2}

    def test_expired_deadline_does_nothing(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="SPOKEO")
        sender = make_sender()

        result = make_processor(db, build_executor(sender), clock).process_pending(150, clock())

        assert result.processed == 0
        assert result.time_boxed is True
        assert sender.calls == []

    def test_broker_without_channel_goes_to_manual(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="ACXIOM")
        sender = make_sender()

        result = make_processor(db, build_executor(sender), clock).process_pending(
            150, clock() + timedelta(hours=1)
        )

        db.refresh(request)
        assert result.manual == 1
        assert sender.calls == []
        assert request.status == RemovalStatus.REQUIRES_MANUAL
        assert request.method == RemovalMethod.MANUAL_GUIDE
        ticket = db.query(SupportTicket).one()
        assert ticket.category == "no_channel"
        assert ticket.subject == "Manual removal needed: Acxiom"

    def test_whitelisted_exposure_is_skipped(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO", exposure_status=ExposureStatus.WHITELISTED)
        sender = make_sender()

        result = make_processor(db, build_executor(sender), clock).process_pending(
            150, clock() + timedelta(hours=1)
        )

        db.refresh(request)
        assert result.skipped == 1
        assert result.processed == 1
        assert sender.calls == []
        assert request.status == RemovalStatus.SKIPPED
        assert request.exposure.status == ExposureStatus.WHITELISTED

    def test_failures_stay_pending_then_fail_with_backoff(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO")
        sender = make_sender(default=SendResult(SendOutcome.FAILED, error="smtp timeout"))
        executor = build_executor(sender, spacing_minutes=15)
        processor = make_processor(db, executor, clock)

        first = processor.process_pending(150, clock() + timedelta(hours=1))
        db.refresh(request)
        assert first.failed == 1
        assert request.status == RemovalStatus.PENDING
        assert request.attempts == 1
        assert request.last_error == "smtp timeout"
        assert "Attempt 1 failed: smtp timeout" in request.notes

        clock.advance(minutes=20)
        processor.process_pending(150, clock() + timedelta(hours=1))
        db.refresh(request)
        assert request.status == RemovalStatus.FAILED
        assert request.attempts == 2
        # MEDIUM risk: 60 * 2^1 * 1.5 minutes
        assert request.next_retry_at == clock() + timedelta(minutes=180)
        assert request.exposure.status == ExposureStatus.ACTIVE

    def test_exception_in_sender_is_a_failed_attempt(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        request = make_request(source="SPOKEO")
        sender = make_sender(outcomes=[RuntimeError("connection reset")])

        result = make_processor(db, build_executor(sender), clock).process_pending(
            150, clock() + timedelta(hours=1)
        )

        db.refresh(request)
        assert result.failed == 1
        assert request.attempts == 1
        assert request.last_error == "connection reset"

    def test_deferred_send_gives_back_the_broker_slot(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="WHITEPAGES", age_minutes=90)
        make_request(source="WHITEPAGES", age_minutes=60)
        sender = make_sender(outcomes=[SendResult(SendOutcome.DEFERRED, error="daily email quota")])
        executor = build_executor(sender, spacing_minutes=15)

        result = make_processor(db, executor, clock).process_pending(
            150, clock() + timedelta(hours=1)
        )

        assert result.deferred == 1
        assert result.rate_limited == 0
        assert result.successful == 1
        assert len(sender.calls) == 2
        assert executor.rate_limiter.sent_today("WHITEPAGES") == 1
        assert statuses(db) == {RemovalStatus.PENDING: 1, RemovalStatus.SUBMITTED: 1}

    def test_manual_handoff_after_reservation_gives_back_the_slot(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="INTELIUS")
        sender = make_sender(
            default=SendResult(SendOutcome.NEEDS_MANUAL, error="privacy@intelius.com is suppressed")
        )
        executor = build_executor(sender)

        result = make_processor(db, executor, clock).process_pending(
            150, clock() + timedelta(hours=1)
        )

        assert result.manual == 1
        assert statuses(db) == {RemovalStatus.REQUIRES_MANUAL: 1}
        assert executor.rate_limiter.sent_today("INTELIUS") == 0

    def test_persistence_error_is_counted_and_batch_continues(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="SPOKEO", age_minutes=90)
        make_request(source="WHITEPAGES", age_minutes=60)
        executor = build_executor(make_sender())
        real_execute = executor.execute
        calls = []

        def flaky_execute(request):
            calls.append(request.id)
            if len(calls) == 1:
                raise PersistenceError("database is locked")
            return real_execute(request)

        with patch.object(executor, "execute", side_effect=flaky_execute):
            result = make_processor(db, executor, clock).process_pending(
                150, clock() + timedelta(hours=1)
            )

        assert result.persistence_errors == 1
        assert result.successful == 1
        assert "database is locked" in result.errors[0]
        assert statuses(db) == {RemovalStatus.PENDING: 1, RemovalStatus.SUBMITTED: 1}


class TestSelectCandidates:
    def test_oldest_first(self, db: Session, clock, make_request, make_sender, build_executor):
        newer = make_request(source="SPOKEO", age_minutes=10)
        older = make_request(source="WHITEPAGES", age_minutes=120)
        executor = build_executor(make_sender())

        candidates = make_processor(db, executor, clock).select_candidates(10)

        assert [c.id for c in candidates] == [older.id, newer.id]

    def test_capped_brokers_are_excluded(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="SPOKEO")
        other = make_request(source="WHITEPAGES")
        executor = build_executor(make_sender(), daily_cap=1)
        executor.rate_limiter.try_reserve("SPOKEO")

        candidates = make_processor(db, executor, clock).select_candidates(10)

        assert [c.id for c in candidates] == [other.id]

    def test_capped_broker_is_excluded_whatever_the_source_case(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="spokeo", age_minutes=120)
        make_request(source="Spokeo", age_minutes=90)
        other = make_request(source="WHITEPAGES")
        executor = build_executor(make_sender(), daily_cap=1)
        executor.rate_limiter.try_reserve("spokeo")

        candidates = make_processor(db, executor, clock).select_candidates(10)

        assert [c.id for c in candidates] == [other.id]

    def test_priority_decides_when_pool_exceeds_batch(
        self, db: Session, clock, make_request, make_sender, build_executor
    ):
        make_request(source="RADARIS", age_minutes=120)
        good = make_request(source="SPOKEO", age_minutes=10)
        for broker, succeeded in (("RADARIS", False), ("SPOKEO", True)):
            for _ in range(10):
                db.add(
                    RemovalAttempt(
                        removal_request_id=uuid.uuid4(),
                        broker_key=broker,
                        succeeded=succeeded,
                        created_at=clock() - timedelta(hours=1),
                    )
                )
        db.commit()
        executor = build_executor(make_sender())

        candidates = make_processor(db, executor, clock).select_candidates(1)

        assert [c.id for c in candidates] == [good.id]
