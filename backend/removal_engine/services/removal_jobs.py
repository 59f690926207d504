"""
Scheduled job entry points.

Each run is ``run_*(db, deadline)``: acquire the job lock, do time-boxed work,
release the lock and write exactly one execution log entry, whatever happens.
The HTTP trigger and the Celery beat task both call these.
"""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.models.execution_log import ExecutionStatus
from removal_engine.models.removal_request import RemovalRequest, RemovalStatus
from removal_engine.services.batch_processor import BatchProcessor
from removal_engine.services.broker_directory import BrokerDirectory, get_broker_directory
from removal_engine.services.broker_intelligence import BrokerIntelligenceService
from removal_engine.services.broker_rate_limiter import BrokerRateLimiter
from removal_engine.services.email_gate import EmailDeliveryGate
from removal_engine.services.email_transport import SmtpTransport
from removal_engine.services.execution_log_service import ExecutionLogService
from removal_engine.services.job_lock import (
    AUTO_VERIFY_REMOVALS,
    CLEANUP_EXECUTION_LOGS,
    PROCESS_REMOVALS,
    JobLockCoordinator,
)
from removal_engine.services.rate_limiter import rate_limiter
from removal_engine.services.removal_executor import RemovalExecutor
from removal_engine.services.removal_sender import EmailRemovalSender, RemovalSender
from removal_engine.services.removal_state_machine import RemovalStateMachine
from removal_engine.services.retry_engine import RetryEngine
from removal_engine.services.retry_policy import RetryPolicy
from removal_engine.services.verification_service import VerificationService
from removal_engine.utils.clock import Clock, compute_deadline, utc_now

logger = logging.getLogger(__name__)


@dataclass
class JobRunResult:
    job_name: str
    status: ExecutionStatus
    message: str
    duration_ms: int = 0
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def default_sender(db: Session, clock: Clock = utc_now) -> RemovalSender:
    gate = EmailDeliveryGate(db, SmtpTransport(), limiter=rate_limiter, clock=clock)
    return EmailRemovalSender(gate, clock=clock)


def default_deadline(started_at: datetime) -> datetime:
    return compute_deadline(
        started_at, settings.job_max_duration_seconds, settings.job_safety_buffer_seconds
    )


def _run_locked(
    db: Session,
    job_name: str,
    clock: Clock,
    deadline: datetime | None,
    work: Callable[[datetime], tuple[ExecutionStatus, str, dict]],
) -> JobRunResult:
    started = clock()
    deadline = deadline or default_deadline(started)
    locks = JobLockCoordinator(db, clock)
    logs = ExecutionLogService(db, clock)

    lock = locks.acquire(job_name)
    if not lock.acquired:
        logger.info("Skipping %s: %s", job_name, lock.reason)
        result = JobRunResult(job_name, ExecutionStatus.SKIPPED, f"Skipped: {lock.reason}")
        logs.log_execution(job_name, result.status, 0, result.message, {"reason": lock.reason})
        return result

    logger.info("Starting %s (deadline %s)", job_name, deadline.isoformat())
    result = JobRunResult(job_name, ExecutionStatus.FAILED, "Run aborted")
    try:
        status, message, details = work(deadline)
        result.status, result.message, result.details = status, message, details
        return result
    except Exception as exc:
        db.rollback()
        result.message = f"Run failed: {exc}"
        result.details = {"error": str(exc), "error_type": exc.__class__.__name__}
        logger.exception("%s failed", job_name)
        raise
    finally:
        try:
            locks.release(job_name, lock.holder_token)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Could not release lock for %s, lease will expire: %s", job_name, exc)
        result.duration_ms = int((clock() - started).total_seconds() * 1000)
        logs.log_execution(
            job_name, result.status, result.duration_ms, result.message, result.details
        )
        logger.info("%s finished: %s (%s)", job_name, result.status.value, result.message)


def run_process_removals(
    db: Session,
    deadline: datetime | None = None,
    *,
    sender: RemovalSender | None = None,
    directory: BrokerDirectory | None = None,
    clock: Clock = utc_now,
    max_batch_size: int | None = None,
    retry_batch_size: int | None = None,
) -> JobRunResult:
    """Batch pass over PENDING requests followed by a retry pass over FAILED ones."""

    def work(run_deadline: datetime) -> tuple[ExecutionStatus, str, dict]:
        directory_ = directory or get_broker_directory()
        state_machine = RemovalStateMachine(db, clock=clock, directory=directory_)
        intelligence = BrokerIntelligenceService(db, clock=clock)
        limiter = BrokerRateLimiter(db, clock=clock)
        policy = RetryPolicy.from_settings()
        executor = RemovalExecutor(
            db,
            sender or default_sender(db, clock),
            directory_,
            limiter,
            intelligence,
            state_machine,
            policy,
            clock=clock,
        )

        predictions = intelligence.analyze_patterns_and_predict()
        multiplier = intelligence.batch_size_multiplier(predictions)
        batch_size = max_batch_size if max_batch_size is not None else settings.process_batch_size
        effective_batch = max(int(batch_size * multiplier), 1) if batch_size > 0 else 0
        if multiplier < 1.0:
            logger.warning(
                "Critical anomaly detected, batch size reduced from %d to %d",
                batch_size,
                effective_batch,
            )

        batch = BatchProcessor(db, executor, limiter, intelligence, clock=clock).process_pending(
            effective_batch, run_deadline
        )

        retry = None
        if not batch.time_boxed:
            retry = RetryEngine(db, executor, state_machine, policy, clock=clock).retry_failed(
                retry_batch_size if retry_batch_size is not None else settings.retry_batch_size,
                run_deadline,
            )

        time_boxed = batch.time_boxed or (retry is not None and retry.time_boxed)
        errors = batch.persistence_errors + (retry.persistence_errors if retry else 0)
        status = ExecutionStatus.PARTIAL if time_boxed or errors else ExecutionStatus.SUCCESS

        message = (
            f"Processed {batch.processed}: {batch.successful} sent, {batch.failed} failed, "
            f"{batch.manual} manual, {batch.skipped} skipped"
        )
        if retry is not None:
            message += f"; retried {retry.retried}, {retry.escalated} escalated"
        if time_boxed:
            message += " (time-boxed)"

        details = {
            "batch": batch.to_dict(),
            "retry": retry.to_dict() if retry else None,
            "batch_size": effective_batch,
            "batch_size_multiplier": multiplier,
            "predictions": [p.to_dict() for p in predictions],
            "anomalies": [p.segment for p in predictions if p.type == "ANOMALY"],
            "automation": get_automation_stats(db),
        }
        return status, message, details

    return _run_locked(db, PROCESS_REMOVALS, clock, deadline, work)


def run_auto_verify_removals(
    db: Session,
    deadline: datetime | None = None,
    *,
    directory: BrokerDirectory | None = None,
    clock: Clock = utc_now,
    max_batch_size: int | None = None,
) -> JobRunResult:
    def work(run_deadline: datetime) -> tuple[ExecutionStatus, str, dict]:
        state_machine = RemovalStateMachine(db, clock=clock, directory=directory)
        intelligence = BrokerIntelligenceService(db, clock=clock)
        verified = VerificationService(db, state_machine, intelligence, clock=clock).auto_verify(
            max_batch_size if max_batch_size is not None else settings.verify_batch_size,
            run_deadline,
        )
        status = (
            ExecutionStatus.PARTIAL
            if verified.time_boxed or verified.persistence_errors
            else ExecutionStatus.SUCCESS
        )
        message = f"Verified {verified.verified}, {verified.waiting} waiting on slow brokers"
        return status, message, verified.to_dict()

    return _run_locked(db, AUTO_VERIFY_REMOVALS, clock, deadline, work)


def run_cleanup_execution_logs(
    db: Session, deadline: datetime | None = None, *, clock: Clock = utc_now
) -> JobRunResult:
    def work(run_deadline: datetime) -> tuple[ExecutionStatus, str, dict]:
        deleted = ExecutionLogService(db, clock).cleanup_old_logs()
        return ExecutionStatus.SUCCESS, f"Deleted {deleted} old execution logs", {"deleted": deleted}

    return _run_locked(db, CLEANUP_EXECUTION_LOGS, clock, deadline, work)


def get_automation_stats(db: Session) -> dict:
    """Request totals by status and the share that went out without an operator."""
    rows = (
        db.query(RemovalRequest.status, func.count(RemovalRequest.id))
        .group_by(RemovalRequest.status)
        .all()
    )
    by_status = {status.value: count for status, count in rows}

    automated = by_status.get(RemovalStatus.SUBMITTED.value, 0) + by_status.get(
        RemovalStatus.COMPLETED.value, 0
    )
    manual = by_status.get(RemovalStatus.REQUIRES_MANUAL.value, 0)
    decided = automated + manual
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "automated": automated,
        "manual": manual,
        "pending": by_status.get(RemovalStatus.PENDING.value, 0),
        "automation_rate": round(automated / decided * 100, 1) if decided else 0.0,
    }
