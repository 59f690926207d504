import json
import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.models.execution_log import ExecutionLog, ExecutionStatus
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

# Expected interval between runs, for health reporting
JOB_INTERVALS: dict[str, timedelta] = {
    "process-removals": timedelta(hours=2),
    "auto-verify-removals": timedelta(days=1),
    "cleanup-execution-logs": timedelta(days=1),
}

OVERDUE_GRACE = timedelta(hours=1)


class ExecutionLogService:
    """Service for writing and querying job execution logs"""

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    def log_execution(
        self,
        job_name: str,
        status: ExecutionStatus,
        duration_ms: int | None = None,
        message: str | None = None,
        details: dict | None = None,
    ) -> ExecutionLog | None:
        """Write one run record. Never raises; a failed write is logged instead."""
        entry = ExecutionLog(
            job_name=job_name,
            status=status,
            duration_ms=duration_ms,
            message=message,
            details=json.dumps(details, default=str) if details is not None else None,
            created_at=self.clock(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Could not write execution log for %s: %s", job_name, exc)
            return None
        return entry

    def get_last_successful_run(self, job_name: str) -> ExecutionLog | None:
        return (
            self.db.query(ExecutionLog)
            .filter(
                ExecutionLog.job_name == job_name,
                ExecutionLog.status.in_([ExecutionStatus.SUCCESS, ExecutionStatus.PARTIAL]),
            )
            .order_by(ExecutionLog.created_at.desc())
            .first()
        )

    def get_recent_logs(self, job_name: str | None = None, limit: int = 50) -> list[ExecutionLog]:
        query = self.db.query(ExecutionLog)
        if job_name:
            query = query.filter(ExecutionLog.job_name == job_name)
        return query.order_by(ExecutionLog.created_at.desc()).limit(limit).all()

    def get_job_health(self) -> list[dict]:
        """Last run and overdue flag for every scheduled job."""
        now = self.clock()
        health = []
        for job_name, interval in JOB_INTERVALS.items():
            last = (
                self.db.query(ExecutionLog)
                .filter(ExecutionLog.job_name == job_name)
                .order_by(ExecutionLog.created_at.desc())
                .first()
            )
            health.append(
                {
                    "job_name": job_name,
                    "last_run": last.created_at if last else None,
                    "last_status": last.status.value if last else None,
                    "expected_interval_minutes": int(interval.total_seconds() // 60),
                    "is_overdue": last is None or now - last.created_at > interval + OVERDUE_GRACE,
                }
            )
        return health

    def cleanup_old_logs(self, days: int | None = None) -> int:
        days = days if days is not None else settings.execution_log_retention_days
        cutoff = self.clock() - timedelta(days=days)
        result = self.db.execute(
            delete(ExecutionLog)
            .where(ExecutionLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Deleted %d execution logs older than %d days", result.rowcount, days)
        return result.rowcount
