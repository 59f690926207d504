import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.models.job_lock import JobLock
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

PROCESS_REMOVALS = "process-removals"
AUTO_VERIFY_REMOVALS = "auto-verify-removals"
CLEANUP_EXECUTION_LOGS = "cleanup-execution-logs"

# Jobs that must not start while any of the listed jobs holds its lock
JOB_BLOCKERS: dict[str, tuple[str, ...]] = {
    PROCESS_REMOVALS: (AUTO_VERIFY_REMOVALS,),
    AUTO_VERIFY_REMOVALS: (PROCESS_REMOVALS,),
}


@dataclass
class LockResult:
    acquired: bool
    reason: str | None = None
    holder_token: str | None = None
    recovered: bool = False


class JobLockCoordinator:
    """Leased, database-backed mutual exclusion for scheduled jobs.

    A lock row whose lease has expired belongs to a crashed run and may be
    taken over. Acquisition is either an INSERT (guarded by the primary key)
    or a conditional UPDATE on an expired row, so exactly one caller wins.
    """

    def __init__(self, db: Session, clock: Clock = utc_now, lease_seconds: int | None = None):
        self.db = db
        self.clock = clock
        self.lease = timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.job_lock_lease_seconds
        )

    def acquire(self, job_name: str, blockers: tuple[str, ...] | None = None) -> LockResult:
        now = self.clock()
        blockers = JOB_BLOCKERS.get(job_name, ()) if blockers is None else blockers

        for blocker in blockers:
            held = self._live_lock(blocker, now)
            if held:
                return LockResult(
                    acquired=False,
                    reason=f"blocked by {blocker} running since {held.acquired_at.isoformat()}",
                )

        token = uuid.uuid4().hex
        try:
            self.db.execute(
                insert(JobLock).values(
                    job_name=job_name,
                    holder_token=token,
                    acquired_at=now,
                    lease_expires_at=now + self.lease,
                )
            )
            self.db.commit()
            return LockResult(acquired=True, holder_token=token)
        except IntegrityError:
            self.db.rollback()

        stmt = (
            update(JobLock)
            .where(JobLock.job_name == job_name, JobLock.lease_expires_at <= now)
            .values(holder_token=token, acquired_at=now, lease_expires_at=now + self.lease)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount == 1:
            logger.warning("Recovered expired lock for %s (previous run likely crashed)", job_name)
            return LockResult(acquired=True, holder_token=token, recovered=True)

        held = self._live_lock(job_name, now)
        since = held.acquired_at.isoformat() if held else "unknown"
        return LockResult(acquired=False, reason=f"already running since {since}")

    def release(self, job_name: str, holder_token: str | None = None) -> bool:
        """Drop the lock. A no-op when nothing (or somebody else) holds it."""
        stmt = delete(JobLock).where(JobLock.job_name == job_name)
        if holder_token:
            stmt = stmt.where(JobLock.holder_token == holder_token)
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        self.db.commit()
        return result.rowcount > 0

    def is_locked(self, job_name: str) -> bool:
        return self._live_lock(job_name, self.clock()) is not None

    def _live_lock(self, job_name: str, now: datetime) -> JobLock | None:
        return (
            self.db.query(JobLock)
            .filter(JobLock.job_name == job_name, JobLock.lease_expires_at > now)
            .populate_existing()
            .first()
        )
