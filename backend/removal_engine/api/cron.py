import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.database import get_db
from removal_engine.dependencies.auth import verify_cron_secret
from removal_engine.schemas.cron import JobHealth, JobRunResponse
from removal_engine.services.execution_log_service import ExecutionLogService
from removal_engine.services.job_lock import (
    AUTO_VERIFY_REMOVALS,
    CLEANUP_EXECUTION_LOGS,
    PROCESS_REMOVALS,
)
from removal_engine.services.rate_limiter import RateLimiter, rate_limiter
from removal_engine.services.removal_jobs import (
    JobRunResult,
    run_auto_verify_removals,
    run_cleanup_execution_logs,
    run_process_removals,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_trigger_limiter() -> RateLimiter:
    return rate_limiter


def _throttle(request: Request, limiter: RateLimiter, job_name: str) -> None:
    caller = request.client.host if request.client else "unknown"
    result = limiter.check_limit(
        caller,
        f"trigger:{job_name}",
        settings.task_trigger_rate_limit,
        settings.task_trigger_rate_window_seconds,
    )
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many {job_name} triggers. Try again in {result.retry_after} seconds.",
            headers={"Retry-After": str(result.retry_after)},
        )


def _trigger(
    request: Request,
    db: Session,
    limiter: RateLimiter,
    job_name: str,
    run: Callable[[Session], JobRunResult],
) -> JobRunResponse:
    _throttle(request, limiter, job_name)
    try:
        result = run(db)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{job_name} failed: {exc}",
        ) from exc
    return JobRunResponse(**result.to_dict())


@router.api_route("/process-removals", methods=["GET", "POST"], response_model=JobRunResponse)
def trigger_process_removals(
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_trigger_limiter),
    _caller: str = Depends(verify_cron_secret),
):
    """Run one time-boxed batch and retry pass"""
    return _trigger(request, db, limiter, PROCESS_REMOVALS, run_process_removals)


@router.api_route("/auto-verify-removals", methods=["GET", "POST"], response_model=JobRunResponse)
def trigger_auto_verify_removals(
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_trigger_limiter),
    _caller: str = Depends(verify_cron_secret),
):
    return _trigger(request, db, limiter, AUTO_VERIFY_REMOVALS, run_auto_verify_removals)


@router.api_route(
    "/cleanup-execution-logs", methods=["GET", "POST"], response_model=JobRunResponse
)
def trigger_cleanup_execution_logs(
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_trigger_limiter),
    _caller: str = Depends(verify_cron_secret),
):
    return _trigger(request, db, limiter, CLEANUP_EXECUTION_LOGS, run_cleanup_execution_logs)


@router.get("/health", response_model=list[JobHealth])
def get_job_health(
    db: Session = Depends(get_db),
    _caller: str = Depends(verify_cron_secret),
):
    """Last run and overdue flag per scheduled job"""
    return [JobHealth(**entry) for entry in ExecutionLogService(db).get_job_health()]
