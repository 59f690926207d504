import logging

from removal_engine.celery_app import celery_app
from removal_engine.database import SessionLocal
from removal_engine.logging_config import setup_logging
from removal_engine.services.removal_jobs import (
    run_auto_verify_removals,
    run_cleanup_execution_logs,
    run_process_removals,
)

setup_logging()
logger = logging.getLogger(__name__)


@celery_app.task
def process_removals_task():
    """
    Scheduled batch over PENDING removals followed by a retry pass.

    Lock contention is not an error: the run reports SKIPPED and exits.
    """
    db = SessionLocal()
    try:
        return run_process_removals(db).to_dict()
    finally:
        db.close()


@celery_app.task
def auto_verify_removals_task():
    db = SessionLocal()
    try:
        return run_auto_verify_removals(db).to_dict()
    finally:
        db.close()


@celery_app.task
def cleanup_execution_logs_task():
    db = SessionLocal()
    try:
        return run_cleanup_execution_logs(db).to_dict()
    finally:
        db.close()
