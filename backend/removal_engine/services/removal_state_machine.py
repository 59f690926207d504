"""
Removal lifecycle.

One table of legal moves for a RemovalRequest and one table projecting each
request status onto its Exposure. Every transition writes the request, the
exposure and any notifications in a single commit.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.exceptions import InvalidTransitionError, PersistenceError, RemovalNotFoundError
from removal_engine.models.alert import AlertType
from removal_engine.models.exposure import ExposureStatus
from removal_engine.models.removal_request import RemovalMethod, RemovalRequest, RemovalStatus
from removal_engine.services.broker_directory import BrokerDirectory, get_broker_directory
from removal_engine.services.notification_service import NotificationService
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

S = RemovalStatus

TRANSITIONS: dict[RemovalStatus, frozenset[RemovalStatus]] = {
    S.PENDING: frozenset({S.SUBMITTED, S.REQUIRES_MANUAL, S.FAILED, S.SKIPPED, S.CANCELLED}),
    S.SUBMITTED: frozenset({S.IN_PROGRESS, S.ACKNOWLEDGED, S.COMPLETED, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.ACKNOWLEDGED, S.COMPLETED, S.CANCELLED}),
    S.ACKNOWLEDGED: frozenset({S.IN_PROGRESS, S.COMPLETED, S.CANCELLED}),
    S.FAILED: frozenset({S.PENDING, S.REQUIRES_MANUAL, S.CANCELLED}),
    S.REQUIRES_MANUAL: frozenset({S.PENDING, S.CANCELLED}),
    S.SKIPPED: frozenset({S.PENDING, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED})

# Exposure status required by each request status
EXPOSURE_PROJECTION: dict[RemovalStatus, ExposureStatus] = {
    S.PENDING: ExposureStatus.REMOVAL_PENDING,
    S.SUBMITTED: ExposureStatus.REMOVAL_IN_PROGRESS,
    S.IN_PROGRESS: ExposureStatus.REMOVAL_IN_PROGRESS,
    S.ACKNOWLEDGED: ExposureStatus.REMOVAL_IN_PROGRESS,
    S.COMPLETED: ExposureStatus.REMOVED,
    S.REQUIRES_MANUAL: ExposureStatus.REMOVAL_PENDING,
    S.FAILED: ExposureStatus.ACTIVE,
    S.CANCELLED: ExposureStatus.ACTIVE,
}


def can_transition(current: RemovalStatus, target: RemovalStatus) -> bool:
    return target in TRANSITIONS[current]


class RemovalStateMachine:
    def __init__(
        self,
        db: Session,
        clock: Clock = utc_now,
        directory: BrokerDirectory | None = None,
    ):
        self.db = db
        self.clock = clock
        self.directory = directory or get_broker_directory()
        self.notifications = NotificationService(db)

    def get_request_by_id(self, request_id) -> RemovalRequest:
        request = self.db.query(RemovalRequest).filter(RemovalRequest.id == request_id).first()
        if not request:
            raise RemovalNotFoundError(f"Removal request {request_id} not found")
        return request

    def transition(
        self,
        request: RemovalRequest,
        target: RemovalStatus,
        reason: str | None = None,
        *,
        override: bool = False,
        commit: bool = True,
    ) -> RemovalRequest:
        """Move a request to ``target`` and apply the attached side effects.

        ``override`` is the administrative escape hatch; it is the only way out
        of a terminal status. With ``commit=False`` the caller owns the commit,
        which lets several moves (e.g. FAILED -> PENDING -> SUBMITTED) land
        atomically.
        """
        current = request.status
        if not override and not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

        now = self.clock()
        request.status = target

        if target == S.SUBMITTED:
            if request.submitted_at is None:
                request.submitted_at = now
            request.verify_after = now + timedelta(days=self._verification_days(request))
            request.next_retry_at = None
        elif target == S.COMPLETED:
            request.completed_at = now
        elif target == S.PENDING:
            request.next_retry_at = None
        elif target == S.REQUIRES_MANUAL and request.method is None:
            request.method = RemovalMethod.MANUAL_GUIDE

        note = f"[{now:%Y-%m-%d %H:%M}] {current.value} -> {target.value}"
        if reason:
            note += f": {reason}"
        if override:
            note += " (administrative override)"
        request.append_note(note)

        self._project_exposure(request, target)

        if target == S.COMPLETED:
            self._on_completed(request)

        if commit:
            self.commit()

        logger.info("Removal %s: %s -> %s", request.id, current.value, target.value)
        return request

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def cancel(self, request_id, reason: str = "Cancelled by operator") -> RemovalRequest:
        request = self.get_request_by_id(request_id)
        return self.transition(request, S.CANCELLED, reason)

    def reactivate(
        self,
        request_id,
        privacy_email: str | None = None,
        opt_out_url: str | None = None,
    ) -> RemovalRequest:
        """Put a manual request back into automation with a newly found channel."""
        request = self.get_request_by_id(request_id)
        if request.status != S.REQUIRES_MANUAL:
            raise InvalidTransitionError(request.status.value, S.PENDING.value)

        if privacy_email:
            request.override_privacy_email = privacy_email.strip().lower()
        if opt_out_url:
            request.override_opt_out_url = opt_out_url.strip()
        request.attempts = 0
        request.last_error = None
        request.method = None

        channel = privacy_email or opt_out_url or "existing channel"
        return self.transition(request, S.PENDING, f"Reactivated with {channel}")

    def override_status(self, request_id, target: RemovalStatus, reason: str) -> RemovalRequest:
        request = self.get_request_by_id(request_id)
        return self.transition(request, target, reason, override=True)

    def mark_completed(self, request_id, reason: str = "Removal confirmed") -> RemovalRequest:
        request = self.get_request_by_id(request_id)
        now = self.clock()
        request.last_verified_at = now
        request.verification_count = (request.verification_count or 0) + 1
        return self.transition(request, S.COMPLETED, reason)

    def route_to_manual(
        self,
        request: RemovalRequest,
        category: str,
        reason: str,
        *,
        commit: bool = True,
    ) -> RemovalRequest:
        """Hand a request to operators: REQUIRES_MANUAL plus an internal support ticket."""
        request.method = RemovalMethod.MANUAL_GUIDE
        broker = request.exposure.source_name if request.exposure else "unknown broker"
        self.notifications.create_support_ticket(
            request,
            category=category,
            subject=f"Manual removal needed: {broker}",
            description=reason,
        )
        return self.transition(request, S.REQUIRES_MANUAL, reason, commit=commit)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _verification_days(self, request: RemovalRequest) -> int:
        info = self.directory.get_broker_info(request.exposure.source) if request.exposure else None
        if info and info.estimated_days:
            return info.estimated_days
        return settings.default_verification_days

    def _project_exposure(self, request: RemovalRequest, target: RemovalStatus) -> None:
        exposure = request.exposure
        projected = EXPOSURE_PROJECTION.get(target)
        if exposure is None or projected is None:
            return
        if exposure.status == ExposureStatus.WHITELISTED:
            return
        exposure.status = projected

    def _on_completed(self, request: RemovalRequest) -> None:
        source_name = request.exposure.source_name if request.exposure else "a data broker"
        self.notifications.create_alert(
            user_id=request.user_id,
            alert_type=AlertType.REMOVAL_COMPLETED,
            title="Data Removal Verified",
            message=f"Your data has been verified as removed from {source_name}.",
            removal_request_id=request.id,
        )
        self.notifications.check_and_fire_first_removal_milestone(request, source_name)
