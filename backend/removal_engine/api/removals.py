from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from removal_engine.database import get_db
from removal_engine.dependencies.auth import require_operator
from removal_engine.exceptions import InvalidTransitionError, RemovalNotFoundError
from removal_engine.models.removal_request import RemovalRequest
from removal_engine.schemas.removal import (
    CancelRemovalRequest,
    ReactivateRemovalRequest,
    RemovalRequestResponse,
    StatusOverrideRequest,
)
from removal_engine.services.removal_jobs import get_automation_stats
from removal_engine.services.removal_state_machine import RemovalStateMachine

router = APIRouter(dependencies=[Depends(require_operator)])


def _apply(action) -> RemovalRequest:
    try:
        return action()
    except RemovalNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/stats")
def automation_stats(db: Session = Depends(get_db)):
    """Totals by status and automation rate"""
    return get_automation_stats(db)


@router.get("/{request_id}", response_model=RemovalRequestResponse)
def get_removal_request(request_id: UUID, db: Session = Depends(get_db)):
    return _apply(lambda: RemovalStateMachine(db).get_request_by_id(request_id))


@router.post("/{request_id}/cancel", response_model=RemovalRequestResponse)
def cancel_removal_request(
    request_id: UUID,
    payload: CancelRemovalRequest | None = None,
    db: Session = Depends(get_db),
):
    """Administrative halt of a non-terminal request"""
    reason = payload.reason if payload else "Cancelled by operator"
    return _apply(lambda: RemovalStateMachine(db).cancel(request_id, reason))


@router.post("/{request_id}/reactivate", response_model=RemovalRequestResponse)
def reactivate_removal_request(
    request_id: UUID,
    payload: ReactivateRemovalRequest,
    db: Session = Depends(get_db),
):
    """Return a manual request to automation with a newly found channel"""
    return _apply(
        lambda: RemovalStateMachine(db).reactivate(
            request_id, privacy_email=payload.privacy_email, opt_out_url=payload.opt_out_url
        )
    )


@router.post("/{request_id}/override", response_model=RemovalRequestResponse)
def override_removal_status(
    request_id: UUID,
    payload: StatusOverrideRequest,
    db: Session = Depends(get_db),
):
    """Force a status, including out of terminal states. Recorded in the notes."""
    return _apply(
        lambda: RemovalStateMachine(db).override_status(request_id, payload.status, payload.reason)
    )
