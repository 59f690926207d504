import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from removal_engine.database import get_db
from removal_engine.dependencies.auth import require_operator, verify_webhook_secret
from removal_engine.limiter import limiter
from removal_engine.schemas.suppression import (
    BounceEvent,
    ComplaintEvent,
    SuppressionResponse,
    SuppressionStats,
    SuppressRequest,
)
from removal_engine.services.email_gate import EmailDeliveryGate
from removal_engine.services.email_transport import SmtpTransport

logger = logging.getLogger(__name__)

router = APIRouter()


def get_email_gate(db: Session = Depends(get_db)) -> EmailDeliveryGate:
    return EmailDeliveryGate(db, SmtpTransport())


@router.post(
    "/webhooks/bounce",
    response_model=SuppressionResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit("120/minute")
def ingest_bounce(
    request: Request,
    event: BounceEvent,
    gate: EmailDeliveryGate = Depends(get_email_gate),
):
    """Bounce notification from the email provider"""
    return gate.record_bounce(event.email, event.bounce_type, event.category, event.broker_key)


@router.post(
    "/webhooks/complaint",
    response_model=SuppressionResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
@limiter.limit("120/minute")
def ingest_complaint(
    request: Request,
    event: ComplaintEvent,
    gate: EmailDeliveryGate = Depends(get_email_gate),
):
    return gate.record_complaint(event.email, event.category)


@router.get(
    "/suppressions/stats",
    response_model=SuppressionStats,
    dependencies=[Depends(require_operator)],
)
def suppression_stats(gate: EmailDeliveryGate = Depends(get_email_gate)):
    return gate.get_stats()


@router.post(
    "/suppressions",
    response_model=SuppressionResponse,
    dependencies=[Depends(require_operator)],
)
def suppress_address(payload: SuppressRequest, gate: EmailDeliveryGate = Depends(get_email_gate)):
    return gate.suppress(payload.email, reason=payload.reason)


@router.delete("/suppressions/{email}", dependencies=[Depends(require_operator)])
def unsuppress_address(email: str, gate: EmailDeliveryGate = Depends(get_email_gate)):
    """Explicitly lift a suppression"""
    if not gate.unsuppress(email):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"{email} is not suppressed"
        )
    logger.info("Operator lifted suppression for %s", email)
    return {"email": email.strip().lower(), "suppressed": False}
