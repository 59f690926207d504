import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from removal_engine.config import settings
from removal_engine.exceptions import FormSubmissionError
from removal_engine.models.removal_request import RemovalMethod, RemovalRequest
from removal_engine.services.broker_directory import BrokerInfo
from removal_engine.services.email_gate import (
    DELIVERY_QUOTA_EXCEEDED,
    DELIVERY_SENT,
    DELIVERY_SUPPRESSED,
    EmailDeliveryGate,
)
from removal_engine.utils.clock import Clock, utc_now
from removal_engine.utils.email_templates import EmailTemplates

logger = logging.getLogger(__name__)


class SendOutcome(str, enum.Enum):
    SENT = "SENT"
    FAILED = "FAILED"  # attempt counted, retried later
    DEFERRED = "DEFERRED"  # quota reached, try again next run
    NEEDS_MANUAL = "NEEDS_MANUAL"  # no usable automated channel


@dataclass
class SendResult:
    outcome: SendOutcome
    method: RemovalMethod | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == SendOutcome.SENT


class RemovalSender(Protocol):
    def send_removal(self, request: RemovalRequest, broker: BrokerInfo) -> SendResult: ...


class FormSubmitter(Protocol):
    def submit(self, request: RemovalRequest, broker: BrokerInfo) -> None:
        """Complete the broker's opt-out form; raise FormSubmissionError on failure."""


class EmailRemovalSender:
    """Sends the templated removal email, falling back to the opt-out form.

    Without a form submitter, form-only brokers come back as NEEDS_MANUAL so
    the request is handed to an operator instead of failing repeatedly.
    """

    def __init__(
        self,
        gate: EmailDeliveryGate,
        form_submitter: FormSubmitter | None = None,
        reply_to: str | None = None,
        framework: str = "CCPA",
        clock: Clock = utc_now,
    ):
        self.gate = gate
        self.form_submitter = form_submitter
        self.reply_to = reply_to or settings.removal_reply_to
        self.framework = framework
        self.clock = clock

    def send_removal(self, request: RemovalRequest, broker: BrokerInfo) -> SendResult:
        if not broker.privacy_email:
            return self._submit_form(request, broker, reason="no privacy email")

        exposure = request.exposure
        subject, body = EmailTemplates.generate_removal_request_email(
            user_email=request.requester_email or self.reply_to,
            broker_name=broker.name,
            data_type=exposure.data_type if exposure else None,
            listing_url=exposure.source_url if exposure else None,
            reply_to=self.reply_to,
            framework=self.framework,
            now=self.clock(),
        )
        delivery = self.gate.send(broker.privacy_email, subject, body, reply_to=self.reply_to)

        if delivery.status == DELIVERY_SENT:
            return SendResult(SendOutcome.SENT, method=RemovalMethod.AUTO_EMAIL)
        if delivery.status == DELIVERY_QUOTA_EXCEEDED:
            return SendResult(SendOutcome.DEFERRED, error=delivery.error)
        if delivery.status == DELIVERY_SUPPRESSED:
            if broker.opt_out_url:
                return self._submit_form(request, broker, reason=delivery.error)
            return SendResult(SendOutcome.NEEDS_MANUAL, error=delivery.error)

        # Transport failure: the form may still work
        if broker.opt_out_url and self.form_submitter is not None:
            return self._submit_form(request, broker, reason=delivery.error)
        return SendResult(SendOutcome.FAILED, method=RemovalMethod.AUTO_EMAIL, error=delivery.error)

    def _submit_form(self, request: RemovalRequest, broker: BrokerInfo, reason: str | None) -> SendResult:
        if not broker.opt_out_url:
            return SendResult(SendOutcome.NEEDS_MANUAL, error="no automatable channel")
        if self.form_submitter is None:
            return SendResult(
                SendOutcome.NEEDS_MANUAL,
                error=f"form automation unavailable ({reason})" if reason else "form automation unavailable",
            )

        try:
            self.form_submitter.submit(request, broker)
        except FormSubmissionError as exc:
            logger.info("Opt-out form for %s failed: %s", broker.key, exc)
            return SendResult(SendOutcome.FAILED, method=RemovalMethod.AUTO_FORM, error=str(exc))
        return SendResult(SendOutcome.SENT, method=RemovalMethod.AUTO_FORM)
