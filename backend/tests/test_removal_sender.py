"""Tests for the email-first removal sender"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from removal_engine.exceptions import EmailTransportError, FormSubmissionError
from removal_engine.models.removal_request import RemovalMethod
from removal_engine.services.broker_directory import BrokerInfo, BrokerRemovalMethod
from removal_engine.services.email_gate import EmailDeliveryGate
from removal_engine.services.rate_limiter import RateLimitResult
from removal_engine.services.removal_sender import EmailRemovalSender, SendOutcome

BOTH = BrokerInfo(
    key="SPOKEO",
    name="Spokeo",
    removal_method=BrokerRemovalMethod.BOTH,
    privacy_email="privacy@spokeo.com",
    opt_out_url="https://www.spokeo.com/optout",
)
EMAIL_ONLY = BrokerInfo(
    key="INTELIUS",
    name="Intelius",
    removal_method=BrokerRemovalMethod.EMAIL,
    privacy_email="privacy@intelius.com",
)
FORM_ONLY = BrokerInfo(
    key="TRUEPEOPLESEARCH",
    name="TruePeopleSearch",
    removal_method=BrokerRemovalMethod.FORM,
    opt_out_url="https://www.truepeoplesearch.com/removal",
)


@pytest.fixture
def transport() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gate(db: Session, transport: MagicMock, clock) -> EmailDeliveryGate:
    return EmailDeliveryGate(db, transport, clock=clock)


class TestEmailRemovalSender:
    def test_sends_templated_email(self, gate, transport, clock, make_request):
        request = make_request(source="SPOKEO")
        sender = EmailRemovalSender(gate, reply_to="requests@example.org", clock=clock)

        result = sender.send_removal(request, BOTH)

        assert result.ok is True
        assert result.method == RemovalMethod.AUTO_EMAIL
        to, subject, body = transport.send.call_args.args
        assert to == "privacy@spokeo.com"
        assert subject == "Personal Data Removal Request under CCPA"
        assert "person@example.com" in body
        assert "https://spokeo.example/listing/123" in body
        assert transport.send.call_args.kwargs == {"reply_to": "requests@example.org"}

    def test_quota_exhaustion_is_deferred(self, db: Session, transport, clock, make_request):
        limiter = MagicMock()
        limiter.check_limit.return_value = RateLimitResult(allowed=False, remaining=0, retry_after=60)
        sender = EmailRemovalSender(EmailDeliveryGate(db, transport, limiter=limiter, clock=clock))

        result = sender.send_removal(make_request(source="SPOKEO"), BOTH)

        assert result.outcome == SendOutcome.DEFERRED

    def test_transport_failure_is_a_failed_attempt(self, gate, transport, make_request):
        transport.send.side_effect = EmailTransportError("connection refused")

        result = EmailRemovalSender(gate).send_removal(make_request(source="INTELIUS"), EMAIL_ONLY)

        assert result.outcome == SendOutcome.FAILED
        assert result.error == "connection refused"

    def test_suppressed_without_form_needs_manual(self, gate, make_request):
        gate.suppress("privacy@intelius.com")

        result = EmailRemovalSender(gate).send_removal(make_request(source="INTELIUS"), EMAIL_ONLY)

        assert result.outcome == SendOutcome.NEEDS_MANUAL
        assert "suppressed" in result.error

    def test_suppressed_falls_back_to_form(self, gate, transport, make_request):
        gate.suppress("privacy@spokeo.com")
        submitter = MagicMock()
        request = make_request(source="SPOKEO")

        result = EmailRemovalSender(gate, form_submitter=submitter).send_removal(request, BOTH)

        assert result.outcome == SendOutcome.SENT
        assert result.method == RemovalMethod.AUTO_FORM
        submitter.submit.assert_called_once_with(request, BOTH)
        transport.send.assert_not_called()

    def test_form_only_broker_without_automation_needs_manual(self, gate, transport, make_request):
        result = EmailRemovalSender(gate).send_removal(
            make_request(source="TRUEPEOPLESEARCH"), FORM_ONLY
        )

        assert result.outcome == SendOutcome.NEEDS_MANUAL
        assert result.error == "form automation unavailable (no privacy email)"
        transport.send.assert_not_called()

    def test_form_failure_is_a_failed_attempt(self, gate, make_request):
        submitter = MagicMock()
        submitter.submit.side_effect = FormSubmissionError("captcha required")

        result = EmailRemovalSender(gate, form_submitter=submitter).send_removal(
            make_request(source="TRUEPEOPLESEARCH"), FORM_ONLY
        )

        assert result.outcome == SendOutcome.FAILED
        assert result.method == RemovalMethod.AUTO_FORM
        assert result.error == "captcha required"
