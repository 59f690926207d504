"""
Single-item send path shared by the batch processor and the retry engine.

For one PENDING or FAILED request: resolve the broker channel, skip
whitelisted exposures, route channel-less brokers to manual handling, reserve
a rate-limit slot (given back when nothing goes out), send, record the
observation, and persist the resulting transition in one commit.
"""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from removal_engine.models.exposure import ExposureStatus
from removal_engine.models.removal_request import RemovalMethod, RemovalRequest, RemovalStatus
from removal_engine.services.broker_directory import BrokerDirectory, BrokerInfo
from removal_engine.services.broker_intelligence import BrokerIntelligenceService
from removal_engine.services.broker_rate_limiter import BrokerRateLimiter
from removal_engine.services.removal_sender import RemovalSender, SendOutcome, SendResult
from removal_engine.services.removal_state_machine import RemovalStateMachine
from removal_engine.services.retry_policy import RetryPolicy
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class ItemOutcome(str, enum.Enum):
    SUBMITTED = "submitted"
    FAILED = "failed"
    MANUAL = "manual"
    WHITELISTED = "whitelisted"
    RATE_LIMITED = "rate_limited"
    DEFERRED = "deferred"


# Outcomes that neither attempted a send nor changed state
NO_OP_OUTCOMES = frozenset({ItemOutcome.RATE_LIMITED, ItemOutcome.DEFERRED})


@dataclass
class ItemResult:
    request_id: object
    broker_key: str
    outcome: ItemOutcome
    status: RemovalStatus
    error: str | None = None

    @property
    def processed(self) -> bool:
        return self.outcome not in NO_OP_OUTCOMES


class RemovalExecutor:
    def __init__(
        self,
        db: Session,
        sender: RemovalSender,
        directory: BrokerDirectory,
        rate_limiter: BrokerRateLimiter,
        intelligence: BrokerIntelligenceService,
        state_machine: RemovalStateMachine,
        retry_policy: RetryPolicy,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.sender = sender
        self.directory = directory
        self.rate_limiter = rate_limiter
        self.intelligence = intelligence
        self.state_machine = state_machine
        self.retry_policy = retry_policy
        self.clock = clock

    def execute(self, request: RemovalRequest) -> ItemResult:
        """Run one request through the send path.

        Raises PersistenceError (or SQLAlchemyError from the limiter) when the
        item's writes fail; callers count it and move on.
        """
        exposure = request.exposure
        broker_key = exposure.source.upper() if exposure else "UNKNOWN"

        if exposure is not None and exposure.status == ExposureStatus.WHITELISTED:
            self._leave_failed(request, "Exposure whitelisted by user")
            self.state_machine.transition(request, RemovalStatus.SKIPPED, "Exposure whitelisted by user")
            return self._result(request, broker_key, ItemOutcome.WHITELISTED)

        broker = self.directory.resolve(
            broker_key, request.override_privacy_email, request.override_opt_out_url
        )
        if not broker.is_automatable:
            reason = f"{broker.name} has no privacy email or opt-out form"
            self.state_machine.route_to_manual(request, "no_channel", reason)
            return self._result(request, broker_key, ItemOutcome.MANUAL, reason)

        reservation = self.rate_limiter.try_reserve(broker_key, self.clock())
        if not reservation.allowed:
            return self._result(request, broker_key, ItemOutcome.RATE_LIMITED, reservation.reason)

        send = self._send(request, broker)
        if send.outcome in (SendOutcome.DEFERRED, SendOutcome.NEEDS_MANUAL):
            self.rate_limiter.release(broker_key, reservation)

        if send.outcome == SendOutcome.DEFERRED:
            return self._result(request, broker_key, ItemOutcome.DEFERRED, send.error)

        if send.outcome == SendOutcome.NEEDS_MANUAL:
            self.state_machine.route_to_manual(
                request, "automation_unavailable", send.error or "Automation unavailable"
            )
            return self._result(request, broker_key, ItemOutcome.MANUAL, send.error)

        if send.outcome == SendOutcome.SENT:
            return self._on_sent(request, broker, send)
        return self._on_failed(request, broker, send)

    def _send(self, request: RemovalRequest, broker: BrokerInfo) -> SendResult:
        try:
            return self.sender.send_removal(request, broker)
        except Exception as exc:
            logger.warning("Send for removal %s to %s raised: %s", request.id, broker.key, exc)
            return SendResult(SendOutcome.FAILED, error=str(exc) or exc.__class__.__name__)

    def _on_sent(self, request: RemovalRequest, broker: BrokerInfo, send: SendResult) -> ItemResult:
        self._leave_failed(request, "Retrying send")
        request.method = send.method
        request.attempts = 0
        request.last_error = None
        self.intelligence.record_outcome(request, broker.key, succeeded=True)

        via = "opt-out form" if send.method == RemovalMethod.AUTO_FORM else "email"
        self.state_machine.transition(request, RemovalStatus.SUBMITTED, f"Sent to {broker.name} via {via}")
        return self._result(request, broker.key, ItemOutcome.SUBMITTED)

    def _on_failed(self, request: RemovalRequest, broker: BrokerInfo, send: SendResult) -> ItemResult:
        self._leave_failed(request, "Retrying send")
        request.attempts = (request.attempts or 0) + 1
        request.last_error = send.error
        self.intelligence.record_outcome(request, broker.key, succeeded=False, error=send.error)

        if self.retry_policy.should_mark_failed(request.attempts):
            risk = self.intelligence.get_broker_intelligence(broker.key).risk_level
            self.state_machine.transition(
                request,
                RemovalStatus.FAILED,
                f"Attempt {request.attempts} failed: {send.error}",
                commit=False,
            )
            request.next_retry_at = self.retry_policy.next_retry_at(self.clock(), request.attempts, risk)
        else:
            request.append_note(f"[{self.clock():%Y-%m-%d %H:%M}] Attempt {request.attempts} failed: {send.error}")
        self.state_machine.commit()
        return self._result(request, broker.key, ItemOutcome.FAILED, send.error)

    def _leave_failed(self, request: RemovalRequest, reason: str) -> None:
        # FAILED items re-enter through PENDING so the audit path stays legal
        if request.status == RemovalStatus.FAILED:
            self.state_machine.transition(request, RemovalStatus.PENDING, reason, commit=False)

    def _result(
        self, request: RemovalRequest, broker_key: str, outcome: ItemOutcome, error: str | None = None
    ) -> ItemResult:
        return ItemResult(
            request_id=request.id,
            broker_key=broker_key,
            outcome=outcome,
            status=request.status,
            error=error,
        )
