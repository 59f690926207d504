from dataclasses import dataclass, field
from datetime import datetime, timedelta

from removal_engine.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and backoff curve for failed sends."""

    max_attempts: int = 3
    failed_after_attempts: int = 2
    base_minutes: int = 60
    max_minutes: int = 24 * 60
    risk_multipliers: dict[str, float] = field(default_factory=lambda: {"LOW": 1.0, "MEDIUM": 1.5, "HIGH": 2.0})

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_removal_attempts,
            failed_after_attempts=settings.failed_state_after_attempts,
            base_minutes=settings.retry_backoff_base_minutes,
            max_minutes=settings.retry_backoff_max_minutes,
            risk_multipliers=dict(settings.retry_backoff_risk_multipliers),
        )

    def backoff(self, attempts: int, risk_level: str = "MEDIUM") -> timedelta:
        # base * 2^(attempts-1), capped, then stretched for risky brokers
        exponent = max(attempts - 1, 0)
        minutes = min(self.base_minutes * (2**exponent), self.max_minutes)
        minutes *= self.risk_multipliers.get(risk_level, 1.0)
        return timedelta(minutes=minutes)

    def next_retry_at(self, now: datetime, attempts: int, risk_level: str = "MEDIUM") -> datetime:
        return now + self.backoff(attempts, risk_level)

    def should_mark_failed(self, attempts: int) -> bool:
        return attempts >= self.failed_after_attempts

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
