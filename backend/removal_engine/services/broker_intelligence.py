"""
Broker intelligence.

Success rates, risk levels, priorities and anomaly predictions are derived
from ``RemovalAttempt`` rows every time a service is built. The only cache is
the per-instance memo, which lives for one job run.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.models.exposure import Exposure
from removal_engine.models.removal_attempt import RemovalAttempt
from removal_engine.models.removal_request import RemovalRequest, RemovalStatus
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

ALL_BROKERS = "ALL"


@dataclass
class BrokerIntelligence:
    broker_key: str
    total: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float | None = None  # percent, None without observations
    risk_level: str = "MEDIUM"
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def is_low_success(self) -> bool:
        return (
            self.success_rate is not None
            and self.total >= settings.intelligence_min_observations
            and self.success_rate < settings.low_success_rate_threshold
        )


@dataclass
class Prediction:
    type: str  # ANOMALY, BACKLOG, STALE_QUEUE
    severity: str  # INFO, WARNING, CRITICAL
    segment: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def risk_level_for(success_rate: float | None, total: int) -> str:
    """LOW/MEDIUM/HIGH from a success percentage; MEDIUM until there is enough data."""
    if success_rate is None or total < settings.intelligence_min_observations:
        return "MEDIUM"
    if success_rate >= settings.risk_low_min_success_rate:
        return "LOW"
    if success_rate >= settings.risk_medium_min_success_rate:
        return "MEDIUM"
    return "HIGH"


class BrokerIntelligenceService:
    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self.clock = clock
        self._memo: dict[str, BrokerIntelligence] = {}

    def record_outcome(
        self,
        request: RemovalRequest,
        broker_key: str,
        succeeded: bool,
        error: str | None = None,
    ) -> RemovalAttempt:
        """Add one observation to the caller's transaction (flushed, not committed)."""
        attempt = RemovalAttempt(
            removal_request_id=request.id,
            broker_key=broker_key.upper(),
            data_type=request.exposure.data_type if request.exposure else None,
            succeeded=succeeded,
            error=error,
            created_at=self.clock(),
        )
        self.db.add(attempt)
        self.db.flush()
        self._memo.pop(broker_key.upper(), None)
        return attempt

    def get_broker_intelligence(self, broker_key: str) -> BrokerIntelligence:
        broker_key = broker_key.upper()
        if broker_key in self._memo:
            return self._memo[broker_key]

        since = self.clock() - timedelta(days=settings.intelligence_window_days)
        rows = (
            self.db.query(RemovalAttempt.succeeded, RemovalAttempt.created_at)
            .filter(RemovalAttempt.broker_key == broker_key, RemovalAttempt.created_at >= since)
            .order_by(RemovalAttempt.created_at.desc())
            .limit(settings.intelligence_max_observations)
            .all()
        )

        intel = BrokerIntelligence(broker_key=broker_key, total=len(rows))
        for succeeded, created_at in rows:
            if succeeded:
                intel.successes += 1
                if intel.last_success_at is None:
                    intel.last_success_at = created_at
            else:
                intel.failures += 1
                if intel.last_failure_at is None:
                    intel.last_failure_at = created_at

        if intel.total:
            intel.success_rate = round(intel.successes / intel.total * 100, 1)
        intel.risk_level = risk_level_for(intel.success_rate, intel.total)

        self._memo[broker_key] = intel
        return intel

    def get_smart_priorities(self, broker_keys: list[str] | None = None) -> dict[str, int]:
        """Score brokers with pending work from 0 to 100, higher first."""
        if broker_keys is None:
            broker_keys = [
                row[0]
                for row in self.db.query(Exposure.source)
                .join(RemovalRequest, RemovalRequest.exposure_id == Exposure.id)
                .filter(RemovalRequest.status == RemovalStatus.PENDING)
                .distinct()
                .all()
            ]

        now = self.clock()
        priorities = {}
        for key in broker_keys:
            intel = self.get_broker_intelligence(key)
            score = 50
            if intel.success_rate is not None:
                if intel.success_rate >= 80:
                    score += 30
                elif intel.success_rate >= 50:
                    score += 15
            if intel.last_success_at and now - intel.last_success_at < timedelta(hours=24):
                score += 10
            if intel.last_failure_at and now - intel.last_failure_at < timedelta(hours=4):
                score -= 20
            if intel.risk_level == "LOW":
                score += 10
            elif intel.risk_level == "HIGH":
                score -= 10
            priorities[key.upper()] = max(0, min(100, score))
        return priorities

    def analyze_patterns_and_predict(self) -> list[Prediction]:
        predictions = self._detect_anomalies()
        predictions.extend(self._predict_backlog())
        predictions.extend(self._detect_stale_queue())

        for prediction in predictions:
            if prediction.severity != "INFO":
                logger.warning(
                    "%s %s on %s: %s",
                    prediction.severity,
                    prediction.type,
                    prediction.segment,
                    prediction.message,
                )
        return predictions

    def batch_size_multiplier(self, predictions: list[Prediction]) -> float:
        """Circuit breaker: shrink the next batch while a critical anomaly is open."""
        if any(p.type == "ANOMALY" and p.severity == "CRITICAL" for p in predictions):
            return settings.circuit_breaker_batch_multiplier
        return 1.0

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def _outcome_counts(self, start: datetime, end: datetime) -> dict[str, tuple[int, int]]:
        """(total, failures) per broker in [start, end)."""
        rows = (
            self.db.query(RemovalAttempt.broker_key, RemovalAttempt.succeeded, func.count())
            .filter(RemovalAttempt.created_at >= start, RemovalAttempt.created_at < end)
            .group_by(RemovalAttempt.broker_key, RemovalAttempt.succeeded)
            .all()
        )
        counts: dict[str, list[int]] = {}
        for broker_key, succeeded, count in rows:
            for segment in (broker_key, ALL_BROKERS):
                bucket = counts.setdefault(segment, [0, 0])
                bucket[0] += count
                if not succeeded:
                    bucket[1] += count
        return {key: (total, failures) for key, (total, failures) in counts.items()}

    def _detect_anomalies(self) -> list[Prediction]:
        now = self.clock()
        window_start = now - timedelta(hours=settings.anomaly_window_hours)
        baseline_start = window_start - timedelta(days=settings.anomaly_baseline_days)

        recent = self._outcome_counts(window_start, now + timedelta(seconds=1))
        baseline = self._outcome_counts(baseline_start, window_start)

        predictions = []
        for segment, (n_recent, failures_recent) in sorted(recent.items()):
            if n_recent < settings.anomaly_min_samples:
                continue

            n_base, failures_base = baseline.get(segment, (0, 0))
            if n_base >= settings.anomaly_min_samples:
                p_base = failures_base / n_base
            else:
                p_base = settings.anomaly_default_baseline_failure_rate
            p_recent = failures_recent / n_recent

            variance = max(p_base * (1 - p_base), 0.01)
            z_score = (p_recent - p_base) / math.sqrt(variance / n_recent)
            delta = p_recent - p_base

            if z_score >= settings.anomaly_critical_z and delta >= settings.anomaly_critical_min_delta:
                severity = "CRITICAL"
            elif z_score >= settings.anomaly_warning_z:
                severity = "WARNING"
            else:
                continue

            predictions.append(
                Prediction(
                    type="ANOMALY",
                    severity=severity,
                    segment=segment,
                    message=(
                        f"Failure rate {p_recent:.0%} over the last "
                        f"{settings.anomaly_window_hours}h vs baseline {p_base:.0%}"
                    ),
                    details={
                        "recent_samples": n_recent,
                        "recent_failure_rate": round(p_recent, 3),
                        "baseline_failure_rate": round(p_base, 3),
                        "z_score": round(z_score, 2),
                    },
                )
            )
        return predictions

    def _predict_backlog(self) -> list[Prediction]:
        now = self.clock()
        pending = (
            self.db.query(func.count(RemovalRequest.id))
            .filter(RemovalRequest.status == RemovalStatus.PENDING)
            .scalar()
        )
        if not pending:
            return []

        sent_last_week = (
            self.db.query(func.count(RemovalAttempt.id))
            .filter(RemovalAttempt.succeeded.is_(True), RemovalAttempt.created_at >= now - timedelta(days=7))
            .scalar()
        )
        daily_throughput = sent_last_week / 7
        if daily_throughput == 0:
            return [
                Prediction(
                    type="BACKLOG",
                    severity="WARNING",
                    segment=ALL_BROKERS,
                    message=f"{pending} pending removals and no successful sends in 7 days",
                    details={"pending": pending, "daily_throughput": 0},
                )
            ]

        days_to_clear = pending / daily_throughput
        if days_to_clear > 7:
            severity = "CRITICAL"
        elif days_to_clear > 3:
            severity = "WARNING"
        else:
            severity = "INFO"
        return [
            Prediction(
                type="BACKLOG",
                severity=severity,
                segment=ALL_BROKERS,
                message=f"Queue clears in about {days_to_clear:.1f} days at current throughput",
                details={
                    "pending": pending,
                    "daily_throughput": round(daily_throughput, 1),
                    "days_to_clear": round(days_to_clear, 1),
                },
            )
        ]

    def _detect_stale_queue(self) -> list[Prediction]:
        now = self.clock()
        oldest = (
            self.db.query(func.min(RemovalRequest.created_at))
            .filter(RemovalRequest.status == RemovalStatus.PENDING)
            .scalar()
        )
        if oldest is None or now - oldest <= timedelta(days=7):
            return []

        age_days = (now - oldest).days
        return [
            Prediction(
                type="STALE_QUEUE",
                severity="WARNING",
                segment=ALL_BROKERS,
                message=f"Oldest pending removal has waited {age_days} days",
                details={"oldest_pending_days": age_days},
            )
        ]
