"""
Per-broker send limits.

Each broker gets at most ``daily_cap`` sends per UTC day, spaced at least
``min_spacing`` apart. The check and the increment are one conditional UPDATE
on the broker's day row, so two workers can never both take the last slot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from removal_engine.config import settings
from removal_engine.models.rate_limit_window import RateLimitWindow
from removal_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    allowed: bool
    reason: str | None = None
    sent_today: int = 0
    reserved_at: datetime | None = None
    previous_sent_at: datetime | None = None


class BrokerRateLimiter:
    def __init__(
        self,
        db: Session,
        daily_cap: int | None = None,
        min_spacing: timedelta | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.daily_cap = daily_cap if daily_cap is not None else settings.broker_daily_cap
        self.min_spacing = (
            min_spacing
            if min_spacing is not None
            else timedelta(minutes=settings.broker_min_spacing_minutes)
        )
        self.clock = clock

    def try_reserve(self, broker_key: str, now: datetime | None = None) -> ReservationResult:
        """Atomically take one send slot for ``broker_key``.

        Commits on its own. A slot taken stays spent when the send that follows
        fails; call ``release`` when nothing was sent at all.
        """
        now = now or self.clock()
        broker_key = broker_key.upper()
        day = now.date()
        self._ensure_window(broker_key, day, now)
        before = self._get_window(broker_key, day)
        previous_sent_at = before.last_sent_at if before else None

        stmt = (
            update(RateLimitWindow)
            .where(
                RateLimitWindow.broker_key == broker_key,
                RateLimitWindow.day_bucket == day,
                RateLimitWindow.count_sent < self.daily_cap,
                or_(
                    RateLimitWindow.last_sent_at.is_(None),
                    RateLimitWindow.last_sent_at <= now - self.min_spacing,
                ),
            )
            .values(count_sent=RateLimitWindow.count_sent + 1, last_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        window = self._get_window(broker_key, day)
        sent_today = window.count_sent if window else 0
        if result.rowcount == 1:
            return ReservationResult(
                allowed=True,
                sent_today=sent_today,
                reserved_at=now,
                previous_sent_at=previous_sent_at,
            )

        if sent_today >= self.daily_cap:
            reason = f"daily cap of {self.daily_cap} reached"
        else:
            reason = f"minimum spacing of {int(self.min_spacing.total_seconds() // 60)} minutes"
        logger.debug("Rate limited %s: %s", broker_key, reason)
        return ReservationResult(allowed=False, reason=reason, sent_today=sent_today)

    def release(self, broker_key: str, reservation: ReservationResult) -> bool:
        """Give back a slot whose send never went out.

        The spacing clock is rewound only while this reservation is still the
        latest send for the broker.
        """
        if not reservation.allowed or reservation.reserved_at is None:
            return False

        stmt = (
            update(RateLimitWindow)
            .where(
                RateLimitWindow.broker_key == broker_key.upper(),
                RateLimitWindow.day_bucket == reservation.reserved_at.date(),
                RateLimitWindow.count_sent > 0,
            )
            .values(
                count_sent=RateLimitWindow.count_sent - 1,
                last_sent_at=case(
                    (
                        RateLimitWindow.last_sent_at == reservation.reserved_at,
                        reservation.previous_sent_at,
                    ),
                    else_=RateLimitWindow.last_sent_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def brokers_at_cap(self, now: datetime | None = None) -> set[str]:
        """Broker keys that have used their whole daily allowance."""
        now = now or self.clock()
        rows = (
            self.db.query(RateLimitWindow.broker_key)
            .filter(
                RateLimitWindow.day_bucket == now.date(),
                RateLimitWindow.count_sent >= self.daily_cap,
            )
            .all()
        )
        return {row[0] for row in rows}

    def sent_today(self, broker_key: str, now: datetime | None = None) -> int:
        now = now or self.clock()
        window = self._get_window(broker_key.upper(), now.date())
        return window.count_sent if window else 0

    def _get_window(self, broker_key: str, day) -> RateLimitWindow | None:
        return (
            self.db.query(RateLimitWindow)
            .filter(RateLimitWindow.broker_key == broker_key, RateLimitWindow.day_bucket == day)
            .populate_existing()
            .first()
        )

    def _ensure_window(self, broker_key: str, day, now: datetime) -> None:
        if self._get_window(broker_key, day):
            return

        # Carry the last send across midnight so spacing still holds
        previous = (
            self.db.query(func.max(RateLimitWindow.last_sent_at))
            .filter(RateLimitWindow.broker_key == broker_key, RateLimitWindow.day_bucket < day)
            .scalar()
        )
        self.db.add(
            RateLimitWindow(broker_key=broker_key, day_bucket=day, count_sent=0, last_sent_at=previous)
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker created the row first
            self.db.rollback()
