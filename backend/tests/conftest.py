import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
os.environ.setdefault("EMAIL_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ENVIRONMENT", "test")

from removal_engine.api.cron import get_trigger_limiter
from removal_engine.database import Base, get_db
from removal_engine.main import app
from removal_engine.models.exposure import Exposure, ExposureStatus
from removal_engine.models.removal_request import RemovalMethod, RemovalRequest, RemovalStatus
from removal_engine.services.broker_directory import BrokerDirectory
from removal_engine.services.broker_intelligence import BrokerIntelligenceService
from removal_engine.services.broker_rate_limiter import BrokerRateLimiter
from removal_engine.services.rate_limiter import RateLimitResult
from removal_engine.services.removal_executor import RemovalExecutor
from removal_engine.services.removal_sender import SendOutcome, SendResult
from removal_engine.services.removal_state_machine import RemovalStateMachine
from removal_engine.services.retry_policy import RetryPolicy

# Test database engine (SQLite in-memory)
TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

START = datetime(2026, 3, 2, 0, 0, 0)


class FakeClock:
    """Simulated UTC clock; tests move it forward explicitly."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSender:
    """Records sends and returns scripted outcomes, optionally spending simulated time."""

    def __init__(
        self,
        clock: FakeClock | None = None,
        send_duration: timedelta = timedelta(0),
        outcomes: list[SendResult] | None = None,
        default: SendResult | None = None,
    ):
        self.clock = clock
        self.send_duration = send_duration
        self.outcomes = list(outcomes or [])
        self.default = default or SendResult(SendOutcome.SENT)
        self.calls: list[tuple] = []

    def send_removal(self, request, broker):
        self.calls.append((request.id, broker.key))
        if self.clock is not None:
            self.clock.now += self.send_duration
        result = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(result, Exception):
            raise result
        if result.outcome == SendOutcome.SENT and result.method is None:
            return SendResult(SendOutcome.SENT, method=RemovalMethod.AUTO_EMAIL)
        return result


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database session for each test"""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def trigger_limiter() -> MagicMock:
    limiter = MagicMock()
    limiter.check_limit.return_value = RateLimitResult(allowed=True, remaining=10, retry_after=0)
    return limiter


@pytest.fixture(scope="function")
def client(db: Session, trigger_limiter: MagicMock) -> Generator[TestClient, None, None]:
    """Create a test client with database override"""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_trigger_limiter] = lambda: trigger_limiter
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> BrokerDirectory:
    return BrokerDirectory()


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def operator_headers() -> dict:
    return {"Authorization": "Bearer test-operator-key"}


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_request(db: Session, clock: FakeClock, user_id: uuid.UUID):
    """Factory for an exposure plus its removal request.

    ``age_minutes`` sets created_at in the past so ordering is deterministic.
    """

    def _make(
        source: str = "WHITEPAGES",
        status: RemovalStatus = RemovalStatus.PENDING,
        age_minutes: int = 60,
        attempts: int = 0,
        exposure_status: ExposureStatus | None = None,
        owner: uuid.UUID | None = None,
        **fields,
    ) -> RemovalRequest:
        owner = owner or user_id
        created = clock() - timedelta(minutes=age_minutes)
        exposure = Exposure(
            user_id=owner,
            source=source,
            source_name=source.title(),
            source_url=f"https://{source.lower()}.example/listing/123",
            data_type="address history",
            status=exposure_status or ExposureStatus.REMOVAL_PENDING,
            created_at=created,
        )
        db.add(exposure)
        db.flush()
        request = RemovalRequest(
            user_id=owner,
            exposure_id=exposure.id,
            status=status,
            requester_email="person@example.com",
            attempts=attempts,
            created_at=created,
            **fields,
        )
        db.add(request)
        db.commit()
        db.refresh(request)
        return request

    return _make


@pytest.fixture
def build_executor(db: Session, clock: FakeClock, directory: BrokerDirectory):
    """Wire a RemovalExecutor and its collaborators around a sender."""

    def _build(sender, daily_cap: int = 25, spacing_minutes: int = 15):
        state_machine = RemovalStateMachine(db, clock=clock, directory=directory)
        intelligence = BrokerIntelligenceService(db, clock=clock)
        limiter = BrokerRateLimiter(
            db, daily_cap=daily_cap, min_spacing=timedelta(minutes=spacing_minutes), clock=clock
        )
        policy = RetryPolicy(max_attempts=3, failed_after_attempts=2, base_minutes=60, max_minutes=1440)
        executor = RemovalExecutor(
            db, sender, directory, limiter, intelligence, state_machine, policy, clock=clock
        )
        return executor

    return _build


@pytest.fixture
def make_sender(clock: FakeClock):
    def _make(**kwargs) -> FakeSender:
        return FakeSender(clock=clock, **kwargs)

    return _make
