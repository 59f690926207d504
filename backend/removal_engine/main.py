import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from removal_engine.api import cron, email_events, removals
from removal_engine.config import settings
from removal_engine.database import init_db
from removal_engine.limiter import limiter
from removal_engine.logging_config import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("Starting Broker Removal Engine API")
    if not settings.is_production:
        init_db()
        logger.info("Database initialized")
    yield
    logger.info("Shutting down Broker Removal Engine API")


app = FastAPI(
    title="Broker Removal Engine API",
    description="Scheduled removal-request processing for data broker opt-outs",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Webhook-Secret"],
)


@app.get("/")
def read_root():
    return {"message": "Broker Removal Engine API", "docs": "/docs", "version": "1.0.0"}


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


app.include_router(cron.router, prefix="/cron", tags=["Scheduled Jobs"])
app.include_router(removals.router, prefix="/removals", tags=["Removal Requests"])
app.include_router(email_events.router, prefix="/email", tags=["Email Delivery"])
