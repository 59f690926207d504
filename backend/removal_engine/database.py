from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from removal_engine.config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for getting database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables"""
    # Import models to register them with SQLAlchemy's metadata
    import removal_engine.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
