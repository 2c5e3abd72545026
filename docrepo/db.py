from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from docrepo.config import settings


class Base(DeclarativeBase):
    pass


def _pool_options() -> dict:
    # SQLite (tests, local runs) uses its own pool classes without sizing knobs.
    if settings.database_url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }


def get_engine():
    return create_engine(settings.database_url, pool_pre_ping=True, **_pool_options())


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Request-scoped SQLAlchemy session, closed once the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
