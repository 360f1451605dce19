"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from tms_payments.config import get_settings

settings = get_settings()

Base = declarative_base()


def build_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite files get their directory created on demand."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}  # Required for SQLite
        path = database_url.replace("sqlite:///", "")
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    return create_engine(database_url, connect_args=connect_args, echo=echo)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from tms_payments.models import payment as _payment_model   # noqa: F401
    from tms_payments.models import fee as _fee_model           # noqa: F401
    from tms_payments.models import audit as _audit_model       # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
