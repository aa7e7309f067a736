from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from print_lifecycle.config import settings
from print_lifecycle.models import Base

_connect_args = (
    {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
)
engine = create_engine(settings.database_url, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db() -> None:
    """Create all tables."""
    Base.metadata.create_all(engine)


def get_db() -> Session:
    """Get a database session. Caller must close it."""
    return SessionLocal()
