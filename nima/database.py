"""
nima/database.py
────────────────
Database engine + session factory using SQLModel.

• Engine is created once at import time from Settings.
• get_session() is a FastAPI dependency that yields a managed
  session (always closed, uncommitted work rolled back).
• session_scope() is the same thing for background steps that run
  outside a request.
• create_db_and_tables() is called from the lifespan hook in main.py.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlmodel import Session, SQLModel, create_engine

from nima.core.config import get_settings

settings = get_settings()

# SQLite needs check_same_thread=False; other drivers do not.
_connect_args = {"check_same_thread": False} if settings.is_sqlite else {}

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.APP_DEBUG,       # SQL logging only in debug mode
    connect_args=_connect_args,
)


def create_db_and_tables() -> None:
    """Create all tables declared in SQLModel models."""
    # Table classes must be registered on the metadata first.
    import nima.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency that yields a database session.
    The 'with' block ensures the session is always closed and any
    uncommitted transaction is rolled back on exception.
    """
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Short-lived session for one unit of background work."""
    with Session(engine) as session:
        yield session
