"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine and provides small
helpers used by the application, the CLI scripts and tests. Without a
`DATABASE_URL` the database is a local SQLite file `app.db` next to the
package directory. The special URL `sqlite://` gives a single shared
in-memory database, which is what the test-suite uses.
"""

from pathlib import Path

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from .config import settings

BASE = Path(__file__).resolve().parent.parent
DB_URL = settings.DATABASE_URL or f"sqlite:///{BASE / 'app.db'}"


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # every connection must see the same in-memory database
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False, connect_args={"check_same_thread": False})


engine = _make_engine(DB_URL)


def create_db_and_tables():
    """Create database tables using SQLModel metadata.

    This is intended for local development and lightweight scripts;
    production deployments should rely on a proper migration tool
    (alembic) instead.
    """
    from . import models  # noqa: F401  registers the tables on the metadata

    SQLModel.metadata.create_all(engine)


def drop_db_and_tables():
    """Drop every table known to the metadata. Used by the tests."""
    from . import models  # noqa: F401

    SQLModel.metadata.drop_all(engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
