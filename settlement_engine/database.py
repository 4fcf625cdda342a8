"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request

Architecture note:
  Request handlers get a session from get_db(). Background settlement
  workers do NOT share that session: the SettlementDispatcher is handed
  the session factory and opens a short-lived session for each step
  (claim, load, record), so a payout that takes several seconds never holds
  a database transaction open.

SQLite note:
  When DATABASE_URL points at a SQLite file the parent directory is created
  on first import, so a fresh checkout can start without manual setup.
"""

from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from settlement_engine.config import settings


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


_ensure_sqlite_directory(settings.DATABASE_URL)

# DEBUG echoes every statement, including the settlement claim UPDATEs
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# Records stay readable after commit: the coordinator returns the upserted
# Transaction to the router after committing it, and an expired attribute
# would need a lazy load the async session cannot do.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/transactions/{transaction_id}")
        async def read(transaction_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
            ...

    The session is committed on success and rolled back on any exception,
    then closed when the request completes.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
