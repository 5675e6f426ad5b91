"""Catalog database: engine, session factory and FastAPI session dependency."""

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    echo=settings.DEBUG,
)

# Store writes commit per step; expire_on_commit=False keeps returned rows readable afterwards.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Session for one unit of work outside a request (CLI, jobs); always closed."""
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_db() -> Generator[Session, None, None]:
    """Dependency that yields a DB session and closes it when the request is done."""
    with session_scope() as db:
        yield db


def check_db_connected(db: Session) -> bool:
    """Run a trivial query to verify the catalog database is reachable."""
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
