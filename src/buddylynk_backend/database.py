from typing import Generator, Callable
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
import sqlalchemy.exc as sa_exc

from buddylynk_backend.settings import settings


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            future=True,
        )
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,     # 30 min - protects against idle disconnects
        pool_pre_ping=True,
        future=True,
    )


_engine = build_engine(settings.DATABASE_URL)

SessionLocal: Callable[[], Session] = sessionmaker(
    bind=_engine,
    autocommit=False,
    expire_on_commit=False,  # more convenient with Pydantic
    autoflush=False,
    class_=Session
)


def init_db(engine: Engine = None) -> None:
    """Create the tables owned by this service if they do not exist."""
    from buddylynk_backend.model import Base

    Base.metadata.create_all(bind=engine or _engine)


def _get_db() -> Generator[Session, None, None]:
    """
    Internal database session generator with transaction management.

    Commits on success, rolls back on exceptions, always closes.
    """
    db = SessionLocal()
    try:
        yield db

        if db.in_transaction():
            db.commit()
    except Exception:
        if db.in_transaction():
            db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency: provides a database session.

    Usage:
        @router.get("/messages/unread-count")
        async def unread_count(db: Session = Depends(get_db)):
            ...
    """
    try:
        yield from _get_db()
    except sa_exc.TimeoutError as e:  # pool acquisition timed out
        from buddylynk_backend.exceptions import ServiceUnavailableException
        raise ServiceUnavailableException(
            detail="Database is busy. Please retry shortly.",
            headers={"Retry-After": "2"}
        ) from e
