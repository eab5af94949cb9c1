import asyncio
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from smartlink.config import settings


def _engine_connect_args() -> dict:
    if settings.DATABASE_URL.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine: Engine = create_engine(
    settings.DATABASE_URL,
    future=True,
    pool_pre_ping=settings.DB_POOL_PRE_PING,
    connect_args=_engine_connect_args(),
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(session_factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """Provide a session for one unit of DB work and always close it."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


async def run_in_session(session_factory: Callable[[], Session], fn: Callable[[Session], Any]) -> Any:
    """Run blocking DB work in a worker thread with its own short-lived session."""

    def _call() -> Any:
        with session_scope(session_factory) as session:
            return fn(session)

    return await asyncio.to_thread(_call)


def init_db() -> None:
    # Registers the mapped classes on Base.metadata before create_all.
    from smartlink.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
