from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///meridian.db"


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str = DEFAULT_DATABASE_URL) -> Engine:
    if database_url.startswith("sqlite"):
        # Bot workers share one engine across threads.
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    # Import models to register them with SQLAlchemy metadata.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
