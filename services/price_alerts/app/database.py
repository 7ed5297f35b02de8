from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import PriceAlertSettings

Base = declarative_base()


def create_session_factory(settings: PriceAlertSettings | None = None) -> sessionmaker[Session]:
    settings = settings or PriceAlertSettings()
    connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
    engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
    Base.metadata.create_all(bind=engine)
    # Repositories hand detached rows back to async callers.
    return sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True
    )


def ping(session_factory: sessionmaker[Session]) -> None:
    """Run a trivial query; raises when the database is unreachable."""

    with session_factory() as session:
        session.execute(text("SELECT 1"))
