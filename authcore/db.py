from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from authcore.settings import get_settings


class Base(DeclarativeBase):
    pass


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("postgresql"):
        kwargs["pool_timeout"] = settings.database_pool_timeout_seconds
        kwargs["connect_args"] = {
            "connect_timeout": settings.database_pool_timeout_seconds,
            "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}",
        }
    return kwargs


_database_url = get_settings().database_url
engine = create_engine(_database_url, **_engine_kwargs(_database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
