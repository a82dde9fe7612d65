from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings


engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    # Looked up at call time so tests can swap SessionLocal.
    from app.db import session as session_module

    db = session_module.SessionLocal()
    try:
        yield db
    finally:
        db.close()
