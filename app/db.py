from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.services.notification_service import install_event_dispatch


def build_engine(url: str):
    if url.startswith('sqlite'):
        return create_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.database_url_normalized)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
install_event_dispatch(SessionLocal)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
