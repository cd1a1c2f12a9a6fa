"""
Database connection and session.

Schema source of truth: tokoreg.models. On startup, Base.metadata.create_all(bind=engine)
creates all tables and indexes from the current models. The scripts in scripts/ are only
for existing databases that were created before a given column or table was added.

All timestamps are stored as naive UTC so PostgreSQL and SQLite compare them the same way.
"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from tokoreg.config import get_settings

settings = get_settings()
_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
