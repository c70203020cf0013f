from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings

DATABASE_URL = settings.database_url

_connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # needed for SQLite with FastAPI threads and pipeline worker threads
    _connect_args["check_same_thread"] = False

engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args,
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(
    bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def utcnow() -> datetime:
    # naive UTC: SQLite drops tzinfo, so every column stores UTC without it
    return datetime.now(timezone.utc).replace(tzinfo=None)
