import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from momo_billing import config  # noqa: F401  (loads .env)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")


def build_engine(url: str):
    # Webhooks and the request thread share the SQLite file in dev/test
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """Request-scoped session; services commit or roll back explicitly."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
