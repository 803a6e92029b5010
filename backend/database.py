"""
Database connection for CampCAD
"""

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("CAMPCAD_DATABASE_URL", "postgresql:///campcad_db")


def _engine_options(url: str) -> dict:
    """Pool settings for server databases; SQLite manages its own pool."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_size": int(os.environ.get("CAMPCAD_DB_POOL_SIZE", "10")),        # Base connections to keep open
        "max_overflow": int(os.environ.get("CAMPCAD_DB_MAX_OVERFLOW", "20")),  # Additional connections when busy
        "pool_timeout": 30,     # Seconds to wait for connection before error
        "pool_recycle": 1800,   # Recycle connections after 30 min (prevents stale)
        "pool_pre_ping": True,  # Test connections before using (handles dropped connections)
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
