"""
Engine and session factory for the shop database.

The bot thread and the API worker threads each open their own sessions
through ``SessionLocal``; nothing shares a session across threads.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from vpnshop.core.config import settings


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # one connection per session, SQLite file locks do the rest
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=NullPool)
    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
