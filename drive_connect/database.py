"""
Storage for Drive Connect: pending PKCE flows, consumed-state markers, encrypted refresh tokens
and the auth audit log. DRIVE_DATABASE_URL picks the backend; a local SQLite file by default.
"""
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from drive_connect.config import DATABASE_URL
from drive_connect.models import Base


def build_engine(url: str) -> Engine:
    """Engine for url. Routes run in FastAPI's threadpool, so SQLite connections cross threads."""
    if url.startswith("sqlite:///:memory:"):
        # One shared connection, otherwise every session sees its own empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    # Server databases drop idle connections; check before handing one out
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create the flow, token and audit tables if missing."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Request-scoped session for the flow store and audit rows."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
