"""
SQLAlchemy models: stored refresh tokens, in-flight authorization flows, consumed states, audit log.
No raw state values or user ids in the flow/audit tables; those are hashed.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StoredRefreshToken(Base):
    """Durable refresh token per user; last write wins."""
    __tablename__ = "stored_refresh_tokens"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    encrypted_token: Mapped[str] = mapped_column(Text, nullable=False)
    key_version: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class PendingFlow(Base):
    """PKCE verifier held between begin and callback. Popped on callback; TTL = state window."""
    __tablename__ = "pending_flows"

    state_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    code_verifier: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)


class ConsumedState(Base):
    """State values already processed by a callback (replay guard)."""
    __tablename__ = "consumed_states"

    state_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)


class AuthAuditLog(Base):
    __tablename__ = "auth_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_ref: Mapped[str | None] = mapped_column(String(16), nullable=True)  # hashed; None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
