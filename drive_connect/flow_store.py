"""
Durable store for in-flight authorization flows (state -> code_verifier) and the replay guard.
Begin and callback may hit different instances, so nothing here lives in process memory.
Rows expire after the state freshness window.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from drive_connect.models import ConsumedState, PendingFlow as PendingFlowRow

logger = logging.getLogger(__name__)


@dataclass
class PendingFlow:
    code_verifier: str = field(repr=False)
    user_id: str | None
    created_at: datetime

    def expired(self, window_ms: int, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at) > timedelta(milliseconds=window_ms)


def state_hash(state: str) -> str:
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


def _aware(dt: datetime) -> datetime:
    # SQLite returns naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def store_flow(db: Session, state: str, code_verifier: str, user_id: str | None = None) -> None:
    db.add(PendingFlowRow(state_hash=state_hash(state), code_verifier=code_verifier, user_id=user_id))
    db.commit()


def pop_flow(db: Session, state: str, window_ms: int) -> PendingFlow | None:
    """Remove and return the flow for state. None if unknown or expired (single use either way)."""
    row = db.get(PendingFlowRow, state_hash(state))
    if row is None:
        return None
    flow = PendingFlow(code_verifier=row.code_verifier, user_id=row.user_id, created_at=_aware(row.created_at))
    db.delete(row)
    db.commit()
    if flow.expired(window_ms):
        return None
    return flow


def consume_state(db: Session, replay_key: str, window_ms: int) -> bool:
    """
    Record a callback's replay key (see ValidatedCallback.replay_key) as processed.
    Returns False if it was already consumed within the window.
    Must run before the token exchange so a replayed callback never reaches the provider.
    """
    key = state_hash(replay_key)
    row = db.get(ConsumedState, key)
    if row is None:
        db.add(ConsumedState(state_hash=key))
        try:
            db.commit()
            return True
        except IntegrityError:
            # Lost the race to a concurrent callback with the same state
            db.rollback()
            return False

    now = datetime.now(timezone.utc)
    if (now - _aware(row.consumed_at)) > timedelta(milliseconds=window_ms):
        # Marker older than the window; take it over
        row.consumed_at = now
        db.commit()
        return True
    return False


def purge_expired(db: Session, window_ms: int, now: datetime | None = None) -> int:
    """Delete flows and consumed-state markers older than the window. Returns rows removed."""
    now = now or datetime.now(timezone.utc)
    # Stored naive in SQLite; compare against a naive UTC cutoff there
    cutoff = now - timedelta(milliseconds=window_ms)
    if db.bind is not None and db.bind.dialect.name == "sqlite":
        cutoff = cutoff.replace(tzinfo=None)
    removed = db.query(PendingFlowRow).filter(PendingFlowRow.created_at < cutoff).delete()
    removed += db.query(ConsumedState).filter(ConsumedState.consumed_at < cutoff).delete()
    db.commit()
    if removed:
        logger.debug("Purged %s expired flow rows", removed)
    return removed
