"""
Audit logging for the OAuth flow. Security-relevant events only.
Never records tokens, codes, verifiers, secrets or raw user ids (user ids are hashed).
"""
import hashlib
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from drive_connect import config
from drive_connect.models import AuthAuditLog

logger = logging.getLogger(__name__)

EVENT_OAUTH_BEGIN = "oauth_begin"
EVENT_CALLBACK_RECEIVED = "oauth_callback_received"
EVENT_CALLBACK_REJECTED = "oauth_callback_rejected"
EVENT_TOKEN_EXCHANGE = "token_exchange"
EVENT_TOKEN_PERSISTENCE = "token_persistence"
EVENT_TOKEN_REFRESH = "token_refresh"
EVENT_DISCONNECT = "drive_disconnect"
EVENT_TOKEN_SYNC = "token_sync"
EVENT_RATE_LIMITED = "rate_limited"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def redact(value: str | None, keep: int = 6) -> str:
    """Short prefix for correlation; the rest is masked."""
    if not value:
        return "none"
    if len(value) <= keep:
        return "[REDACTED]"
    return f"{value[:keep]}...[REDACTED]"


def user_ref(user_id: str | None) -> str | None:
    """Stable non-reversible reference to a user id for logs."""
    if not user_id:
        return None
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]


def _peer_host(request: Request) -> str | None:
    if request.client is None:
        return None
    return getattr(request.client, "host", None)


def is_trusted_proxy(request: Request | None, trusted_proxies: frozenset | None = None) -> bool:
    """True when the direct peer is a configured reverse proxy (TRUSTED_PROXY)."""
    if request is None:
        return False
    trusted = config.TRUSTED_PROXIES if trusted_proxies is None else trusted_proxies
    if not trusted:
        return False
    return "*" in trusted or _peer_host(request) in trusted


def get_client_ip(request: Request | None, trusted_proxies: frozenset | None = None) -> str | None:
    """
    Peer address, or the first X-Forwarded-For hop when the peer is a trusted proxy.
    Forwarding headers from any other peer are client-controlled and ignored.
    """
    if request is None:
        return None
    if is_trusted_proxy(request, trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip() or _peer_host(request)
    return _peer_host(request)


def log_auth_event(
    db: Session | None,
    event_type: str,
    *,
    request_id: str | None = None,
    user_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    reason: str | None = None,
) -> None:
    """Log the event and append an audit row. A failing audit write never fails the request."""
    ref = user_ref(user_id)
    log = logger.info if outcome == OUTCOME_SUCCESS else logger.warning
    log(
        "AUTH_AUDIT event=%s outcome=%s request_id=%s user=%s ip=%s reason=%s",
        event_type,
        outcome,
        request_id,
        ref or "anonymous",
        ip,
        reason,
    )
    if db is None:
        return
    try:
        db.add(
            AuthAuditLog(
                event_type=event_type,
                request_id=request_id,
                user_ref=ref,
                ip=ip,
                outcome=outcome,
                reason=reason,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Audit write failed for event=%s request_id=%s", event_type, request_id)
