"""
Session materialization: cookies for the browser, durable refresh token for server-side jobs.

Order is fixed: cookies are set first, then the refresh token is persisted. A persistence
failure is logged distinctly and leaves the cookies in place; the OAuth flow still succeeds.
"""
import enum
import logging

from fastapi import Response

from drive_connect.audit import user_ref
from drive_connect.token_exchange import TokenSet
from drive_connect.token_store import TokenStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"


class PersistenceOutcome(enum.Enum):
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    ANONYMOUS_COOKIE_ONLY = "anonymous_cookie_only"
    NO_REFRESH_TOKEN = "no_refresh_token"


def set_access_cookie(response: Response, access_token: str, *, secure: bool, max_age: int) -> None:
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        access_token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="strict",
    )


def set_refresh_cookie(response: Response, refresh_token: str, *, secure: bool, max_age: int) -> None:
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        refresh_token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="strict",
    )


def materialize_session(
    response: Response,
    tokens: TokenSet,
    user_id: str | None,
    token_store: TokenStore,
    *,
    secure: bool,
    access_max_age: int,
    refresh_max_age: int,
    request_id: str | None = None,
) -> PersistenceOutcome:
    """Set session cookies, then persist the refresh token when it can be keyed to a user."""
    if tokens.access_token:
        set_access_cookie(response, tokens.access_token, secure=secure, max_age=access_max_age)
    if tokens.refresh_token:
        set_refresh_cookie(response, tokens.refresh_token, secure=secure, max_age=refresh_max_age)

    if not tokens.refresh_token:
        # Google only returns one on first consent or forced re-consent
        logger.info("No refresh token in token response request_id=%s", request_id)
        return PersistenceOutcome.NO_REFRESH_TOKEN

    if not user_id:
        logger.info(
            "Anonymous flow: refresh token kept in cookie only, not persisted request_id=%s",
            request_id,
        )
        return PersistenceOutcome.ANONYMOUS_COOKIE_ONLY

    try:
        token_store.save(user_id, tokens.refresh_token)
    except Exception as e:  # any store failure is non-fatal to the flow
        logger.error(
            "refresh_token_persist_failed user=%s request_id=%s error=%s",
            user_ref(user_id),
            request_id,
            type(e).__name__,
        )
        return PersistenceOutcome.PERSIST_FAILED
    logger.info("Refresh token persisted user=%s request_id=%s", user_ref(user_id), request_id)
    return PersistenceOutcome.PERSISTED


def clear_session(response: Response, *, secure: bool) -> None:
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="strict")
