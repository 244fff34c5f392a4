"""
Server-side use of the durable refresh token: access tokens for background work, cookie/store
sync, and revocation on disconnect. Routes and jobs call these; none of them sets cookies.
"""
import enum
import logging
from dataclasses import dataclass, field

import httpx

from drive_connect.audit import user_ref
from drive_connect.config import ClientCredentials
from drive_connect.errors import (
    InvalidOrExpiredAuthorizationCode,
    NoStoredRefreshToken,
    RefreshTokenRevoked,
    TokenStoreError,
)
from drive_connect.token_exchange import DEFAULT_TIMEOUT_SECONDS, TokenSet, refresh_access_token, revoke_token
from drive_connect.token_store import TokenStore

logger = logging.getLogger(__name__)


def get_valid_access_token(
    user_id: str,
    token_store: TokenStore,
    credentials: ClientCredentials,
    *,
    token_endpoint: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.Client | None = None,
) -> TokenSet:
    """
    Mint an access token from the user's stored refresh token.

    Raises NoStoredRefreshToken when nothing is stored. A refresh token Google rejects is deleted
    and RefreshTokenRevoked raised. A rotated refresh token replaces the stored one.
    """
    refresh_token = token_store.read(user_id)
    if not refresh_token:
        raise NoStoredRefreshToken()
    try:
        tokens = refresh_access_token(
            refresh_token=refresh_token,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            token_endpoint=token_endpoint,
            timeout=timeout,
            client=client,
        )
    except InvalidOrExpiredAuthorizationCode as e:
        logger.warning("Stored refresh token rejected by provider; deleting user=%s", user_ref(user_id))
        token_store.delete(user_id)
        raise RefreshTokenRevoked() from e

    if tokens.refresh_token and tokens.refresh_token != refresh_token:
        token_store.save(user_id, tokens.refresh_token)
        logger.info("Rotated refresh token stored user=%s", user_ref(user_id))
    return tokens


def revoke_user_tokens(
    user_id: str,
    token_store: TokenStore,
    *,
    revocation_endpoint: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    already_revoked: str | None = None,
    client: httpx.Client | None = None,
) -> bool:
    """
    Revoke the stored refresh token at Google (best effort) and delete it.
    Returns True when Google accepted a revocation. already_revoked skips a second call for the
    same token. Deletion failures propagate as TokenStoreError.
    """
    try:
        stored = token_store.read(user_id)
    except TokenStoreError:
        # Unreadable (e.g. key rotated away); still delete it below
        logger.warning("Stored refresh token unreadable on disconnect user=%s", user_ref(user_id))
        stored = None

    revoked = False
    if stored and stored != already_revoked:
        revoked = revoke_token(stored, revocation_endpoint=revocation_endpoint, timeout=timeout, client=client)
    token_store.delete(user_id)
    logger.info("Stored refresh token deleted user=%s revoked=%s", user_ref(user_id), revoked)
    return revoked


class SyncSource(enum.Enum):
    STORE = "store"
    COOKIE = "cookie"
    NONE = "none"


@dataclass(frozen=True)
class SyncResult:
    source: SyncSource
    actions: tuple = ()
    # Set when the refresh_token cookie must be rewritten from the store
    cookie_token: str | None = field(default=None, repr=False)

    @property
    def synced(self) -> bool:
        return self.source is not SyncSource.NONE

    def public_dict(self) -> dict:
        if not self.synced:
            return {"synced": False, "error": "no_refresh_token", "needsReauth": True}
        return {"synced": True, "source": self.source.value, "actions": list(self.actions)}


def sync_tokens(user_id: str, cookie_refresh_token: str | None, token_store: TokenStore) -> SyncResult:
    """
    Reconcile the refresh_token cookie with the durable store. The store wins when both exist;
    a cookie-only token is saved; a store-only token is handed back for the cookie.
    """
    stored = token_store.read(user_id)
    if stored:
        if cookie_refresh_token != stored:
            return SyncResult(SyncSource.STORE, actions=("updated_cookie",), cookie_token=stored)
        return SyncResult(SyncSource.STORE)
    if cookie_refresh_token:
        token_store.save(user_id, cookie_refresh_token)
        return SyncResult(SyncSource.COOKIE, actions=("updated_store",))
    logger.info("No refresh token in cookie or store user=%s", user_ref(user_id))
    return SyncResult(SyncSource.NONE)
