"""
Google token endpoint calls: authorization-code exchange, refresh, revocation.

One round-trip per call with a bounded timeout and no retry; retrying is the caller's decision.
Failures are classified, never collapsed into one generic error.
"""
import logging
import time
from dataclasses import dataclass, field

import httpx

from drive_connect.errors import (
    DriveAuthError,
    InvalidClientCredentials,
    InvalidOrExpiredAuthorizationCode,
    NetworkError,
    RedirectUriMismatch,
    TokenExchangeError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# Checked in order; the provider's "error" field is tried before the free-text message
_CLASSIFIERS = (
    ("invalid_client", InvalidClientCredentials),
    ("unauthorized_client", InvalidClientCredentials),
    ("redirect_uri_mismatch", RedirectUriMismatch),
    ("invalid_grant", InvalidOrExpiredAuthorizationCode),
)


@dataclass(frozen=True)
class TokenSet:
    access_token: str = field(repr=False)
    expiry_date: int  # epoch millis
    scopes: frozenset = frozenset()
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str = "Bearer"
    id_token: str | None = field(default=None, repr=False)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    def expired(self, now_ms: int | None = None, buffer_ms: int = 0) -> bool:
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        return now_ms + buffer_ms >= self.expiry_date

    @classmethod
    def from_response(cls, data: dict, now_ms: int | None = None) -> "TokenSet":
        access_token = data.get("access_token")
        if not access_token:
            raise UnknownProviderError("Token response missing access_token")
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expiry_date=now_ms + expires_in * 1000,
            scopes=frozenset((data.get("scope") or "").split()),
            token_type=data.get("token_type") or "Bearer",
            id_token=data.get("id_token") or None,
        )


def classify_provider_error(message: str | None, provider_error: str | None = None) -> TokenExchangeError:
    """Map a provider error code or message to the exchange failure taxonomy."""
    for candidate in (provider_error, message):
        if not candidate:
            continue
        lowered = candidate.lower()
        for needle, error_cls in _CLASSIFIERS:
            if needle in lowered:
                return error_cls(provider_error=provider_error or needle)
    return UnknownProviderError(provider_error=provider_error)


def classify_exception(exc: Exception) -> DriveAuthError:
    """Classify an exception raised anywhere in the exchange path."""
    if isinstance(exc, DriveAuthError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, ConnectionError, TimeoutError)):
        return NetworkError(reason=type(exc).__name__)
    return classify_provider_error(str(exc))


def _error_from_response(r) -> TokenExchangeError:
    err = {}
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            err = r.json() or {}
        except ValueError:
            err = {}
    provider_error = err.get("error") if isinstance(err, dict) else None
    if isinstance(provider_error, dict):
        # Some Google endpoints nest {"error": {"status": ..., "message": ...}}
        provider_error = provider_error.get("status") or provider_error.get("message")
    description = err.get("error_description") if isinstance(err, dict) else None
    error = classify_provider_error(description or getattr(r, "text", None), provider_error)
    error.context.update(status=r.status_code)
    return error


def _post(url: str, data: dict, timeout: float, client: httpx.Client | None):
    poster = client.post if client is not None else httpx.post
    try:
        return poster(url, data=data, headers={"Accept": "application/json"}, timeout=timeout)
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise NetworkError(reason=type(e).__name__) from e


def _parse_success(r) -> dict:
    try:
        data = r.json()
    except ValueError as e:
        raise UnknownProviderError("Token response was not JSON") from e
    if not isinstance(data, dict):
        raise UnknownProviderError("Token response was not an object")
    return data


def exchange_code(
    *,
    code: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str,
    token_endpoint: str,
    code_verifier: str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.Client | None = None,
) -> TokenSet:
    """Exchange an authorization code (+ PKCE verifier when held) for tokens."""
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier

    r = _post(token_endpoint, data, timeout, client)
    if r.status_code != 200:
        raise _error_from_response(r)
    tokens = TokenSet.from_response(_parse_success(r))
    logger.debug(
        "Token exchange ok: refresh_token=%s scopes=%s",
        tokens.has_refresh_token,
        " ".join(sorted(tokens.scopes)),
    )
    return tokens


def refresh_access_token(
    *,
    refresh_token: str,
    client_id: str,
    client_secret: str,
    token_endpoint: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.Client | None = None,
) -> TokenSet:
    """Mint a new access token. Keeps the old refresh token when Google does not rotate it."""
    r = _post(
        token_endpoint,
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        },
        timeout,
        client,
    )
    if r.status_code != 200:
        raise _error_from_response(r)
    data = _parse_success(r)
    data.setdefault("refresh_token", refresh_token)
    return TokenSet.from_response(data)


def revoke_token(
    token: str,
    *,
    revocation_endpoint: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.Client | None = None,
) -> bool:
    """Best-effort revocation. Returns True when Google accepted it."""
    try:
        r = _post(revocation_endpoint, {"token": token}, timeout, client)
    except NetworkError:
        logger.warning("Token revocation failed: provider unreachable")
        return False
    if r.status_code != 200:
        logger.warning("Token revocation rejected: status=%s", r.status_code)
        return False
    return True
