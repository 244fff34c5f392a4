"""
Drive OAuth endpoints.
POST /api/auth/drive/begin, GET|POST /api/auth/drive/callback, GET /api/auth/drive/status,
POST /api/auth/drive/refresh, POST /api/auth/drive/sync, POST /api/auth/drive/disconnect.
"""
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from drive_connect import config
from drive_connect.audit import (
    EVENT_CALLBACK_RECEIVED,
    EVENT_CALLBACK_REJECTED,
    EVENT_DISCONNECT,
    EVENT_OAUTH_BEGIN,
    EVENT_RATE_LIMITED,
    EVENT_TOKEN_EXCHANGE,
    EVENT_TOKEN_PERSISTENCE,
    EVENT_TOKEN_REFRESH,
    EVENT_TOKEN_SYNC,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    is_trusted_proxy,
    log_auth_event,
    redact,
)
from drive_connect.authorize import begin_authorization
from drive_connect.callback import CallbackParams, validate_callback
from drive_connect.database import SessionLocal, get_db
from drive_connect.errors import (
    CallbackRejected,
    DriveAuthError,
    InvalidOrExpiredAuthorizationCode,
    NoStoredRefreshToken,
    ReauthorizationRequired,
    RefreshTokenRevoked,
    ReplayedStateError,
    TokenStoreError,
    sanitize_provider_error,
)
from drive_connect.flow_store import consume_state, pop_flow, purge_expired, store_flow
from drive_connect.rate_limit import RateLimiter, SlidingWindowRateLimiter
from drive_connect.session import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    PersistenceOutcome,
    clear_session,
    materialize_session,
    set_access_cookie,
    set_refresh_cookie,
)
from drive_connect.token_cipher import TokenCipher
from drive_connect.token_exchange import classify_exception, exchange_code, refresh_access_token, revoke_token
from drive_connect.token_service import get_valid_access_token, revoke_user_tokens, sync_tokens
from drive_connect.token_store import SqlTokenStore, TokenStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth/drive")

_token_store: TokenStore | None = None
_rate_limiter: RateLimiter = SlidingWindowRateLimiter(config.RATE_LIMIT_BEGIN_PER_MINUTE)


def get_token_store() -> TokenStore:
    global _token_store
    if _token_store is None:
        _token_store = SqlTokenStore(SessionLocal, TokenCipher(config.TOKEN_ENCRYPTION_KEYS))
    return _token_store


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


def get_user_id(request: Request) -> str | None:
    """Authenticated DriveMind user, as asserted by a trusted proxy in USER_ID_HEADER."""
    if not is_trusted_proxy(request):
        return None
    value = (request.headers.get(config.USER_ID_HEADER) or "").strip()
    return value[:255] or None


def _new_request_id() -> str:
    return secrets.token_hex(16)


async def _json_body(request: Request) -> dict:
    """Parsed JSON object body, or {} when absent or not an object."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# --- begin ---


def _begin(db: Session, user_id: str | None, request_id: str, ip: str | None) -> JSONResponse:
    try:
        credentials = config.get_client_credentials()
        auth_request = begin_authorization(
            credentials,
            authorization_endpoint=config.AUTHORIZATION_ENDPOINT,
            redirect_uri=config.REDIRECT_URI,
            scopes=config.DEFAULT_SCOPES,
            user_id=user_id,
        )
    except DriveAuthError as e:
        logger.error("OAuth begin failed: %s context=%s request_id=%s", e.error_code, e.context, request_id)
        log_auth_event(db, EVENT_OAUTH_BEGIN, request_id=request_id, ip=ip, outcome=OUTCOME_FAIL, reason=e.error_code)
        return JSONResponse({**e.to_dict(), "requestId": request_id}, status_code=e.status_code)

    purge_expired(db, config.STATE_TTL_MS)
    store_flow(db, auth_request.state, auth_request.code_verifier, user_id)
    logger.info(
        "OAuth begin: state=%s challenge=%s request_id=%s",
        redact(auth_request.state, keep=8),
        redact(auth_request.code_challenge, keep=8),
        request_id,
    )
    log_auth_event(db, EVENT_OAUTH_BEGIN, request_id=request_id, user_id=user_id, ip=ip)
    return JSONResponse(auth_request.public_dict())


@router.post("/begin")
async def begin(
    request: Request,
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Start the consent flow. Body: {userId?}. Returns {url, state, codeChallenge}."""
    request_id = _new_request_id()
    ip = get_client_ip(request)
    decision = limiter.check_and_consume(ip or "unknown")
    if not decision.allowed:
        await run_in_threadpool(
            log_auth_event, db, EVENT_RATE_LIMITED, request_id=request_id, ip=ip, outcome=OUTCOME_FAIL
        )
        return JSONResponse(
            {
                "error": "rate_limit_exceeded",
                "message": "Too many requests. Please try again later.",
                "retryAfter": decision.retry_after,
            },
            status_code=429,
            headers=decision.headers(),
        )

    body = await _json_body(request)
    user_id = body.get("userId")
    if user_id is not None and (not isinstance(user_id, str) or not user_id.strip() or len(user_id) > 255):
        response = JSONResponse(
            {"error": "invalid_request", "message": "userId must be a non-empty string", "requestId": request_id},
            status_code=400,
        )
    else:
        response = await run_in_threadpool(_begin, db, (user_id or "").strip() or None, request_id, ip)
    response.headers.update(decision.headers())
    return response


# --- callback ---


def _error_response(error: DriveAuthError, method: str, request_id: str):
    if method == "POST":
        return JSONResponse({**error.to_dict(), "requestId": request_id}, status_code=error.status_code)
    query = urlencode({"error": error.error_code, "request_id": request_id})
    return RedirectResponse(url=f"{config.APP_BASE_URL}/ai?{query}", status_code=302)


def _success_response(method: str, request_id: str):
    if method == "POST":
        return JSONResponse(
            {"success": True, "message": "Drive connected successfully", "requestId": request_id}
        )
    query = urlencode({"drive_connected": "true", "request_id": request_id})
    return RedirectResponse(url=f"{config.APP_BASE_URL}/ai?{query}", status_code=302)


def handle_callback(
    params: CallbackParams,
    method: str,
    db: Session,
    token_store: TokenStore,
    ip: str | None = None,
):
    """
    Shared by the redirect (GET) and client-forwarded (POST) callbacks.
    validate -> consume state -> exchange -> cookies -> persist. Nothing reaches the network
    until validation and the replay check have passed.
    """
    request_id = _new_request_id()
    log_auth_event(db, EVENT_CALLBACK_RECEIVED, request_id=request_id, ip=ip)
    logger.info(
        "OAuth callback via %s: code=%s state=%s error=%s request_id=%s",
        method,
        bool(params.code),
        bool(params.state),
        sanitize_provider_error(params.error) if params.error else None,
        request_id,
    )

    user_id = None
    try:
        validated = validate_callback(
            params,
            window_ms=config.STATE_TTL_MS,
            allow_legacy=config.ALLOW_LEGACY_STATE,
            request_id=request_id,
        )
        user_id = validated.user_id
        credentials = config.get_client_credentials()

        if not consume_state(db, validated.replay_key, config.STATE_TTL_MS):
            logger.error("OAuth callback replay detected request_id=%s", request_id)
            raise ReplayedStateError()

        flow = pop_flow(db, validated.state, config.STATE_TTL_MS)
        code_verifier = validated.code_verifier or (flow.code_verifier if flow else None)
        if not code_verifier:
            logger.info("No PKCE verifier held for this state request_id=%s", request_id)

        tokens = exchange_code(
            code=validated.code,
            redirect_uri=config.REDIRECT_URI,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            token_endpoint=config.TOKEN_ENDPOINT,
            code_verifier=code_verifier,
            timeout=config.TOKEN_TIMEOUT_SECONDS,
        )
    except CallbackRejected as e:
        log_auth_event(
            db,
            EVENT_CALLBACK_REJECTED,
            request_id=request_id,
            user_id=user_id,
            ip=ip,
            outcome=OUTCOME_FAIL,
            reason=e.error_code,
        )
        return _error_response(e, method, request_id)
    except Exception as e:
        error = classify_exception(e)
        if error is e:
            logger.error(
                "OAuth callback failed: %s provider_error=%s context=%s request_id=%s",
                error.error_code,
                getattr(error, "provider_error", None),
                error.context,
                request_id,
            )
        else:
            logger.exception("OAuth callback processing error classified as %s request_id=%s", error.error_code, request_id)
        log_auth_event(
            db,
            EVENT_TOKEN_EXCHANGE,
            request_id=request_id,
            user_id=user_id,
            ip=ip,
            outcome=OUTCOME_FAIL,
            reason=error.error_code,
        )
        return _error_response(error, method, request_id)

    log_auth_event(db, EVENT_TOKEN_EXCHANGE, request_id=request_id, user_id=user_id, ip=ip)

    response = _success_response(method, request_id)
    outcome = materialize_session(
        response,
        tokens,
        user_id,
        token_store,
        secure=config.COOKIE_SECURE,
        access_max_age=config.ACCESS_TOKEN_COOKIE_MAX_AGE,
        refresh_max_age=config.REFRESH_TOKEN_COOKIE_MAX_AGE,
        request_id=request_id,
    )
    if outcome is not PersistenceOutcome.NO_REFRESH_TOKEN:
        log_auth_event(
            db,
            EVENT_TOKEN_PERSISTENCE,
            request_id=request_id,
            user_id=user_id,
            ip=ip,
            outcome=OUTCOME_SUCCESS if outcome is PersistenceOutcome.PERSISTED else OUTCOME_FAIL,
            reason=outcome.value,
        )
    return response


@router.get("/callback")
def callback_redirect(
    request: Request,
    db: Session = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
):
    """Google redirects here with ?code=&state= or ?error=."""
    params = CallbackParams.from_query(request.query_params)
    return handle_callback(params, "GET", db, token_store, ip=get_client_ip(request))


@router.post("/callback")
async def callback_forwarded(
    request: Request,
    db: Session = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
):
    """Client-forwarded callback: {code, state, error?, codeVerifier?}."""
    params = CallbackParams.from_body(await _json_body(request))
    return await run_in_threadpool(handle_callback, params, "POST", db, token_store, get_client_ip(request))


# --- session helpers ---


@router.get("/status")
def status(request: Request):
    """Connection status from session cookies; no provider call."""
    has_access = bool(request.cookies.get(ACCESS_TOKEN_COOKIE))
    has_refresh = bool(request.cookies.get(REFRESH_TOKEN_COOKIE))
    return {
        "connected": has_access or has_refresh,
        "hasAccessToken": has_access,
        "hasRefreshToken": has_refresh,
    }


@router.post("/refresh")
def refresh(
    request: Request,
    db: Session = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
    user_id: str | None = Depends(get_user_id),
):
    """
    Mint a new access token and reset the access cookie. Uses the refresh-token cookie, or the
    stored refresh token when there is no cookie but the user is known.
    """
    request_id = _new_request_id()
    ip = get_client_ip(request)
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    try:
        if not refresh_token and not user_id:
            raise NoStoredRefreshToken()
        credentials = config.get_client_credentials()
        if refresh_token:
            try:
                tokens = refresh_access_token(
                    refresh_token=refresh_token,
                    client_id=credentials.client_id,
                    client_secret=credentials.client_secret,
                    token_endpoint=config.TOKEN_ENDPOINT,
                    timeout=config.TOKEN_TIMEOUT_SECONDS,
                )
            except InvalidOrExpiredAuthorizationCode as e:
                raise RefreshTokenRevoked() from e
        else:
            tokens = get_valid_access_token(
                user_id,
                token_store,
                credentials,
                token_endpoint=config.TOKEN_ENDPOINT,
                timeout=config.TOKEN_TIMEOUT_SECONDS,
            )
    except ReauthorizationRequired as e:
        log_auth_event(
            db, EVENT_TOKEN_REFRESH, request_id=request_id, user_id=user_id, ip=ip, outcome=OUTCOME_FAIL, reason=e.error_code
        )
        response = JSONResponse({**e.to_dict(), "requestId": request_id}, status_code=e.status_code)
        if isinstance(e, RefreshTokenRevoked):
            # Revoked or expired at Google: the cookie session is dead
            clear_session(response, secure=config.COOKIE_SECURE)
        return response
    except Exception as e:
        error = classify_exception(e)
        logger.error("Token refresh failed: %s request_id=%s", error.error_code, request_id)
        log_auth_event(
            db, EVENT_TOKEN_REFRESH, request_id=request_id, user_id=user_id, ip=ip, outcome=OUTCOME_FAIL, reason=error.error_code
        )
        return JSONResponse({**error.to_dict(), "requestId": request_id}, status_code=error.status_code)

    log_auth_event(db, EVENT_TOKEN_REFRESH, request_id=request_id, user_id=user_id, ip=ip)
    response = JSONResponse({"success": True, "expiryDate": tokens.expiry_date, "requestId": request_id})
    set_access_cookie(
        response, tokens.access_token, secure=config.COOKIE_SECURE, max_age=config.ACCESS_TOKEN_COOKIE_MAX_AGE
    )
    if tokens.refresh_token and tokens.refresh_token != refresh_token:
        set_refresh_cookie(
            response, tokens.refresh_token, secure=config.COOKIE_SECURE, max_age=config.REFRESH_TOKEN_COOKIE_MAX_AGE
        )
    return response


@router.post("/sync")
def sync(
    request: Request,
    db: Session = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
    user_id: str | None = Depends(get_user_id),
):
    """Reconcile the refresh-token cookie with the durable store for the current user."""
    request_id = _new_request_id()
    ip = get_client_ip(request)
    if not user_id:
        return JSONResponse(
            {"error": "unauthenticated", "message": "User authentication required", "requestId": request_id},
            status_code=401,
        )
    try:
        result = sync_tokens(user_id, request.cookies.get(REFRESH_TOKEN_COOKIE), token_store)
    except TokenStoreError as e:
        logger.error("Token sync failed: %s request_id=%s", e.error_code, request_id)
        log_auth_event(
            db, EVENT_TOKEN_SYNC, request_id=request_id, user_id=user_id, ip=ip, outcome=OUTCOME_FAIL, reason=e.error_code
        )
        return JSONResponse({**e.to_dict(), "requestId": request_id}, status_code=e.status_code)

    log_auth_event(
        db,
        EVENT_TOKEN_SYNC,
        request_id=request_id,
        user_id=user_id,
        ip=ip,
        outcome=OUTCOME_SUCCESS if result.synced else OUTCOME_FAIL,
        reason=result.source.value,
    )
    response = JSONResponse({**result.public_dict(), "requestId": request_id})
    if result.cookie_token:
        set_refresh_cookie(
            response, result.cookie_token, secure=config.COOKIE_SECURE, max_age=config.REFRESH_TOKEN_COOKIE_MAX_AGE
        )
    return response


@router.post("/disconnect")
def disconnect(
    request: Request,
    db: Session = Depends(get_db),
    token_store: TokenStore = Depends(get_token_store),
    user_id: str | None = Depends(get_user_id),
):
    """Revoke at Google (best effort), delete the stored token for a known user and clear cookies."""
    request_id = _new_request_id()
    token = request.cookies.get(REFRESH_TOKEN_COOKIE) or request.cookies.get(ACCESS_TOKEN_COOKIE)
    revoked = False
    if token:
        revoked = revoke_token(
            token, revocation_endpoint=config.REVOCATION_ENDPOINT, timeout=config.TOKEN_TIMEOUT_SECONDS
        )

    body = {"disconnected": True, "revoked": revoked, "requestId": request_id}
    if user_id:
        try:
            stored_revoked = revoke_user_tokens(
                user_id,
                token_store,
                revocation_endpoint=config.REVOCATION_ENDPOINT,
                timeout=config.TOKEN_TIMEOUT_SECONDS,
                already_revoked=token,
            )
        except TokenStoreError as e:
            logger.error("Stored token delete failed: %s request_id=%s", e.error_code, request_id)
            body["tokenDeleted"] = False
        else:
            body["tokenDeleted"] = True
            body["revoked"] = revoked or stored_revoked

    log_auth_event(
        db,
        EVENT_DISCONNECT,
        request_id=request_id,
        user_id=user_id,
        ip=get_client_ip(request),
        outcome=OUTCOME_SUCCESS if body["revoked"] or not token else OUTCOME_FAIL,
        reason=None if body.get("tokenDeleted", True) else "token_store_error",
    )
    response = JSONResponse(body)
    clear_session(response, secure=config.COOKIE_SECURE)
    return response
