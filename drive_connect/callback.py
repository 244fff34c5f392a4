"""
Callback validation. Runs entirely before any network call, in fixed precedence:
provider error -> missing code -> missing state -> malformed state -> expired state -> VALID.

Redirect (GET query) and programmatic (POST body) invocations build the same CallbackParams
and go through the same rules.
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from drive_connect.errors import (
    CallbackOutcome,
    ExpiredStateError,
    MalformedStateError,
    MissingCodeError,
    MissingStateError,
    ProviderErrorReported,
    sanitize_provider_error,
)
from drive_connect.state_codec import DEFAULT_WINDOW_MS, State, decode_state, ensure_fresh

logger = logging.getLogger(__name__)


def _clean(value) -> str | None:
    if value is None or not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class CallbackParams:
    code: str | None = field(default=None, repr=False)
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    code_verifier: str | None = field(default=None, repr=False)

    @classmethod
    def from_query(cls, query: Mapping) -> "CallbackParams":
        """Provider redirect: ?code=...&state=... or ?error=...&state=..."""
        return cls(
            code=_clean(query.get("code")),
            state=_clean(query.get("state")),
            error=_clean(query.get("error")),
            error_description=_clean(query.get("error_description")),
        )

    @classmethod
    def from_body(cls, body: Mapping) -> "CallbackParams":
        """Client-forwarded JSON: {code, state, error?, codeVerifier?}"""
        return cls(
            code=_clean(body.get("code")),
            state=_clean(body.get("state")),
            error=_clean(body.get("error")),
            error_description=_clean(body.get("error_description")),
            code_verifier=_clean(body.get("codeVerifier")),
        )


@dataclass(frozen=True)
class ValidatedCallback:
    code: str = field(repr=False)
    state: str
    decoded: State
    code_verifier: str | None = field(default=None, repr=False)
    outcome: CallbackOutcome = CallbackOutcome.VALID

    @property
    def user_id(self) -> str | None:
        return self.decoded.user_id

    @property
    def freshness_known(self) -> bool:
        return self.decoded.freshness_known

    @property
    def replay_key(self) -> str:
        """
        Value the replay guard marks as consumed. A structured state is unique per attempt; a legacy
        state is the bare user id and repeats on every connect, so it is paired with the code.
        """
        if self.freshness_known:
            return self.state
        return f"{self.state}\n{self.code}"


def validate_callback(
    params: CallbackParams,
    *,
    now: int | None = None,
    window_ms: int = DEFAULT_WINDOW_MS,
    allow_legacy: bool = True,
    request_id: str | None = None,
) -> ValidatedCallback:
    """Return ValidatedCallback or raise the CallbackRejected subclass for the first failing rule."""
    if params.error:
        logger.warning(
            "OAuth provider returned error=%s request_id=%s", sanitize_provider_error(params.error), request_id
        )
        raise ProviderErrorReported(params.error, description=params.error_description)

    if not params.code:
        logger.warning("OAuth callback without authorization code request_id=%s", request_id)
        raise MissingCodeError()

    if not params.state:
        logger.error("OAuth callback without state; possible CSRF request_id=%s", request_id)
        raise MissingStateError()

    try:
        decoded = decode_state(params.state, allow_legacy=allow_legacy)
    except MalformedStateError as e:
        logger.error(
            "OAuth callback with malformed state; treated as CSRF reason=%s request_id=%s",
            e.context.get("reason"),
            request_id,
        )
        raise

    try:
        ensure_fresh(decoded, now=now, window_ms=window_ms)
    except ExpiredStateError:
        logger.warning(
            "OAuth callback with expired state issued_at=%s window_ms=%s request_id=%s",
            decoded.issued_at,
            window_ms,
            request_id,
        )
        raise

    if not decoded.freshness_known:
        logger.info("OAuth callback with legacy state; freshness unknown request_id=%s", request_id)

    return ValidatedCallback(
        code=params.code,
        state=params.state,
        decoded=decoded,
        code_verifier=params.code_verifier,
    )

