"""
Error taxonomy for the Drive OAuth flow.

Each error carries a user-safe ``error_code`` and an HTTP status. ``message`` is safe to
return to the client; ``context`` is for server-side logs only and never leaves the boundary.
"""
import enum
import re


class DriveAuthError(Exception):
    """Base class. Subclasses set error_code, status_code and a default message."""

    error_code = "authentication_failed"
    status_code = 500
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ConfigurationError(DriveAuthError):
    error_code = "oauth_config_incomplete"
    default_message = "OAuth configuration incomplete"


class CryptoUnavailableError(DriveAuthError):
    error_code = "service_configuration_error"
    default_message = "Secure random source unavailable"


# --- Callback validation (resolved before any network call) ---


class CallbackOutcome(enum.Enum):
    RECEIVED = "received"
    ERROR_FROM_PROVIDER = "error_from_provider"
    MISSING_CODE = "missing_code"
    MISSING_STATE = "missing_state"
    STATE_EXPIRED = "state_expired"
    STATE_MALFORMED = "state_malformed"
    VALID = "valid"


class CallbackRejected(DriveAuthError):
    """A terminal, non-VALID callback outcome."""

    status_code = 400
    outcome = CallbackOutcome.RECEIVED


class ProviderErrorReported(CallbackRejected):
    outcome = CallbackOutcome.ERROR_FROM_PROVIDER
    default_message = "Authorization was not granted"

    def __init__(self, provider_error: str, message: str | None = None, **context):
        self.provider_error = sanitize_provider_error(provider_error)
        super().__init__(message or f"OAuth error: {self.provider_error}", **context)

    @property
    def error_code(self) -> str:
        return f"oauth_{self.provider_error}"


class MissingCodeError(CallbackRejected):
    outcome = CallbackOutcome.MISSING_CODE
    error_code = "no_auth_code"
    default_message = "No authorization code received"


class MissingStateError(CallbackRejected):
    outcome = CallbackOutcome.MISSING_STATE
    error_code = "missing_state"
    default_message = "Missing state parameter"


class ExpiredStateError(CallbackRejected):
    outcome = CallbackOutcome.STATE_EXPIRED
    error_code = "expired_state"
    default_message = "Authorization request expired. Please try again."


class MalformedStateError(CallbackRejected):
    outcome = CallbackOutcome.STATE_MALFORMED
    error_code = "invalid_state"
    default_message = "Invalid state parameter"


class ReplayedStateError(CallbackRejected):
    error_code = "state_already_used"
    default_message = "This authorization response was already processed"


# --- Token endpoint failures ---


class TokenExchangeError(DriveAuthError):
    """Provider token endpoint failure. ``provider_error`` is the raw OAuth error string, log-only."""

    def __init__(self, message: str | None = None, provider_error: str | None = None, **context):
        self.provider_error = provider_error
        super().__init__(message, **context)


class InvalidClientCredentials(TokenExchangeError):
    error_code = "invalid_client_credentials"
    default_message = "Client credentials are invalid or mismatched"


class InvalidOrExpiredAuthorizationCode(TokenExchangeError):
    error_code = "invalid_authorization_code"
    status_code = 400
    default_message = "Authorization code is expired or invalid"


class RedirectUriMismatch(TokenExchangeError):
    error_code = "redirect_uri_mismatch"
    default_message = "Redirect URI configuration mismatch"


class NetworkError(TokenExchangeError):
    error_code = "network_error"
    status_code = 502
    default_message = "Network connectivity issue with OAuth provider"


class UnknownProviderError(TokenExchangeError):
    error_code = "oauth_callback_failed"
    default_message = "OAuth callback processing failed"


# --- Persistence ---


class TokenStoreError(DriveAuthError):
    error_code = "token_store_error"
    default_message = "Token storage failed"


# --- Stored sessions ---


class ReauthorizationRequired(DriveAuthError):
    """No usable refresh token; the user has to run the consent flow again."""

    status_code = 401
    default_message = "Reconnect Google Drive"

    def to_dict(self) -> dict:
        return {**super().to_dict(), "needsReauth": True}


class NoStoredRefreshToken(ReauthorizationRequired):
    error_code = "no_refresh_token"


class RefreshTokenRevoked(ReauthorizationRequired):
    error_code = "refresh_token_invalid"


_PROVIDER_ERROR_RE = re.compile(r"[^a-z0-9_]+")


def sanitize_provider_error(value: str) -> str:
    """Reduce a provider error string to [a-z0-9_] so it is safe in a code and a URL."""
    cleaned = _PROVIDER_ERROR_RE.sub("_", (value or "").strip().lower()).strip("_")
    return cleaned[:64] or "unknown"
