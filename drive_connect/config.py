"""
Drive Connect configuration. Values come from the environment; no secrets in this file.
OAuth client credentials are read per request so a missing value fails the request, not the import.
"""
import os
from dataclasses import dataclass

from drive_connect.errors import ConfigurationError

# Public base URL of the DriveMind app (used for post-callback redirects)
APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://127.0.0.1:3000").rstrip("/")

# Callback URL registered with Google; must match the console entry exactly
REDIRECT_URI = os.environ.get("OAUTH_REDIRECT_URI", f"{APP_BASE_URL}/api/auth/drive/callback")

# Google endpoints
AUTHORIZATION_ENDPOINT = os.environ.get(
    "OAUTH_AUTHORIZATION_ENDPOINT", "https://accounts.google.com/o/oauth2/v2/auth"
)
TOKEN_ENDPOINT = os.environ.get("OAUTH_TOKEN_ENDPOINT", "https://oauth2.googleapis.com/token")
REVOCATION_ENDPOINT = os.environ.get("OAUTH_REVOCATION_ENDPOINT", "https://oauth2.googleapis.com/revoke")

# Drive scopes requested at consent (space or comma separated)
DEFAULT_SCOPES = frozenset(
    s
    for s in os.environ.get(
        "OAUTH_SCOPES",
        "https://www.googleapis.com/auth/drive.metadata.readonly https://www.googleapis.com/auth/drive.readonly",
    )
    .replace(",", " ")
    .split()
)

# State freshness window (milliseconds); structured states older than this are rejected
STATE_TTL_MS = int(os.environ.get("OAUTH_STATE_TTL_MS", "300000"))

# Accept bare user-id states issued by older clients (freshness cannot be checked for these)
ALLOW_LEGACY_STATE = os.environ.get("OAUTH_ALLOW_LEGACY_STATE", "true").strip().lower() in ("1", "true", "yes")

# Token endpoint timeout (seconds). Exchange is a single round-trip, never retried here.
TOKEN_TIMEOUT_SECONDS = float(os.environ.get("OAUTH_TOKEN_TIMEOUT_SECONDS", "10"))

# Cookie lifetimes (seconds): 1 hour access, 30 days refresh
ACCESS_TOKEN_COOKIE_MAX_AGE = int(os.environ.get("ACCESS_TOKEN_COOKIE_MAX_AGE", "3600"))
REFRESH_TOKEN_COOKIE_MAX_AGE = int(os.environ.get("REFRESH_TOKEN_COOKIE_MAX_AGE", str(60 * 60 * 24 * 30)))

# Secure cookies only in production (local dev runs over plain http)
APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
COOKIE_SECURE = APP_ENV == "production"

# SQLite for development; any SQLAlchemy URL works
DATABASE_URL = os.environ.get("DRIVE_DATABASE_URL", "sqlite:///./drive_connect.db")

# Fernet keys for refresh tokens at rest, comma-separated, newest first. Empty = plaintext (dev only).
TOKEN_ENCRYPTION_KEYS = [
    k.strip() for k in os.environ.get("DRIVE_TOKEN_ENCRYPTION_KEYS", "").split(",") if k.strip()
]

# Rate limiting: per-IP, per minute, on the begin endpoint
RATE_LIMIT_BEGIN_PER_MINUTE = int(os.environ.get("RATE_LIMIT_BEGIN_PER_MINUTE", "50"))

# Peer addresses of reverse proxies allowed to set X-Forwarded-For and the user header,
# comma-separated; "*" trusts any peer. Empty = forwarding headers are ignored.
TRUSTED_PROXIES = frozenset(
    p.strip() for p in os.environ.get("TRUSTED_PROXY", "").split(",") if p.strip()
)

# Header carrying the authenticated DriveMind user id, set by the fronting app (trusted proxies only)
USER_ID_HEADER = os.environ.get("USER_ID_HEADER", "X-DriveMind-User")


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"ClientCredentials(client_id={self.client_id!r}, client_secret='[REDACTED]')"


def get_client_credentials() -> ClientCredentials:
    """
    Read Google OAuth client id/secret from the environment.
    Raises ConfigurationError if either is missing; never returns a partial pair.
    """
    client_id = (os.environ.get("GOOGLE_OAUTH_CLIENT_ID") or "").strip()
    client_secret = (os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET") or "").strip()
    if not client_id or not client_secret:
        raise ConfigurationError(
            "OAuth configuration incomplete. Missing client credentials.",
            has_client_id=bool(client_id),
            has_client_secret=bool(client_secret),
        )
    return ClientCredentials(client_id=client_id, client_secret=client_secret)
