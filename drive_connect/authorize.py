"""
Authorization URL builder: PKCE + structured state -> Google consent URL.
"""
from dataclasses import dataclass, field
from urllib.parse import urlencode

from drive_connect.config import ClientCredentials
from drive_connect.errors import ConfigurationError
from drive_connect.pkce import CODE_CHALLENGE_METHOD, generate_pkce
from drive_connect.state_codec import encode_state


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    code_challenge: str
    # Held by the caller for the callback; never part of the begin response
    code_verifier: str = field(repr=False)

    def public_dict(self) -> dict:
        return {"url": self.url, "state": self.state, "codeChallenge": self.code_challenge}


def build_authorization_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scopes,
    state: str,
    code_challenge: str,
) -> str:
    """
    Build the consent URL. prompt=consent forces Google to reissue a refresh token on every run
    (it is only issued on first consent otherwise). The client secret is never part of the URL.
    """
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(sorted(scopes)),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CODE_CHALLENGE_METHOD,
    }
    return f"{authorization_endpoint}?{urlencode(params)}"


def begin_authorization(
    credentials: ClientCredentials | None,
    *,
    authorization_endpoint: str,
    redirect_uri: str,
    scopes,
    user_id: str | None = None,
) -> AuthorizationRequest:
    """Generate PKCE and state (embedding user_id when present) and compose the consent URL."""
    if credentials is None or not credentials.client_id or not credentials.client_secret:
        raise ConfigurationError("OAuth configuration incomplete. Missing client credentials.")
    if not scopes:
        raise ConfigurationError("No OAuth scopes configured")

    pkce = generate_pkce()
    state = encode_state(user_id=user_id or None)
    url = build_authorization_url(
        authorization_endpoint=authorization_endpoint,
        client_id=credentials.client_id,
        redirect_uri=redirect_uri,
        scopes=scopes,
        state=state,
        code_challenge=pkce.code_challenge,
    )
    return AuthorizationRequest(
        url=url,
        state=state,
        code_challenge=pkce.code_challenge,
        code_verifier=pkce.code_verifier,
    )
