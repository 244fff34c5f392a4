"""
PKCE (RFC 7636) helpers: S256 only; verifier, challenge and random state generation.
"""
import hashlib
import hmac
import secrets
import string
from base64 import urlsafe_b64encode
from dataclasses import dataclass, field

from drive_connect.errors import CryptoUnavailableError

# RFC 7636 unreserved characters
UNRESERVED_CHARS = string.ascii_letters + string.digits + "-._~"

CODE_VERIFIER_LENGTH = 128
STATE_LENGTH = 32
CODE_CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEChallenge:
    code_verifier: str = field(repr=False)
    code_challenge: str
    code_challenge_method: str = CODE_CHALLENGE_METHOD


def _random_string(length: int) -> str:
    try:
        return "".join(secrets.choice(UNRESERVED_CHARS) for _ in range(length))
    except (NotImplementedError, OSError) as e:
        # No fallback to a non-cryptographic generator
        raise CryptoUnavailableError(reason=type(e).__name__) from e


def generate_code_verifier() -> str:
    """128 chars from the unreserved set (~762 bits of entropy)."""
    return _random_string(CODE_VERIFIER_LENGTH)


def generate_code_challenge(verifier: str) -> str:
    """base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Opaque random value for anonymous flows and state nonces."""
    return _random_string(STATE_LENGTH)


def generate_pkce() -> PKCEChallenge:
    verifier = generate_code_verifier()
    return PKCEChallenge(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def verify_code_challenge(verifier: str, challenge: str) -> bool:
    """Re-derive the challenge from verifier and compare in constant time."""
    if not verifier or not challenge:
        return False
    return hmac.compare_digest(generate_code_challenge(verifier), challenge)
