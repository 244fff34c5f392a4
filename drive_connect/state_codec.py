"""
OAuth state parameter codec.

Two encodings coexist:
- structured: base64url (no padding) of {"userId", "timestamp", "nonce"}; carries freshness
- legacy: the bare user id, as issued by older clients; freshness unknown

decode_state returns an explicit variant so the caller's freshness check is exhaustive.
A value that decodes to a JSON object but is not a valid structured record is malformed;
it never falls through to the legacy reading.
"""
import binascii
import json
import re
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass

from drive_connect.errors import ExpiredStateError, MalformedStateError
from drive_connect.pkce import generate_state

DEFAULT_WINDOW_MS = 300_000

# Allowance for clock drift between instances when the timestamp is in the future
CLOCK_SKEW_MS = 60_000

_LEGACY_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.@:-]{1,128}$")
_MAX_STATE_LENGTH = 2048


@dataclass(frozen=True)
class LegacyState:
    user_id: str

    @property
    def freshness_known(self) -> bool:
        return False


@dataclass(frozen=True)
class StructuredState:
    user_id: str | None
    issued_at: int  # epoch millis
    nonce: str

    @property
    def freshness_known(self) -> bool:
        return True


State = LegacyState | StructuredState


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_state(user_id: str | None = None, issued_at: int | None = None, nonce: str | None = None) -> str:
    """Structured encoding. issued_at defaults to now, nonce to a fresh random value."""
    record = {
        "timestamp": now_ms() if issued_at is None else int(issued_at),
        "nonce": nonce or generate_state(),
    }
    if user_id:
        record["userId"] = user_id
    raw = json.dumps(record, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def encode_legacy_state(user_id: str) -> str:
    if not _LEGACY_USER_ID_RE.match(user_id or ""):
        raise ValueError("user_id is not representable as a legacy state")
    return user_id


def _try_json_object(state: str) -> dict | None:
    """Return the decoded JSON object if state is base64url(JSON object), else None."""
    padded = state + "=" * (-len(state) % 4)
    try:
        raw = urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _structured_from(payload: dict) -> StructuredState:
    timestamp = payload.get("timestamp")
    nonce = payload.get("nonce")
    user_id = payload.get("userId")
    # bool is an int subclass; a boolean timestamp is not a timestamp
    if not isinstance(timestamp, int) or isinstance(timestamp, bool) or timestamp < 0:
        raise MalformedStateError(reason="bad_timestamp")
    if not isinstance(nonce, str) or not nonce:
        raise MalformedStateError(reason="bad_nonce")
    if user_id is not None and (not isinstance(user_id, str) or not user_id):
        raise MalformedStateError(reason="bad_user_id")
    return StructuredState(user_id=user_id, issued_at=timestamp, nonce=nonce)


def decode_state(state: str, allow_legacy: bool = True) -> State:
    """
    Decode a state value into StructuredState or LegacyState.
    Raises MalformedStateError when neither reading applies.
    """
    if not state or not state.strip():
        raise MalformedStateError(reason="empty")
    state = state.strip()
    if len(state) > _MAX_STATE_LENGTH:
        raise MalformedStateError(reason="too_long")

    payload = _try_json_object(state)
    if payload is not None:
        return _structured_from(payload)

    if allow_legacy and _LEGACY_USER_ID_RE.match(state):
        return LegacyState(user_id=state)
    raise MalformedStateError(reason="undecodable")


def is_fresh(issued_at: int, now: int | None = None, window_ms: int = DEFAULT_WINDOW_MS) -> bool:
    now = now_ms() if now is None else now
    age = now - issued_at
    if age < -CLOCK_SKEW_MS:
        return False
    return age <= window_ms


def ensure_fresh(state: State, now: int | None = None, window_ms: int = DEFAULT_WINDOW_MS) -> None:
    """Raise ExpiredStateError for a stale structured state. Legacy states pass (freshness unknown)."""
    if isinstance(state, StructuredState) and not is_fresh(state.issued_at, now, window_ms):
        raise ExpiredStateError(issued_at=state.issued_at, window_ms=window_ms)
