"""Tests for the Drive OAuth endpoints: begin, callback (GET and POST), status, refresh, sync, disconnect."""
import logging
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from drive_connect import config
from drive_connect.database import SessionLocal
from drive_connect.errors import TokenStoreError
from drive_connect.main import app
from drive_connect.models import AuthAuditLog
from drive_connect.pkce import verify_code_challenge
from drive_connect.rate_limit import SlidingWindowRateLimiter
from drive_connect.routes import get_rate_limiter, get_token_store
from drive_connect.security_headers import SECURITY_HEADERS, install_security_headers
from drive_connect.state_codec import decode_state, encode_state, now_ms
from drive_connect.token_store import InMemoryTokenStore

POST_TARGET = "drive_connect.token_exchange.httpx.post"


class MockResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.headers = {"content-type": "application/json"}
        self.text = str(self._body)

    def json(self):
        return self._body


def _token_body(**extra):
    body = {
        "access_token": "ya29-access",
        "expires_in": 3599,
        "refresh_token": "rt-1",
        "scope": "https://www.googleapis.com/auth/drive.readonly",
        "token_type": "Bearer",
    }
    body.update(extra)
    return body


@pytest.fixture
def token_store():
    store = InMemoryTokenStore()
    app.dependency_overrides[get_token_store] = lambda: store
    yield store
    app.dependency_overrides.pop(get_token_store, None)


@pytest.fixture
def limiter():
    rl = SlidingWindowRateLimiter(limit=50)
    app.dependency_overrides[get_rate_limiter] = lambda: rl
    yield rl
    app.dependency_overrides.pop(get_rate_limiter, None)


@pytest.fixture
def client(token_store, limiter):
    return TestClient(app)


def _redirect_query(r) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(r.headers["location"]).query).items()}


def _audit_events() -> list[tuple[str, str]]:
    db = SessionLocal()
    try:
        return [(row.event_type, row.outcome) for row in db.query(AuthAuditLog).order_by(AuthAuditLog.id)]
    finally:
        db.close()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "drive_connect"


def test_security_headers_on_every_response(client):
    for r in (client.get("/health"), client.post("/api/auth/drive/callback", json={})):
        for name, value in SECURITY_HEADERS.items():
            assert r.headers[name] == value


def test_unhandled_error_is_json_500_with_security_headers():
    broken = FastAPI()
    install_security_headers(broken)

    @broken.get("/boom")
    def boom():
        raise RuntimeError("unexpected")

    r = TestClient(broken, raise_server_exceptions=False).get("/boom")
    assert r.status_code == 500
    assert r.json() == {"error": "internal_error", "message": "Internal server error"}
    for name, value in SECURITY_HEADERS.items():
        assert r.headers[name] == value


# --- begin ---


def test_begin_returns_url_state_and_challenge(client, oauth_env):
    r = client.post("/api/auth/drive/begin", json={"userId": "u1"})
    assert r.status_code == 200
    data = r.json()
    assert set(data) == {"url", "state", "codeChallenge"}
    assert decode_state(data["state"]).user_id == "u1"
    query = {k: v[0] for k, v in parse_qs(urlparse(data["url"]).query).items()}
    assert query["state"] == data["state"]
    assert query["code_challenge"] == data["codeChallenge"]
    assert query["code_challenge_method"] == "S256"
    assert query["access_type"] == "offline"
    assert query["prompt"] == "consent"
    assert "shh-secret" not in r.text
    assert r.headers["X-RateLimit-Limit"] == "50"
    assert r.headers["X-RateLimit-Remaining"] == "49"


def test_begin_without_body_is_anonymous(client, oauth_env):
    r = client.post("/api/auth/drive/begin")
    assert r.status_code == 200
    assert decode_state(r.json()["state"]).user_id is None


def test_begin_rejects_non_string_user_id(client, oauth_env):
    r = client.post("/api/auth/drive/begin", json={"userId": 42})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_begin_missing_config(client, no_oauth_env):
    r = client.post("/api/auth/drive/begin", json={"userId": "u1"})
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "oauth_config_incomplete"
    assert "requestId" in body
    assert ("oauth_begin", "fail") in _audit_events()


def test_begin_rate_limited(client, oauth_env):
    limited = SlidingWindowRateLimiter(limit=2)
    app.dependency_overrides[get_rate_limiter] = lambda: limited
    for _ in range(2):
        assert client.post("/api/auth/drive/begin").status_code == 200
    r = client.post("/api/auth/drive/begin")
    assert r.status_code == 429
    body = r.json()
    assert body["error"] == "rate_limit_exceeded"
    assert body["retryAfter"] >= 1
    assert int(r.headers["Retry-After"]) >= 1
    assert r.headers["X-RateLimit-Limit"] == "2"
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert ("rate_limited", "fail") in _audit_events()


def test_begin_rate_limit_ignores_spoofed_forwarded_for(client, oauth_env):
    limited = SlidingWindowRateLimiter(limit=2)
    app.dependency_overrides[get_rate_limiter] = lambda: limited
    statuses = [
        client.post("/api/auth/drive/begin", headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
        for i in range(3)
    ]
    assert statuses == [200, 200, 429]
    assert limited.tracked_keys() == 1


def test_begin_rate_limit_keys_on_forwarded_for_behind_trusted_proxy(client, oauth_env, monkeypatch):
    monkeypatch.setattr(config, "TRUSTED_PROXIES", frozenset({"testclient"}))
    limited = SlidingWindowRateLimiter(limit=1)
    app.dependency_overrides[get_rate_limiter] = lambda: limited
    for i in range(3):
        r = client.post("/api/auth/drive/begin", headers={"X-Forwarded-For": f"203.0.113.{i}"})
        assert r.status_code == 200
    r = client.post("/api/auth/drive/begin", headers={"X-Forwarded-For": "203.0.113.0"})
    assert r.status_code == 429


# --- callback ---


def test_post_callback_empty_code(client, oauth_env):
    with patch(POST_TARGET) as post:
        r = client.post("/api/auth/drive/callback", json={"code": "", "state": "validstate"})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "no_auth_code"
    assert body["requestId"]
    post.assert_not_called()


def test_get_callback_missing_state_redirects_with_error(client, oauth_env):
    with patch(POST_TARGET) as post:
        r = client.get("/api/auth/drive/callback", params={"code": "abc"}, follow_redirects=False)
    assert r.status_code == 302
    query = _redirect_query(r)
    assert r.headers["location"].startswith(f"{config.APP_BASE_URL}/ai?")
    assert query["error"] == "missing_state"
    assert query["request_id"]
    post.assert_not_called()


def test_provider_error_never_calls_token_endpoint(client, oauth_env):
    with patch(POST_TARGET) as post:
        r = client.get(
            "/api/auth/drive/callback",
            params={"error": "access_denied", "state": encode_state(user_id="u1")},
            follow_redirects=False,
        )
    assert r.status_code == 302
    assert _redirect_query(r)["error"] == "oauth_access_denied"
    post.assert_not_called()
    assert ("oauth_callback_rejected", "fail") in _audit_events()


def test_expired_state_rejected(client, oauth_env):
    state = encode_state(user_id="u1", issued_at=now_ms() - 400_000)
    with patch(POST_TARGET) as post:
        r = client.post("/api/auth/drive/callback", json={"code": "abc", "state": state})
    assert r.status_code == 400
    assert r.json()["error"] == "expired_state"
    post.assert_not_called()


def test_malformed_state_rejected(client, oauth_env):
    with patch(POST_TARGET) as post:
        r = client.post("/api/auth/drive/callback", json={"code": "abc", "state": "not a state!"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_state"
    post.assert_not_called()


def test_callback_missing_config_after_valid_state(client, no_oauth_env):
    with patch(POST_TARGET) as post:
        r = client.post("/api/auth/drive/callback", json={"code": "abc", "state": encode_state(user_id="u1")})
    assert r.status_code == 500
    assert r.json()["error"] == "oauth_config_incomplete"
    post.assert_not_called()


def test_get_callback_success_sets_cookies_and_persists(client, oauth_env, token_store):
    begin = client.post("/api/auth/drive/begin", json={"userId": "u1"}).json()
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())) as post:
        r = client.get(
            "/api/auth/drive/callback",
            params={"code": "auth-code", "state": begin["state"]},
            follow_redirects=False,
        )
    assert r.status_code == 302
    query = _redirect_query(r)
    assert query["drive_connected"] == "true"
    assert query["request_id"]

    data = post.call_args.kwargs["data"]
    assert data["code"] == "auth-code"
    assert verify_code_challenge(data["code_verifier"], begin["codeChallenge"])

    cookies = r.headers.get_list("set-cookie")
    assert any(c.startswith("access_token=ya29-access") for c in cookies)
    assert any(c.startswith("refresh_token=rt-1") for c in cookies)
    assert all("httponly" in c.lower() and "samesite=strict" in c.lower() for c in cookies)
    assert token_store.read("u1") == "rt-1"
    events = _audit_events()
    assert ("token_exchange", "success") in events
    assert ("token_persistence", "success") in events


def test_post_callback_success_uses_forwarded_verifier(client, oauth_env, token_store):
    state = encode_state(user_id="u2")
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())) as post:
        r = client.post(
            "/api/auth/drive/callback",
            json={"code": "auth-code", "state": state, "codeVerifier": "forwarded-verifier"},
        )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["requestId"]
    assert post.call_args.kwargs["data"]["code_verifier"] == "forwarded-verifier"
    assert token_store.read("u2") == "rt-1"


def test_anonymous_callback_sets_cookies_without_persisting(client, oauth_env, token_store):
    begin = client.post("/api/auth/drive/begin").json()
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())):
        r = client.post("/api/auth/drive/callback", json={"code": "auth-code", "state": begin["state"]})
    assert r.status_code == 200
    assert any(c.startswith("refresh_token=") for c in r.headers.get_list("set-cookie"))
    assert token_store._tokens == {}


def test_legacy_state_callback_succeeds(client, oauth_env, token_store):
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())) as post:
        r = client.post("/api/auth/drive/callback", json={"code": "auth-code", "state": "legacyUser7"})
    assert r.status_code == 200
    assert "code_verifier" not in post.call_args.kwargs["data"]
    assert token_store.read("legacyUser7") == "rt-1"


def test_legacy_user_can_reconnect_with_new_code(client, oauth_env, token_store):
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())) as post:
        first = client.post("/api/auth/drive/callback", json={"code": "code-A", "state": "legacyUser7"})
        second = client.post("/api/auth/drive/callback", json={"code": "code-B", "state": "legacyUser7"})
        replay = client.post("/api/auth/drive/callback", json={"code": "code-B", "state": "legacyUser7"})
    assert first.status_code == 200
    assert second.status_code == 200
    assert replay.status_code == 400
    assert replay.json()["error"] == "state_already_used"
    assert post.call_count == 2


def test_provider_error_logged_sanitized(client, oauth_env, caplog):
    with caplog.at_level(logging.INFO, logger="drive_connect"):
        with patch(POST_TARGET) as post:
            r = client.get(
                "/api/auth/drive/callback",
                params={"error": "access_denied\nINJECTED line", "state": encode_state(user_id="u1")},
                follow_redirects=False,
            )
    assert r.status_code == 302
    post.assert_not_called()
    messages = [rec.getMessage() for rec in caplog.records]
    assert any("access_denied_injected_line" in m for m in messages)
    assert not any("INJECTED line" in m or "\n" in m for m in messages)


def test_replayed_state_rejected_before_exchange(client, oauth_env):
    state = encode_state(user_id="u1")
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())) as post:
        first = client.post("/api/auth/drive/callback", json={"code": "c1", "state": state})
        second = client.post("/api/auth/drive/callback", json={"code": "c1", "state": state})
    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["error"] == "state_already_used"
    assert post.call_count == 1


def test_invalid_grant_classified(client, oauth_env):
    state = encode_state(user_id="u1")
    body = {"error": "invalid_grant", "error_description": "Bad Request"}
    with patch(POST_TARGET, return_value=MockResponse(400, body)):
        r = client.post("/api/auth/drive/callback", json={"code": "stale", "state": state})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_authorization_code"
    assert ("token_exchange", "fail") in _audit_events()


def test_invalid_client_classified(client, oauth_env):
    with patch(POST_TARGET, return_value=MockResponse(401, {"error": "invalid_client"})):
        r = client.post("/api/auth/drive/callback", json={"code": "c", "state": encode_state(user_id="u1")})
    assert r.status_code == 500
    assert r.json()["error"] == "invalid_client_credentials"


def test_network_failure_is_502(client, oauth_env):
    with patch(POST_TARGET, side_effect=httpx.ConnectTimeout("timed out")):
        r = client.get(
            "/api/auth/drive/callback",
            params={"code": "c", "state": encode_state(user_id="u1")},
            follow_redirects=False,
        )
    assert r.status_code == 302
    assert _redirect_query(r)["error"] == "network_error"

    with patch(POST_TARGET, side_effect=httpx.ConnectTimeout("timed out")):
        r = client.post("/api/auth/drive/callback", json={"code": "c", "state": encode_state(user_id="u1")})
    assert r.status_code == 502
    assert r.json()["error"] == "network_error"


def test_persistence_failure_does_not_fail_flow(client, oauth_env):
    class FailingStore(InMemoryTokenStore):
        def save(self, user_id, refresh_token):
            raise RuntimeError("disk full")

    app.dependency_overrides[get_token_store] = lambda: FailingStore()
    with patch(POST_TARGET, return_value=MockResponse(200, _token_body())):
        r = client.post("/api/auth/drive/callback", json={"code": "c", "state": encode_state(user_id="u1")})
    assert r.status_code == 200
    assert any(c.startswith("access_token=") for c in r.headers.get_list("set-cookie"))
    assert ("token_persistence", "fail") in _audit_events()


def test_audit_rows_hash_user_ids(client, oauth_env):
    client.post("/api/auth/drive/begin", json={"userId": "plain-user-id"})
    db = SessionLocal()
    try:
        refs = [row.user_ref for row in db.query(AuthAuditLog)]
    finally:
        db.close()
    assert refs
    assert "plain-user-id" not in refs


# --- status / refresh / disconnect ---


def test_status_without_cookies(client):
    r = client.get("/api/auth/drive/status")
    assert r.status_code == 200
    assert r.json() == {"connected": False, "hasAccessToken": False, "hasRefreshToken": False}


def test_status_with_refresh_cookie(token_store, limiter):
    client = TestClient(app, cookies={"refresh_token": "rt-1"})
    body = client.get("/api/auth/drive/status").json()
    assert body["connected"] is True
    assert body["hasRefreshToken"] is True
    assert body["hasAccessToken"] is False


def test_refresh_without_cookie(client):
    r = client.post("/api/auth/drive/refresh")
    assert r.status_code == 401
    assert r.json()["error"] == "no_refresh_token"


def test_refresh_sets_new_access_cookie(token_store, limiter, oauth_env):
    client = TestClient(app, cookies={"refresh_token": "rt-1"})
    body = _token_body(access_token="ya29-new")
    del body["refresh_token"]
    with patch(POST_TARGET, return_value=MockResponse(200, body)) as post:
        r = client.post("/api/auth/drive/refresh")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert post.call_args.kwargs["data"]["refresh_token"] == "rt-1"
    cookies = r.headers.get_list("set-cookie")
    assert any(c.startswith("access_token=ya29-new") for c in cookies)
    assert not any(c.startswith("refresh_token=") for c in cookies)


def test_refresh_revoked_token_needs_reauth(token_store, limiter, oauth_env):
    client = TestClient(app, cookies={"refresh_token": "rt-revoked"})
    body = {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
    with patch(POST_TARGET, return_value=MockResponse(400, body)):
        r = client.post("/api/auth/drive/refresh")
    assert r.status_code == 401
    assert r.json()["error"] == "refresh_token_invalid"
    assert r.json()["needsReauth"] is True
    cleared = r.headers.get_list("set-cookie")
    assert {c.split("=", 1)[0] for c in cleared} == {"access_token", "refresh_token"}


def test_refresh_network_failure(token_store, limiter, oauth_env):
    client = TestClient(app, cookies={"refresh_token": "rt-1"})
    with patch(POST_TARGET, side_effect=httpx.ReadTimeout("slow")):
        r = client.post("/api/auth/drive/refresh")
    assert r.status_code == 502
    assert r.json()["error"] == "network_error"


def test_disconnect_revokes_and_clears(token_store, limiter):
    client = TestClient(app, cookies={"refresh_token": "rt-1"})
    with patch(POST_TARGET, return_value=MockResponse(200)) as post:
        r = client.post("/api/auth/drive/disconnect")
    assert r.status_code == 200
    assert r.json()["disconnected"] is True
    assert r.json()["revoked"] is True
    assert post.call_args.kwargs["data"] == {"token": "rt-1"}
    assert {c.split("=", 1)[0] for c in r.headers.get_list("set-cookie")} == {"access_token", "refresh_token"}


def test_disconnect_without_session(client):
    with patch(POST_TARGET) as post:
        r = client.post("/api/auth/drive/disconnect")
    assert r.status_code == 200
    assert r.json()["revoked"] is False
    post.assert_not_called()


# --- known user (trusted proxy asserts the DriveMind user) ---


@pytest.fixture
def proxied_client(token_store, limiter, monkeypatch):
    monkeypatch.setattr(config, "TRUSTED_PROXIES", frozenset({"testclient"}))

    def make(cookies=None, user_id="u1"):
        return TestClient(app, cookies=cookies or {}, headers={config.USER_ID_HEADER: user_id})

    return make


def test_user_header_ignored_without_trusted_proxy(token_store, limiter):
    token_store.save("u1", "rt-stored")
    client = TestClient(app, headers={config.USER_ID_HEADER: "u1"})
    r = client.post("/api/auth/drive/sync")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated"


def test_refresh_falls_back_to_stored_token(proxied_client, token_store, oauth_env):
    token_store.save("u1", "rt-stored")
    body = _token_body(access_token="ya29-server")
    del body["refresh_token"]
    with patch(POST_TARGET, return_value=MockResponse(200, body)) as post:
        r = proxied_client().post("/api/auth/drive/refresh")
    assert r.status_code == 200
    assert post.call_args.kwargs["data"]["refresh_token"] == "rt-stored"
    assert any(c.startswith("access_token=ya29-server") for c in r.headers.get_list("set-cookie"))


def test_refresh_with_revoked_stored_token_deletes_it(proxied_client, token_store, oauth_env):
    token_store.save("u1", "rt-stored")
    with patch(POST_TARGET, return_value=MockResponse(400, {"error": "invalid_grant"})):
        r = proxied_client().post("/api/auth/drive/refresh")
    assert r.status_code == 401
    assert r.json()["error"] == "refresh_token_invalid"
    assert r.json()["needsReauth"] is True
    assert token_store.read("u1") is None


def test_refresh_known_user_without_any_token(proxied_client, oauth_env):
    with patch(POST_TARGET) as post:
        r = proxied_client().post("/api/auth/drive/refresh")
    assert r.status_code == 401
    assert r.json()["error"] == "no_refresh_token"
    post.assert_not_called()


def test_sync_cookie_to_store(proxied_client, token_store):
    r = proxied_client(cookies={"refresh_token": "rt-cookie"}).post("/api/auth/drive/sync")
    assert r.status_code == 200
    body = r.json()
    assert body["synced"] is True
    assert body["source"] == "cookie"
    assert body["actions"] == ["updated_store"]
    assert body["requestId"]
    assert token_store.read("u1") == "rt-cookie"
    assert ("token_sync", "success") in _audit_events()


def test_sync_store_to_cookie(proxied_client, token_store):
    token_store.save("u1", "rt-stored")
    r = proxied_client().post("/api/auth/drive/sync")
    assert r.status_code == 200
    assert r.json()["source"] == "store"
    assert r.json()["actions"] == ["updated_cookie"]
    cookies = r.headers.get_list("set-cookie")
    assert any(c.startswith("refresh_token=rt-stored") and "httponly" in c.lower() for c in cookies)


def test_sync_with_nothing_to_sync(proxied_client):
    r = proxied_client().post("/api/auth/drive/sync")
    assert r.status_code == 200
    assert r.json()["synced"] is False
    assert r.json()["needsReauth"] is True
    assert ("token_sync", "fail") in _audit_events()


def test_sync_store_failure_is_500(proxied_client):
    class BrokenStore(InMemoryTokenStore):
        def read(self, user_id):
            raise TokenStoreError("db down")

    app.dependency_overrides[get_token_store] = lambda: BrokenStore()
    r = proxied_client().post("/api/auth/drive/sync")
    assert r.status_code == 500
    assert r.json()["error"] == "token_store_error"


def test_disconnect_deletes_stored_token(proxied_client, token_store):
    token_store.save("u1", "rt-stored")
    with patch(POST_TARGET, return_value=MockResponse(200)) as post:
        r = proxied_client(cookies={"refresh_token": "rt-stored"}).post("/api/auth/drive/disconnect")
    assert r.status_code == 200
    assert r.json()["revoked"] is True
    assert r.json()["tokenDeleted"] is True
    assert post.call_count == 1
    assert token_store.read("u1") is None


def test_disconnect_without_cookie_revokes_stored_token(proxied_client, token_store):
    token_store.save("u1", "rt-stored")
    with patch(POST_TARGET, return_value=MockResponse(200)) as post:
        r = proxied_client().post("/api/auth/drive/disconnect")
    assert r.json()["revoked"] is True
    assert post.call_args.kwargs["data"] == {"token": "rt-stored"}
    assert token_store.read("u1") is None
