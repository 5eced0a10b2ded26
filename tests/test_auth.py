"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
from urllib.parse import parse_qs, urlparse

import pytest
import requests

import microblog.blog as blog
from microblog.blog import add_user, app, find_user_by_username, hash_identity

_ip_counter = itertools.count(1)


# ───────────────────────── helpers ────────────────────────────────────
@pytest.fixture
def oauth_client(client, monkeypatch):
    """
    The shared client with a REMOTE_ADDR of its own, so the callback's
    rate limit (keyed by IP) never bleeds between tests, and Google
    credentials configured.
    """
    client.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_ip_counter)}"
    monkeypatch.setitem(app.config, "GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setitem(app.config, "GOOGLE_CLIENT_SECRET", "client-secret")
    return client


def _google_says(monkeypatch, subject: str) -> None:
    monkeypatch.setattr(blog, "fetch_google_subject", lambda code, cfg: subject)


def _callback(client, state: str = "s-1", code: str = "c-1", *, stash: bool = True):
    if stash:
        with client.session_transaction() as sess:
            sess["oauth_state"] = state
    return client.get(f"/auth/google/callback?state={state}&code={code}")


# ───────────────────────── tests ──────────────────────────────────────
def test_login_page(client):
    rv = client.get("/login?error=nope")
    assert rv.status_code == 200
    assert b"Sign in with Google" in rv.data
    assert b"nope" in rv.data


def test_auth_redirects_to_google_with_state(oauth_client):
    rv = oauth_client.get("/auth/google")
    assert rv.status_code == 302

    url = urlparse(rv.headers["Location"])
    assert url.netloc == "accounts.google.com"
    q = parse_qs(url.query)
    assert q["client_id"] == ["client-id"]
    assert q["scope"] == ["openid"]
    with oauth_client.session_transaction() as sess:
        assert sess["oauth_state"] == q["state"][0]


def test_auth_not_configured(client, monkeypatch):
    monkeypatch.setattr(blog, "google_config", lambda: {})
    rv = client.get("/auth/google")
    assert rv.status_code == 302
    assert "/login?error=" in rv.headers["Location"]


def test_new_identity_claims_username(oauth_client, db, monkeypatch):
    _google_says(monkeypatch, "sub-123")

    rv = _callback(oauth_client)
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/registerUsername")
    with oauth_client.session_transaction() as sess:
        assert sess["pending_identity"] == hash_identity("sub-123")
        assert "user_id" not in sess
        csrf = sess["csrf"]

    rv = oauth_client.post(
        "/registerUsername", data={"username": "alice", "csrf": csrf}
    )
    assert rv.status_code == 302

    user = find_user_by_username("alice", db=db)
    assert user["hashed_google_id"] == hash_identity("sub-123")
    with oauth_client.session_transaction() as sess:
        assert sess["user_id"] == user["id"]
        assert "pending_identity" not in sess


def test_known_identity_logs_in(oauth_client, db, monkeypatch):
    bob = add_user("bob", hash_identity("sub-9"), db=db)
    _google_says(monkeypatch, "sub-9")

    rv = _callback(oauth_client)
    assert rv.status_code == 302
    with oauth_client.session_transaction() as sess:
        assert sess["user_id"] == bob["id"]
        assert sess["csrf"]


def test_state_mismatch_rejected(oauth_client, monkeypatch):
    _google_says(monkeypatch, "sub-1")
    with oauth_client.session_transaction() as sess:
        sess["oauth_state"] = "expected"

    rv = oauth_client.get("/auth/google/callback?state=forged&code=c")
    assert "/login?error=" in rv.headers["Location"]
    with oauth_client.session_transaction() as sess:
        assert "user_id" not in sess
        assert "pending_identity" not in sess


def test_missing_state_rejected(oauth_client, monkeypatch):
    _google_says(monkeypatch, "sub-1")
    rv = _callback(oauth_client, stash=False)
    assert "/login?error=" in rv.headers["Location"]


def test_google_failure_redirects(oauth_client, monkeypatch):
    def _boom(code, cfg):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(blog, "fetch_google_subject", _boom)
    rv = _callback(oauth_client)
    assert rv.status_code == 302
    assert "/login?error=" in rv.headers["Location"]


@pytest.mark.parametrize("username,message", [
    ("ab", b"Usernames are 3"),
    ("has space", b"Usernames are 3"),
    ("taken", b"That username is taken."),
])
def test_register_rejects_bad_usernames(oauth_client, db, monkeypatch, username, message):
    add_user("taken", "someone-else", db=db)
    _google_says(monkeypatch, "sub-new")
    _callback(oauth_client)
    with oauth_client.session_transaction() as sess:
        csrf = sess["csrf"]

    rv = oauth_client.post(
        "/registerUsername", data={"username": username, "csrf": csrf}
    )
    assert rv.status_code == 200
    assert message in rv.data
    with oauth_client.session_transaction() as sess:
        assert "user_id" not in sess


def test_register_without_pending_identity(client):
    rv = client.get("/registerUsername")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/login")


def test_logout_clears_session(client, make_user, login):
    login(make_user("alice"))
    rv = client.get("/logout")
    assert rv.status_code == 302
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_stale_session_is_anonymous(client, login):
    login({"id": 4242})                 # user row never existed
    rv = client.get("/profile")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/login")


def test_callback_rate_limit(oauth_client, monkeypatch):
    _google_says(monkeypatch, "sub-1")
    for _ in range(10):
        rv = oauth_client.get("/auth/google/callback?state=x&code=y")
        assert rv.status_code == 302

    rv = oauth_client.get("/auth/google/callback?state=x&code=y")
    assert rv.status_code == 429
    assert b"Too many requests" in rv.data


def test_fetch_google_subject(monkeypatch):
    calls = []

    class _Resp:
        def __init__(self, payload):
            self._payload = payload

        def raise_for_status(self):
            return None

        def json(self):
            return self._payload

    def _post(url, data, timeout):
        calls.append(("post", url, data["code"]))
        return _Resp({"access_token": "tok"})

    def _get(url, headers, timeout):
        calls.append(("get", url, headers["Authorization"]))
        return _Resp({"sub": "1234567890"})

    monkeypatch.setattr(blog.requests, "post", _post)
    monkeypatch.setattr(blog.requests, "get", _get)

    cfg = {
        "GOOGLE_CLIENT_ID": "id",
        "GOOGLE_CLIENT_SECRET": "secret",
        "GOOGLE_REDIRECT_URI": "https://example.org/auth/google/callback",
    }
    assert blog.fetch_google_subject("the-code", cfg) == "1234567890"
    assert calls == [
        ("post", blog.GOOGLE_TOKEN_URL, "the-code"),
        ("get", blog.GOOGLE_USERINFO_URL, "Bearer tok"),
    ]


def test_hash_identity_is_stable_and_opaque():
    assert hash_identity("abc") == hash_identity("abc")
    assert hash_identity("abc") != hash_identity("abd")
    assert "abc" not in hash_identity("abc")
