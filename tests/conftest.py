"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient

from microblog import blog
from microblog.blog import add_post, add_user, app, get_db, init_db

CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(autouse=True)
def _fresh_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Every test gets its own empty database file."""
    db_file = tmp_path / "test.sqlite3"
    monkeypatch.setitem(app.config, "DATABASE", str(db_file))
    monkeypatch.setitem(app.config, "TESTING", True)
    with app.app_context():
        init_db()
    return db_file


@pytest.fixture(autouse=True)
def _fast_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Patch blog.utc_now so every call returns an ever-increasing timestamp.
    Creation order == timestamp order, no time.sleep() needed.
    """
    counter = itertools.count()         # 0, 1, 2, …
    base = _dt.datetime(2024, 1, 1, tzinfo=_dt.timezone.utc)
    monkeypatch.setattr(
        blog, "utc_now", lambda: base + _dt.timedelta(seconds=next(counter))
    )


@pytest.fixture
def client(_fresh_db) -> Generator[FlaskClient, None, None]:
    """
    Test client inside an application context, so `get_db()` in the test
    body sees the same connection the views use.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def db(client):
    return get_db()


@pytest.fixture
def make_user(db) -> Callable:
    def _make(username: str):
        return add_user(username, f"hash-{username}", db=db)

    return _make


@pytest.fixture
def make_post(db) -> Callable:
    def _make(author, title: str = "Title", content: str = "Body") -> int:
        return add_post(title, content, author, db=db)

    return _make


@pytest.fixture
def login(client) -> Callable:
    """Put *user* into the client's session the way a real sign-in does."""
    def _login(user) -> None:
        with client.session_transaction() as sess:
            sess.clear()
            sess["user_id"] = user["id"]
            sess["csrf"] = CSRF

    return _login
