#!/usr/bin/env python3
"""
A small multi-user microblog: posts, likes, comments and follows.
"""

import hashlib
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache, wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlencode
from zoneinfo import ZoneInfo, available_timezones

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "microblog.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

APP_NAME = "MicroBlog"
POST_NOUN = "Post"
COPYRIGHT_YEAR = 2024

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
TITLE_MAX = 200
CONTENT_MAX = 10_000

SORT_MODES = ("latest", "oldest", "likes")
SORT_DEFAULT = "latest"

AVATAR_SIZE = 100
AVATAR_COLORS = (
    "#FF6F61",
    "#6B5B95",
    "#88B04B",
    "#F7CAC9",
    "#92A8D1",
    "#955251",
    "#B565A7",
    "#009B77",
    "#DD4124",
    "#45B8AC",
)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_ENV_KEYS = ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_REDIRECT_URI")
GOOGLE_REQUIRED_KEYS = ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")
OAUTH_TIMEOUT = 10

TZ_DFLT = "UTC"
DATABASE_TIMEOUT = float(os.environ.get("DATABASE_TIMEOUT", "5"))
SESSION_COOKIE_SECURE = os.environ.get("SESSION_COOKIE_SECURE", "1") != "0"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
JSON_PREFIXES = ("/like/", "/follow/", "/unfollow/")

MD_EXTENSIONS = ["fenced_code", "nl2br", "sane_lists"]

try:
    __version__ = version("microblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=os.environ.get("DATABASE", str(DB_FILE)),
    DATABASE_TIMEOUT=DATABASE_TIMEOUT,
    TIMEZONE=os.environ.get("TIMEZONE", TZ_DFLT),
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def tz_name() -> str:
    tz = app.config.get("TIMEZONE") or TZ_DFLT
    return tz if tz == TZ_DFLT or tz in _known_timezones() else TZ_DFLT


@lru_cache(maxsize=1)
def _known_timezones() -> frozenset[str]:
    return frozenset(available_timezones())


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render Markdown; raw HTML in *text* comes out escaped."""
    return Markup(markdown.markdown(escape(text or ""), extensions=MD_EXTENSIONS))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    tz = tz_name()
    zone = timezone.utc if tz == TZ_DFLT else ZoneInfo(tz)
    return dt.astimezone(zone).strftime("%Y.%m.%d %H:%M")


################################################################################
# Errors
################################################################################
class BlogError(Exception):
    """
    Base class of everything the toggle engine and aggregator raise.

    ``status`` and ``reason`` are for the request layer; the message is for
    logs only and never shown to users.
    """

    status = 400
    reason = "error"


class Unauthenticated(BlogError):
    status = 401
    reason = "unauthenticated"


class NotFound(BlogError):
    status = 404
    reason = "not_found"


class Forbidden(BlogError):
    status = 403
    reason = "forbidden"


class AlreadyFollowing(BlogError):
    status = 409
    reason = "already_following"


class NotFollowing(BlogError):
    status = 409
    reason = "not_following"


class StoreUnavailable(BlogError):
    status = 503
    reason = "store_unavailable"


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        try:
            g.db = sqlite3.connect(
                app.config["DATABASE"],
                timeout=app.config["DATABASE_TIMEOUT"],
                isolation_level=None,  # transactions are opened explicitly
            )
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


@contextmanager
def transaction(db):
    """
    Run the block as one write transaction.

    ``BEGIN IMMEDIATE`` grabs the write lock before the first read, so a
    membership check and the counter update that depends on it can't
    interleave with another writer.  A lock that can't be had within
    ``DATABASE_TIMEOUT`` becomes ``StoreUnavailable``.
    """
    try:
        db.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        raise StoreUnavailable(str(exc)) from exc
    try:
        yield db
    except sqlite3.OperationalError as exc:
        db.rollback()
        raise StoreUnavailable(str(exc)) from exc
    except BaseException:
        db.rollback()
        raise
    try:
        db.commit()
    except sqlite3.OperationalError as exc:
        db.rollback()
        raise StoreUnavailable(str(exc)) from exc


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS users (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            username          TEXT UNIQUE NOT NULL,
            hashed_google_id  TEXT UNIQUE NOT NULL,
            avatar_url        TEXT,
            member_since      TEXT NOT NULL,
            follower_count    INTEGER NOT NULL DEFAULT 0
                              CHECK (follower_count >= 0)
        );

        ------------------------------------------------------------
        -- 2.  Posts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS posts (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            title      TEXT NOT NULL,
            content    TEXT NOT NULL,
            username   TEXT NOT NULL,
            timestamp  TEXT NOT NULL,
            likes      INTEGER NOT NULL DEFAULT 0 CHECK (likes >= 0),
            FOREIGN KEY (username) REFERENCES users(username)
        );

        CREATE INDEX IF NOT EXISTS idx_posts_username ON posts(username);

        ------------------------------------------------------------
        -- 3.  Comments  (go away with their post)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comments (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id    INTEGER NOT NULL,
            username   TEXT NOT NULL,
            content    TEXT NOT NULL,
            timestamp  TEXT NOT NULL,
            FOREIGN KEY (post_id)  REFERENCES posts(id) ON DELETE CASCADE,
            FOREIGN KEY (username) REFERENCES users(username)
        );

        CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id);

        ------------------------------------------------------------
        -- 4.  Follow edges  (follower → following)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS followers (
            follower   TEXT NOT NULL,
            following  TEXT NOT NULL,
            PRIMARY KEY (follower, following),
            CHECK (follower <> following),
            FOREIGN KEY (follower)  REFERENCES users(username),
            FOREIGN KEY (following) REFERENCES users(username)
        );

        CREATE INDEX IF NOT EXISTS idx_followers_following ON followers(following);

        ------------------------------------------------------------
        -- 5.  Likes  (one row per user + post)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post_likes (
            user_id  INTEGER NOT NULL,
            post_id  INTEGER NOT NULL,
            PRIMARY KEY (user_id, post_id),
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (post_id) REFERENCES posts(id) ON DELETE CASCADE
        );
        """
    )


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Users
###############################################################################
def find_user_by_username(username: str, *, db):
    return db.execute("SELECT * FROM users WHERE username=?", (username,)).fetchone()


def find_user_by_id(user_id: int, *, db):
    return db.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()


def find_user_by_identity(hashed_google_id: str, *, db):
    return db.execute(
        "SELECT * FROM users WHERE hashed_google_id=?", (hashed_google_id,)
    ).fetchone()


def add_user(username: str, hashed_google_id: str, *, db, avatar_url=None):
    with transaction(db):
        cur = db.execute(
            """INSERT INTO users (username, hashed_google_id, avatar_url, member_since)
                      VALUES (?,?,?,?)""",
            (username, hashed_google_id, avatar_url, now_iso()),
        )
    app.logger.info("user %s created", username)
    return find_user_by_id(cur.lastrowid, db=db)


def hash_identity(subject: str) -> str:
    """Google's stable `sub` claim → the key we store (never the raw id)."""
    return hashlib.sha256(f"google:{subject}".encode()).hexdigest()


def liked_post_ids(user_id: int, *, db) -> set[int]:
    rows = db.execute("SELECT post_id FROM post_likes WHERE user_id=?", (user_id,))
    return {r["post_id"] for r in rows}


def is_following(follower: str, following: str, *, db) -> bool:
    row = db.execute(
        "SELECT 1 FROM followers WHERE follower=? AND following=?",
        (follower, following),
    ).fetchone()
    return row is not None


def following_of(username: str, *, db) -> list[str]:
    rows = db.execute(
        "SELECT following FROM followers WHERE follower=? ORDER BY following",
        (username,),
    )
    return [r["following"] for r in rows]


def current_user():
    """
    The signed-in viewer, re-read from the database on every call.  The
    session only carries the id.
    """
    uid = session.get("user_id")
    if not uid:
        return None
    return find_user_by_id(uid, db=get_db())


def login_required():
    user = current_user()
    if user is None:
        raise Unauthenticated("login required")
    return user


###############################################################################
# Posts + comments
###############################################################################
def get_post(post_id: int, *, db):
    return db.execute("SELECT * FROM posts WHERE id=?", (post_id,)).fetchone()


def list_posts(*, db, username: str | None = None) -> list:
    """All posts (optionally by one author) in insertion order."""
    if username is None:
        return db.execute("SELECT * FROM posts ORDER BY id").fetchall()
    return db.execute(
        "SELECT * FROM posts WHERE username=? ORDER BY id", (username,)
    ).fetchall()


def add_post(title: str, content: str, user, *, db) -> int:
    if user is None:
        raise Unauthenticated("login required")
    with transaction(db):
        cur = db.execute(
            """INSERT INTO posts (title, content, username, timestamp, likes)
                      VALUES (?,?,?,?,0)""",
            (title, content, user["username"], now_iso()),
        )
    return cur.lastrowid


def delete_post(post_id: int, viewer, *, db) -> None:
    if viewer is None:
        raise Unauthenticated("login required")
    with transaction(db):
        post = get_post(post_id, db=db)
        if post is None:
            raise NotFound(f"post {post_id}")
        if post["username"] != viewer["username"]:
            raise Forbidden(f"{viewer['username']} does not own post {post_id}")
        db.execute("DELETE FROM posts WHERE id=?", (post_id,))
    app.logger.info("post %s deleted by %s", post_id, viewer["username"])


def add_comment(post_id: int, viewer, content: str, *, db) -> int:
    if viewer is None:
        raise Unauthenticated("login required")
    with transaction(db):
        if get_post(post_id, db=db) is None:
            raise NotFound(f"post {post_id}")
        cur = db.execute(
            """INSERT INTO comments (post_id, username, content, timestamp)
                      VALUES (?,?,?,?)""",
            (post_id, viewer["username"], content, now_iso()),
        )
    return cur.lastrowid


def post_comments(post_id: int, *, db) -> list[dict]:
    """Comments of one post, newest first; same-second ties by id."""
    rows = db.execute(
        "SELECT * FROM comments WHERE post_id=? ORDER BY timestamp DESC, id DESC",
        (post_id,),
    )
    return [dict(r) for r in rows]


###############################################################################
# Likes + follows
###############################################################################
def set_like(viewer, post_id: int, liked: bool = True, *, db) -> dict:
    """
    Put *viewer*'s like on *post_id* into the requested state.

    Liking twice (or un-liking something never liked) changes nothing.
    The ``post_likes`` row and ``posts.likes`` move together in one
    transaction.
    """
    if viewer is None:
        raise Unauthenticated("login required")

    with transaction(db):
        post = db.execute(
            "SELECT id, username FROM posts WHERE id=?", (post_id,)
        ).fetchone()
        if post is None:
            raise NotFound(f"post {post_id}")
        if post["username"] == viewer["username"]:
            raise Forbidden(f"{viewer['username']} tried to like own post {post_id}")

        has_like = (
            db.execute(
                "SELECT 1 FROM post_likes WHERE user_id=? AND post_id=?",
                (viewer["id"], post_id),
            ).fetchone()
            is not None
        )
        if liked and not has_like:
            db.execute(
                "INSERT INTO post_likes (user_id, post_id) VALUES (?,?)",
                (viewer["id"], post_id),
            )
            db.execute("UPDATE posts SET likes = likes + 1 WHERE id=?", (post_id,))
        elif not liked and has_like:
            db.execute(
                "DELETE FROM post_likes WHERE user_id=? AND post_id=?",
                (viewer["id"], post_id),
            )
            db.execute("UPDATE posts SET likes = likes - 1 WHERE id=?", (post_id,))

        count = db.execute(
            "SELECT likes FROM posts WHERE id=?", (post_id,)
        ).fetchone()["likes"]

    return {"likeCount": count, "liked": bool(liked)}


def set_follow(follower, target_username: str, followed: bool = True, *, db) -> dict:
    """
    Create or remove the edge *follower* → *target_username*.

    Unlike likes, a follow that already exists (or an unfollow with no
    edge) is reported as ``AlreadyFollowing`` / ``NotFollowing`` so the
    caller can tell a no-op from a real change.
    """
    if follower is None:
        raise Unauthenticated("login required")
    if follower["username"] == target_username:
        raise Forbidden(f"{target_username} tried to follow themselves")

    with transaction(db):
        if find_user_by_username(target_username, db=db) is None:
            raise NotFound(f"user {target_username}")

        edge = is_following(follower["username"], target_username, db=db)
        if followed:
            if edge:
                raise AlreadyFollowing(f"{follower['username']} → {target_username}")
            db.execute(
                "INSERT INTO followers (follower, following) VALUES (?,?)",
                (follower["username"], target_username),
            )
            delta = 1
        else:
            if not edge:
                raise NotFollowing(f"{follower['username']} → {target_username}")
            db.execute(
                "DELETE FROM followers WHERE follower=? AND following=?",
                (follower["username"], target_username),
            )
            delta = -1

        db.execute(
            "UPDATE users SET follower_count = follower_count + ? WHERE username=?",
            (delta, target_username),
        )
        count = db.execute(
            "SELECT follower_count FROM users WHERE username=?", (target_username,)
        ).fetchone()["follower_count"]

    return {"success": True, "followerCount": count}


###############################################################################
# Aggregation
###############################################################################
SORT_KEYS = {
    "latest": (lambda p: p["timestamp"], True),
    "oldest": (lambda p: p["timestamp"], False),
    "likes": (lambda p: p["likes"], True),
}


def sort_posts(posts, mode: str = SORT_DEFAULT) -> list:
    """
    Order *posts* by one of ``SORT_MODES``; unknown modes mean "latest".
    ``sorted`` is stable (also with ``reverse=True``), so ties keep the
    order the posts were fetched in.
    """
    key, reverse = SORT_KEYS.get(mode, SORT_KEYS[SORT_DEFAULT])
    return sorted(posts, key=key, reverse=reverse)


def build_post_view(post, viewer=None, *, db) -> dict:
    """
    One post ready for display: its own columns plus

    • ``comments``           newest first
    • ``isFollowingAuthor``  live lookup, False for anonymous viewers
    • ``liked``              whether the viewer has liked it
    • ``isOwner``            whether the viewer wrote it
    """
    view = dict(post)
    view["comments"] = post_comments(post["id"], db=db)

    if viewer is None:
        view.update(isFollowingAuthor=False, liked=False, isOwner=False)
        return view

    view["isOwner"] = viewer["username"] == post["username"]
    view["isFollowingAuthor"] = is_following(
        viewer["username"], post["username"], db=db
    )
    view["liked"] = (
        db.execute(
            "SELECT 1 FROM post_likes WHERE user_id=? AND post_id=?",
            (viewer["id"], post["id"]),
        ).fetchone()
        is not None
    )
    return view


###############################################################################
# Avatars
###############################################################################
def avatar_color(letter: str) -> str:
    return AVATAR_COLORS[ord(letter) % len(AVATAR_COLORS)]


def generate_avatar(letter: str, size: int = AVATAR_SIZE) -> str:
    """
    Square SVG with *letter* centred on a colour picked from its code
    point.  Same letter, same bytes.
    """
    letter = (letter or "?")[0].upper()
    bg = avatar_color(letter).lstrip("#")
    r, g_, b = (int(bg[i : i + 2], 16) for i in (0, 2, 4))
    fg = "#FFFFFF" if (r + g_ + b) < 384 else "#000000"

    return f'''<svg xmlns="http://www.w3.org/2000/svg"
     width="{size}" height="{size}" viewBox="0 0 {size} {size}">
  <rect width="{size}" height="{size}" fill="#{bg}"/>
  <text x="50%" y="50%" dy=".35em" text-anchor="middle"
        font-family="Arial,Helvetica,sans-serif"
        font-size="{size // 2}" font-weight="700"
        fill="{fg}">{escape(letter)}</text>
</svg>'''


###############################################################################
# Configuration helpers
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def google_config() -> dict[str, str]:
    """app.config → process env → .env file, first non-empty wins."""
    env_file = _read_env_file()
    cfg = {
        k: (app.config.get(k) or os.environ.get(k) or env_file.get(k) or "").strip()
        for k in GOOGLE_ENV_KEYS
    }
    return {k: v for k, v in cfg.items() if v}


def google_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or google_config()
    return all(cfg.get(k) for k in GOOGLE_REQUIRED_KEYS)


def _as_bool(value, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


###############################################################################
# CLI – schema + sample data
###############################################################################
SAMPLE_USERS = (
    ("user1", "hashedGoogleId1", "2024-01-01T12:00:00+00:00"),
    ("user2", "hashedGoogleId2", "2024-01-02T12:00:00+00:00"),
)
SAMPLE_POSTS = (
    ("First Post", "This is the first post", "user1", "2024-01-01T12:30:00+00:00"),
    ("Second Post", "This is the second post", "user2", "2024-01-02T12:30:00+00:00"),
)


def populate_db(*, db) -> tuple[int, int]:
    """Insert the sample users and posts; skip whatever is already there."""
    users = posts = 0
    with transaction(db):
        for username, hashed, since in SAMPLE_USERS:
            cur = db.execute(
                """INSERT OR IGNORE INTO users
                          (username, hashed_google_id, avatar_url, member_since)
                   VALUES (?,?,'',?)""",
                (username, hashed, since),
            )
            users += cur.rowcount
        if not db.execute("SELECT 1 FROM posts LIMIT 1").fetchone():
            for title, content, username, ts in SAMPLE_POSTS:
                db.execute(
                    """INSERT INTO posts (title, content, username, timestamp, likes)
                              VALUES (?,?,?,?,0)""",
                    (title, content, username, ts),
                )
                posts += 1
    return users, posts


@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it exists)."""
    init_db()
    click.secho(f"\n✅  Schema ready in {app.config['DATABASE']}", fg="green")


@app.cli.command("seed")
def cli_seed():
    """Create the schema *and* insert the sample users + posts."""
    init_db()
    users, posts = populate_db(db=get_db())
    click.secho(f"\n🌱  {users} users, {posts} posts inserted.", fg="green")


###############################################################################
# Request guards
###############################################################################
def client_ip() -> str:
    """Return best-effort client IP after ProxyFix."""
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous and not mid-registration ⇒ nothing to protect
    if not session.get("user_id") and not session.get("pending_identity"):
        return

    # ➌ otherwise we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.context_processor
def inject_locals():
    try:
        user = current_user()
    except StoreUnavailable:
        # error pages for a dead store still render, as an anonymous viewer
        user = None
    return {
        "appName": APP_NAME,
        "copyrightYear": COPYRIGHT_YEAR,
        "postNeoType": POST_NOUN,
        "loggedIn": user is not None,
        "user": user,
    }


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    sort_modes=SORT_MODES,
    version=__version__,
)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or appName }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
{% if csrf_token() %}<meta name="csrf" content="{{ csrf_token() }}">{% endif %}
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{max-width:40em;margin:auto;padding:13px;line-height:1.5;color:#222;background:#fafafa}
a{color:#3b5998}
nav{display:flex;gap:1rem;align-items:center;margin-bottom:1rem}
nav .right{margin-left:auto;display:flex;gap:1rem;align-items:center}
.post{background:#fff;border:1px solid #ddd;border-radius:6px;padding:1rem;margin-bottom:1rem}
.post header{display:flex;gap:.6rem;align-items:center}
.post small,.comment small{color:#888}
.avatar{width:32px;height:32px;border-radius:50%}
.comment{border-top:1px solid #eee;padding:.5rem 0}
.flash{background:#fff3cd;border:1px solid #ffe08a;padding:.4rem .8rem;margin-bottom:1rem}
textarea,input[type=text]{width:100%;box-sizing:border-box;margin-bottom:.5rem}
button{cursor:pointer}
</style>
<nav>
  <a href="{{ url_for('index') }}"><strong>{{ appName }}</strong></a>
  <span class="right">
  {% if loggedIn %}
    <a href="{{ url_for('profile') }}">
      <img class="avatar" src="{{ url_for('avatar', username=user['username']) }}" alt="">
      {{ user['username'] }}</a>
    <a href="{{ url_for('logout') }}">Logout</a>
  {% else %}
    <a href="{{ url_for('login') }}">Login</a>
  {% endif %}
  </span>
</nav>
{% with msgs = get_flashed_messages() %}
  {% for m in msgs %}<div class="flash">{{ m }}</div>{% endfor %}
{% endwith %}
<main>
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2rem;color:#888;font-size:.8em;">
  &copy; {{ copyrightYear }} {{ appName }} · v{{ version }}
</footer>
<script>
document.querySelectorAll('[data-toggle]').forEach(btn => {
  btn.addEventListener('click', async () => {
    const on = btn.dataset.state === 'on';
    const headers = {"Content-Type": "application/json"};
    const csrf = document.querySelector('meta[name="csrf"]');
    if (csrf) headers["X-CSRFToken"] = csrf.content;
    let url = btn.dataset.url;
    if (btn.dataset.toggle === 'follow') url = (on ? '/unfollow/' : '/follow/') + btn.dataset.target;
    const res = await fetch(url, {method: "POST", headers,
                                  body: JSON.stringify({liked: !on})});
    const data = await res.json();
    if (!res.ok) { console.log("toggle failed", data.reason); return; }
    btn.dataset.state = on ? 'off' : 'on';
    const count = btn.querySelector('.count');
    if (count) count.textContent = data.likeCount ?? data.followerCount;
    const label = btn.querySelector('.label');
    if (label) label.textContent = label.dataset[btn.dataset.state];
  });
});
</script>
</html>
"""

TEMPL_POST = """
<article class="post" id="post-{{ p['id'] }}">
  <header>
    <img class="avatar" src="{{ url_for('avatar', username=p['username']) }}" alt="">
    <a href="{{ url_for('user_profile', username=p['username']) }}">{{ p['username'] }}</a>
    <small>{{ p['timestamp']|ts }}</small>
  </header>
  <h3><a href="{{ url_for('post_detail', post_id=p['id']) }}">{{ p['title'] }}</a></h3>
  <div>{{ p['content']|md }}</div>
  <footer>
    {% if loggedIn and p['username'] != user['username'] %}
      <button data-toggle="like" data-url="{{ url_for('like', post_id=p['id']) }}"
              data-state="{{ 'on' if p['id'] in liked else 'off' }}">
        ♥ <span class="count">{{ p['likes'] }}</span></button>
    {% else %}
      <span>♥ {{ p['likes'] }}</span>
    {% endif %}
    {% if loggedIn and p['username'] == user['username'] %}
      <form method="post" action="{{ url_for('delete', post_id=p['id']) }}" style="display:inline">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button>Delete</button>
      </form>
    {% endif %}
  </footer>
</article>
"""

TEMPL_HOME = wrap("""
{% block body %}
  {% if loggedIn %}
  <form method="post" action="{{ url_for('create_post') }}" class="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="text" name="title" placeholder="Title" required>
    <textarea name="content" rows="4" placeholder="What's on your mind?" required></textarea>
    <button>{{ postNeoType }}</button>
  </form>
  {% endif %}
  <p>Sort:
  {% for m in sort_modes %}
    {% if m == sort %}<strong>{{ m }}</strong>{% else %}
    <a href="{{ url_for('index', sort=m) }}">{{ m }}</a>{% endif %}
  {% endfor %}
  </p>
  {% for p in posts %}""" + TEMPL_POST + """{% else %}
    <p>No posts yet.</p>
  {% endfor %}
{% endblock %}
""")

TEMPL_POST_DETAIL = wrap("""
{% block body %}
  {% set liked = [p['id']] if p['liked'] else [] %}
  """ + TEMPL_POST + """
  {% if loggedIn and not p['isOwner'] %}
    <button data-toggle="follow" data-target="{{ p['username'] }}"
            data-state="{{ 'on' if p['isFollowingAuthor'] else 'off' }}">
      <span class="label" data-on="Unfollow" data-off="Follow">
        {{ 'Unfollow' if p['isFollowingAuthor'] else 'Follow' }}</span>
      {{ p['username'] }}</button>
  {% endif %}
  <section>
    <h4>Comments ({{ p['comments']|length }})</h4>
    {% if loggedIn %}
    <form method="post" action="{{ url_for('comment', post_id=p['id']) }}">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <textarea name="content" rows="2" required></textarea>
      <button>Comment</button>
    </form>
    {% endif %}
    {% for c in p['comments'] %}
      <div class="comment">
        <a href="{{ url_for('user_profile', username=c['username']) }}">{{ c['username'] }}</a>
        <small>{{ c['timestamp']|ts }}</small>
        <div>{{ c['content']|md }}</div>
      </div>
    {% endfor %}
  </section>
{% endblock %}
""")

TEMPL_PROFILE = wrap("""
{% block body %}
  <header class="post">
    <img class="avatar" style="width:64px;height:64px"
         src="{{ url_for('avatar', username=owner['username']) }}" alt="">
    <h2 style="display:inline">{{ owner['username'] }}</h2>
    <p><small>Member since {{ owner['member_since']|ts }}</small></p>
    <p>Followers: <span class="count">{{ owner['follower_count'] }}</span>
       · Following: {{ following|length }}</p>
    {% if loggedIn and owner['username'] != user['username'] %}
      <button data-toggle="follow" data-target="{{ owner['username'] }}"
              data-state="{{ 'on' if followed else 'off' }}">
        <span class="label" data-on="Unfollow" data-off="Follow">
          {{ 'Unfollow' if followed else 'Follow' }}</span></button>
    {% endif %}
    {% if following %}
      <p>{% for f in following %}
        <a href="{{ url_for('user_profile', username=f) }}">{{ f }}</a>{% if not loop.last %}, {% endif %}
      {% endfor %}</p>
    {% endif %}
  </header>
  {% for p in posts %}""" + TEMPL_POST + """{% else %}
    <p>No posts yet.</p>
  {% endfor %}
{% endblock %}
""")

TEMPL_LOGIN = wrap("""
{% block body %}
  <h2>Sign in</h2>
  {% if error %}<div class="flash">{{ error }}</div>{% endif %}
  <p><a class="button" href="{{ url_for('auth_google') }}">Sign in with Google</a></p>
{% endblock %}
""")

TEMPL_REGISTER = wrap("""
{% block body %}
  <h2>Pick a username</h2>
  {% if error %}<div class="flash">{{ error }}</div>{% endif %}
  <form method="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="text" name="username" value="{{ username }}"
           pattern="[A-Za-z0-9_]{3,20}" required>
    <button>Register</button>
  </form>
  <p><small>3–20 letters, digits or underscores.</small></p>
{% endblock %}
""")

TEMPL_ERROR = wrap("""
{% block body %}
  <h2 style="margin-top:0">{{ heading }}</h2>
  <p>{{ message }}
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

ERROR_PAGES = {
    "not_found": ("Page not found", "The page you asked for doesn’t exist."),
    "forbidden": ("Not allowed", "You can’t do that with your account."),
    "already_following": ("Already following", "You already follow this user."),
    "not_following": ("Not following", "You don’t follow this user."),
    "store_unavailable": (
        "Temporarily unavailable",
        "The database is busy. Please try again in a moment.",
    ),
    "error": ("Something went wrong", "An error occurred."),
}


###############################################################################
# Index + posts
###############################################################################
@app.route("/")
def index():
    db = get_db()
    viewer = current_user()
    sort = request.args.get("sort", SORT_DEFAULT)
    if sort not in SORT_MODES:
        sort = SORT_DEFAULT

    posts = sort_posts(list_posts(db=db), sort)
    liked = liked_post_ids(viewer["id"], db=db) if viewer else set()
    return render_template_string(TEMPL_HOME, posts=posts, liked=liked, sort=sort)


@app.route("/posts", methods=["POST"])
def create_post():
    user = login_required()
    title = request.form.get("title", "").strip()
    content = request.form.get("content", "").strip()

    if not title or not content:
        flash("Title and content are required.")
    elif len(title) > TITLE_MAX or len(content) > CONTENT_MAX:
        flash("That post is too long.")
    else:
        add_post(title, content, user, db=get_db())
    return redirect(url_for("index"))


@app.route("/post/<int:post_id>")
def post_detail(post_id):
    db = get_db()
    post = get_post(post_id, db=db)
    if post is None:
        abort(404)
    view = build_post_view(post, current_user(), db=db)
    return render_template_string(TEMPL_POST_DETAIL, p=view, title=post["title"])


@app.route("/post/<int:post_id>/comment", methods=["POST"])
def comment(post_id):
    user = login_required()
    content = request.form.get("content", "").strip()
    if not content:
        flash("Comment can’t be empty.")
    elif len(content) > CONTENT_MAX:
        flash("That comment is too long.")
    else:
        add_comment(post_id, user, content, db=get_db())
    return redirect(url_for("post_detail", post_id=post_id))


@app.route("/delete/<int:post_id>", methods=["POST"])
def delete(post_id):
    delete_post(post_id, current_user(), db=get_db())
    if _wants_json():
        return {"success": True}
    return redirect(url_for("index"))


###############################################################################
# Likes + follows (JSON)
###############################################################################
@app.route("/like/<int:post_id>", methods=["POST"])
def like(post_id):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    liked = _as_bool(payload.get("liked", request.form.get("liked")))
    return set_like(current_user(), post_id, liked, db=get_db())


@app.route("/follow/<username>", methods=["POST"])
def follow(username):
    return set_follow(current_user(), username, True, db=get_db())


@app.route("/unfollow/<username>", methods=["POST"])
def unfollow(username):
    return set_follow(current_user(), username, False, db=get_db())


###############################################################################
# Profiles + avatars
###############################################################################
def _render_profile(owner, viewer):
    db = get_db()
    posts = sort_posts(list_posts(db=db, username=owner["username"]), "latest")
    liked = liked_post_ids(viewer["id"], db=db) if viewer else set()
    followed = bool(viewer) and is_following(
        viewer["username"], owner["username"], db=db
    )
    return render_template_string(
        TEMPL_PROFILE,
        owner=owner,
        posts=posts,
        liked=liked,
        followed=followed,
        following=following_of(owner["username"], db=db),
        title=owner["username"],
    )


@app.route("/profile")
def profile():
    user = login_required()
    return _render_profile(user, user)


@app.route("/user/<username>")
def user_profile(username):
    owner = find_user_by_username(username, db=get_db())
    if owner is None:
        abort(404)
    return _render_profile(owner, current_user())


@app.route("/avatar/<username>")
def avatar(username):
    user = find_user_by_username(username, db=get_db())
    if user is None:
        abort(404)
    if user["avatar_url"]:
        return redirect(user["avatar_url"])

    # 1-day cache; the image only depends on the first letter
    return Response(
        generate_avatar(user["username"][0]),
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=86400"},
    )


###############################################################################
# Authentication (Google OAuth + username claim)
###############################################################################
def _start_session(user) -> None:
    session.clear()
    session.permanent = True
    session["user_id"] = user["id"]
    session["csrf"] = secrets.token_hex(16)


def fetch_google_subject(code: str, cfg: dict[str, str]) -> str:
    """Trade an authorization *code* for the account's stable `sub` id."""
    tok = requests.post(
        GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": cfg["GOOGLE_CLIENT_ID"],
            "client_secret": cfg["GOOGLE_CLIENT_SECRET"],
            "redirect_uri": _redirect_uri(cfg),
            "grant_type": "authorization_code",
        },
        timeout=OAUTH_TIMEOUT,
    )
    tok.raise_for_status()
    info = requests.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {tok.json()['access_token']}"},
        timeout=OAUTH_TIMEOUT,
    )
    info.raise_for_status()
    return info.json()["sub"]


def _redirect_uri(cfg: dict[str, str]) -> str:
    return cfg.get("GOOGLE_REDIRECT_URI") or url_for(
        "auth_google_callback", _external=True
    )


@app.route("/login")
def login():
    if current_user() is not None:
        return redirect(url_for("index"))
    return render_template_string(
        TEMPL_LOGIN, error=request.args.get("error", ""), title="Sign in"
    )


@app.route("/auth/google")
def auth_google():
    cfg = google_config()
    if not google_is_configured(cfg):
        return redirect(url_for("login", error="Google sign-in is not configured."))

    state = secrets.token_urlsafe(24)
    session["oauth_state"] = state
    params = {
        "client_id": cfg["GOOGLE_CLIENT_ID"],
        "redirect_uri": _redirect_uri(cfg),
        "response_type": "code",
        "scope": "openid",
        "state": state,
        "prompt": "select_account",
    }
    return redirect(f"{GOOGLE_AUTH_URL}?{urlencode(params)}")


@app.route("/auth/google/callback")
@rate_limit(max_requests=10, window=60)
def auth_google_callback():
    expected = session.pop("oauth_state", "")
    state = request.args.get("state", "")
    code = request.args.get("code", "")
    if not expected or not secrets.compare_digest(expected, state) or not code:
        return redirect(url_for("login", error="Sign-in failed, please try again."))

    try:
        subject = fetch_google_subject(code, google_config())
    except (requests.RequestException, KeyError, ValueError):
        app.logger.exception("Google sign-in failed")
        return redirect(url_for("login", error="Google sign-in failed."))

    hashed = hash_identity(subject)
    user = find_user_by_identity(hashed, db=get_db())
    if user is not None:
        _start_session(user)
        return redirect(url_for("index"))

    # first visit → claim a username before the account exists
    session.clear()
    session["pending_identity"] = hashed
    session["csrf"] = secrets.token_hex(16)
    return redirect(url_for("register_username"))


@app.route("/registerUsername", methods=["GET", "POST"])
def register_username():
    hashed = session.get("pending_identity")
    if not hashed:
        return redirect(url_for("login"))

    error = ""
    username = request.form.get("username", "").strip()
    if request.method == "POST":
        db = get_db()
        if not USERNAME_RE.match(username):
            error = "Usernames are 3–20 letters, digits or underscores."
        elif find_user_by_username(username, db=db) is not None:
            error = "That username is taken."
        else:
            try:
                user = add_user(username, hashed, db=db)
            except sqlite3.IntegrityError:
                error = "That username is taken."
            else:
                _start_session(user)
                return redirect(url_for("index"))

    return render_template_string(
        TEMPL_REGISTER, error=error, username=username, title="Register"
    )


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return (
        request.is_json
        or request.path.startswith(JSON_PREFIXES)
        or request.accept_mimetypes.best == "application/json"
    )


def _error_page(reason: str, status: int):
    heading, message = ERROR_PAGES.get(reason, ERROR_PAGES["error"])
    return render_template_string(
        TEMPL_ERROR, heading=heading, message=message, title=heading
    ), status


@app.route("/error")
def error():
    return _error_page("error", 200)


@app.errorhandler(BlogError)
def blog_error(exc):
    if isinstance(exc, StoreUnavailable):
        app.logger.warning("store unavailable: %s", exc)
    if _wants_json():
        return {"success": False, "reason": exc.reason}, exc.status
    if isinstance(exc, Unauthenticated):
        return redirect(url_for("login"))
    return _error_page(exc.reason, exc.status)


@app.errorhandler(sqlite3.OperationalError)
def store_error(exc):
    """Locked / missing database outside a transaction → 503."""
    return blog_error(StoreUnavailable(str(exc)))


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return _error_page("not_found", 404)


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(
        TEMPL_ERROR,
        heading="Internal Server Error",
        message="Our fault, not yours. Please try again in a minute.",
        title="Internal Server Error",
    ), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
