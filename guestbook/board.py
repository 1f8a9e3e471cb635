#!/usr/bin/env python3
"""
A single-file guestbook with member profiles.

Visitors sign the guestbook, reply to entries and comment on member
profiles.  Every post carries its own password; the site owner holds one
admin key that overrides all of them.
"""

import json
import os
import re
import secrets
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from time import time
from typing import Callable, NamedTuple

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, g, request, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "guestbook.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

PASSWORD_MIN_LEN = 4
DEFAULT_AVATAR = "🙂"
PAGE_DEFAULT = 5
PAGE_MAX = 50
GRANTS_MAX = 50  # verified keys kept in the session cookie

CORS_ORIGIN_DEFAULT = "https://promise.page24.app"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 6 * 1024 * 1024
UPLOAD_DEFAULT_FOLDER = "profiles"
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
}
_FOLDER_STRIP_RE = re.compile(r"[^A-Za-z0-9/_-]")

# deny kinds
UNAUTHORIZED = "unauthorized"
NOT_FOUND = "not_found"
BAD_REQUEST = "bad_request"
TOO_SHORT = "too_short"

ERROR_STATUS = {
    UNAUTHORIZED: 401,
    NOT_FOUND: 404,
    BAD_REQUEST: 400,
    TOO_SHORT: 400,
}
ERROR_MESSAGES = {
    UNAUTHORIZED: "Wrong or missing password.",
    NOT_FOUND: "Nothing here by that id.",
    BAD_REQUEST: "That post does not belong here.",
    TOO_SHORT: f"Passwords need at least {PASSWORD_MIN_LEN} characters.",
}


class Kind(NamedTuple):
    table: str
    parent: str | None  # column holding the containing post's id
    grants: bool  # a prior /verify may stand in for the password


KINDS = {
    "entry": Kind("entry", None, False),
    "entry_reply": Kind("entry_reply", "entry_id", True),
    "comment": Kind("profile_comment", "profile_id", True),
    "comment_reply": Kind("comment_reply", "comment_id", True),
}
HIDDEN_COLS = {"password_hash", "parent_id"}


################################################################################
# Configuration
################################################################################
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


def _write_env_file(env: dict[str, str]) -> None:
    lines = [f"{k}={v}" for k, v in sorted(env.items()) if v]
    ENV_FILE.write_text("\n".join(lines) + "\n" if lines else "")
    try:
        ENV_FILE.chmod(0o600)
    except OSError:
        pass


def env_value(key: str, default: str = "") -> str:
    """Process environment first, then the .env file."""
    val = os.environ.get(key) or _read_env_file().get(key) or default
    return val.strip()


def merge_env(updates: dict[str, str]) -> dict[str, str]:
    """Merge *updates* into both the process env and the .env file."""
    env = _read_env_file()
    changed = False
    for k, v in updates.items():
        if not v:
            continue
        if env.get(k) != v:
            env[k] = v
            changed = True
        os.environ[k] = v
    if changed:
        _write_env_file(env)
    return env


################################################################################
# Ownership: password hashes, admin key, verification grants
################################################################################
def hash_secret(secret: str) -> str:
    """Salted, adaptive digest (werkzeug's default method)."""
    return generate_password_hash(secret)


def verify_secret(secret: str, digest: str | None) -> bool:
    """
    True iff *secret* hashes to *digest*.
    Empty, malformed or foreign-format digests never match and never raise.
    """
    if not digest or not isinstance(digest, str):
        return False
    try:
        return check_password_hash(digest, secret)
    except (ValueError, TypeError, OverflowError):
        return False


class Decision(NamedTuple):
    allowed: bool
    error: str | None = None


ALLOW = Decision(True)


class Ownership:
    """
    Owner-or-admin check shared by every edit, delete and verify route.

    The admin key is handed in once at startup.  An empty configured key
    never admits anyone.
    """

    def __init__(self, admin_key: str | None):
        self.admin_key = (admin_key or "").strip()

    def is_admin(self, supplied: str | None) -> bool:
        key = (supplied or "").strip()
        if not key or not self.admin_key:
            return False
        return secrets.compare_digest(key.encode(), self.admin_key.encode())

    def owner_hash(
        self, admin_key: str | None, password: str | None
    ) -> tuple[str | None, bool, str | None]:
        """
        Credentials for a new post: ``(password_hash, is_admin, error)``.

        Admins may skip the password; their post then has no hash and only
        the admin key can change it later.
        """
        admin = self.is_admin(admin_key)
        password = (password or "").strip()
        if admin and not password:
            return None, True, None
        if len(password) < PASSWORD_MIN_LEN:
            return None, admin, TOO_SHORT
        return hash_secret(password), admin, None

    def can_mutate(
        self,
        resource,
        admin_key: str | None,
        password: str | None,
        verified: bool = False,
    ) -> Decision:
        if self.is_admin(admin_key):
            return ALLOW

        digest = resource["password_hash"]
        if not digest:
            return Decision(False, UNAUTHORIZED)

        password = (password or "").strip()
        if password:
            if len(password) < PASSWORD_MIN_LEN:
                return Decision(False, TOO_SHORT)  # rejected before hashing
            if verify_secret(password, digest):
                return ALLOW

        if verified:
            return ALLOW
        return Decision(False, UNAUTHORIZED)

    def check_claim(
        self,
        fetch: Callable,
        parent_id: str | None,
        admin_key: str | None,
        password: str | None,
    ) -> Decision:
        """
        Ownership pre-check behind the ``/verify`` routes.
        *fetch* returns the post row (with a ``parent_id`` column) or None.
        """
        if self.is_admin(admin_key):
            return ALLOW

        password = (password or "").strip()
        if len(password) < PASSWORD_MIN_LEN:
            return Decision(False, TOO_SHORT)

        row = fetch()
        if row is None:
            return Decision(False, NOT_FOUND)
        if parent_id is not None and row["parent_id"] != parent_id:
            return Decision(False, BAD_REQUEST)
        if not verify_secret(password, row["password_hash"]):
            return Decision(False, UNAUTHORIZED)
        return ALLOW


def configure_ownership(flask_app: Flask) -> Ownership:
    """(Re)build the ownership checker from ``ADMIN_KEY``."""
    guard = Ownership(flask_app.config.get("ADMIN_KEY"))
    flask_app.extensions["ownership"] = guard
    return guard


def ownership() -> Ownership:
    return app.extensions["ownership"]


def _grant_key(kind: str, rid: str) -> str:
    return f"{kind}:{rid}"


def has_grant(kind: str, rid: str) -> bool:
    return _grant_key(kind, rid) in session.get("verified", [])


def add_grant(kind: str, rid: str) -> None:
    keys = [k for k in session.get("verified", []) if k != _grant_key(kind, rid)]
    keys.append(_grant_key(kind, rid))
    session["verified"] = keys[-GRANTS_MAX:]


def drop_grant(kind: str, rid: str) -> None:
    keys = session.get("verified", [])
    if _grant_key(kind, rid) in keys:
        session["verified"] = [k for k in keys if k != _grant_key(kind, rid)]


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    ADMIN_KEY=env_value("ADMIN_KEY"),
    CORS_ORIGIN=env_value("CORS_ORIGIN", CORS_ORIGIN_DEFAULT),
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env_value("SESSION_COOKIE_SECURE", "1") != "0",
)
app.json.ensure_ascii = False  # avatars are emoji
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
CORS(
    app,
    resources={r"/api/*": {"origins": app.config["CORS_ORIGIN"]}},
    supports_credentials=True,
    max_age=86400,
)
configure_ownership(app)


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Guestbook
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS entry (
            id            TEXT PRIMARY KEY,
            name          TEXT NOT NULL,
            avatar        TEXT NOT NULL,
            content       TEXT NOT NULL,
            image_url     TEXT,
            password_hash TEXT,
            is_admin      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_entry_created ON entry(created_at);

        CREATE TABLE IF NOT EXISTS entry_reply (
            id            TEXT PRIMARY KEY,
            entry_id      TEXT NOT NULL REFERENCES entry(id) ON DELETE CASCADE,
            name          TEXT NOT NULL,
            avatar        TEXT NOT NULL,
            content       TEXT NOT NULL,
            image_url     TEXT,
            password_hash TEXT,
            is_admin      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_entry_reply_entry ON entry_reply(entry_id);

        ------------------------------------------------------------
        -- 2.  Member profiles
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS profile (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL,
            role        TEXT NOT NULL DEFAULT '',
            bio         TEXT NOT NULL DEFAULT '',
            cover_url   TEXT NOT NULL DEFAULT '',
            image_urls  TEXT NOT NULL DEFAULT '[]',
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS profile_comment (
            id            TEXT PRIMARY KEY,
            profile_id    TEXT NOT NULL REFERENCES profile(id) ON DELETE CASCADE,
            name          TEXT NOT NULL,
            avatar        TEXT NOT NULL,
            content       TEXT NOT NULL,
            image_urls    TEXT NOT NULL DEFAULT '[]',
            likes_count   INTEGER NOT NULL DEFAULT 0,
            password_hash TEXT,
            is_admin      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_comment_profile ON profile_comment(profile_id);

        CREATE TABLE IF NOT EXISTS comment_reply (
            id            TEXT PRIMARY KEY,
            comment_id    TEXT NOT NULL REFERENCES profile_comment(id) ON DELETE CASCADE,
            name          TEXT NOT NULL,
            avatar        TEXT NOT NULL,
            content       TEXT NOT NULL,
            image_urls    TEXT NOT NULL DEFAULT '[]',
            password_hash TEXT,
            is_admin      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_comment_reply_comment ON comment_reply(comment_id);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def load_post(kind: str, rid: str, *, db):
    """Fetch one post of *kind*; the row gains a uniform ``parent_id``."""
    info = KINDS[kind]
    parent = info.parent or "NULL"
    return db.execute(
        f"SELECT *, {parent} AS parent_id FROM {info.table} WHERE id=?", (rid,)
    ).fetchone()


def insert_row(table: str, row: dict, *, db) -> None:
    cols = ", ".join(row)
    marks = ", ".join("?" * len(row))
    db.execute(f"INSERT INTO {table} ({cols}) VALUES ({marks})", tuple(row.values()))
    db.commit()


def public(row) -> dict:
    """sqlite Row → JSON-safe dict without credentials."""
    out = {k: row[k] for k in row.keys() if k not in HIDDEN_COLS}
    if "image_urls" in out:
        out["image_urls"] = json.loads(out["image_urls"] or "[]")
    if "is_admin" in out:
        out["is_admin"] = bool(out["is_admin"])
    return out


def stored_urls(rows, *cols) -> list[str]:
    """Collect image URLs from *cols* of every row (JSON lists or plain strings)."""
    urls = []
    for row in rows:
        for col in cols:
            val = row[col]
            if not val:
                continue
            if col == "image_urls":
                urls.extend(json.loads(val))
            else:
                urls.append(val)
    return [u for u in urls if u]


###############################################################################
# Blob store (Cloudflare R2 / any S3 endpoint)
###############################################################################
def r2_config() -> dict[str, str]:
    cfg = {k: env_value(k) for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def _r2_base(cfg: dict[str, str]) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return base.rstrip("/")
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    return f"{_r2_base(cfg)}/{key.lstrip('/')}"


def r2_key_for_url(cfg: dict[str, str], url: str) -> str | None:
    """Inverse of r2_object_url; None for images hosted elsewhere."""
    prefix = _r2_base(cfg) + "/"
    if not url or not url.startswith(prefix):
        return None
    return url[len(prefix):] or None


def remove_images(urls: list[str]) -> int:
    """
    Best-effort removal of uploaded images.  Storage errors (botocore and
    client errors) are logged, not raised; returns the number of keys sent
    for deletion.
    """
    cfg = r2_config()
    if not urls or not r2_is_configured(cfg):
        return 0
    keys = sorted({k for k in (r2_key_for_url(cfg, u) for u in urls) if k})
    if not keys:
        return 0
    try:
        _r2_client(cfg).delete_objects(
            Bucket=cfg["R2_BUCKET"],
            Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
        )
    except (BotoCoreError, ClientError):
        app.logger.warning("R2 cleanup failed for %d image(s)", len(keys), exc_info=True)
        return 0
    return len(keys)


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (safe to re-run)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("admin-key")
def cli_admin_key():
    """Generate a fresh admin key and store it in .env."""
    key = secrets.token_urlsafe(24)
    merge_env({"ADMIN_KEY": key})
    app.config["ADMIN_KEY"] = key
    configure_ownership(app)

    click.secho("\n🔑  New admin key stored in .env\n", fg="yellow")
    click.echo(f"{key}\n")
    click.echo("Restart the server so every worker picks it up.")


###############################################################################
# Request helpers
###############################################################################
def json_body() -> dict:
    """The JSON object sent with the request; anything else counts as empty."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def text_field(body: dict, key: str, default: str = "") -> str:
    val = body.get(key)
    return default if val is None else str(val).strip()


def url_list(body: dict, key: str) -> list[str] | None:
    """List of non-empty URL strings, or None when *key* is not a list."""
    val = body.get(key)
    if not isinstance(val, list):
        return None
    return [str(u).strip() for u in val if u is not None and str(u).strip()]


def deny(kind: str, message: str | None = None):
    return {"error": kind, "message": message or ERROR_MESSAGES[kind]}, ERROR_STATUS[kind]


def bad_field(message: str):
    return deny(BAD_REQUEST, message)


def new_post(body: dict) -> tuple[dict | None, tuple | None]:
    """
    Validate the fields every visitor post shares.
    Returns ``(row, None)`` ready for insert, or ``(None, error_response)``.
    """
    name = text_field(body, "name")
    content = text_field(body, "content")
    if not name:
        return None, bad_field("name is required")
    if not content:
        return None, bad_field("content is required")

    pw_hash, admin, error = ownership().owner_hash(
        text_field(body, "adminKey"), text_field(body, "password")
    )
    if error:
        return None, deny(error)

    now = utc_now().isoformat()
    return {
        "id": new_id(),
        "name": name,
        "avatar": text_field(body, "avatar") or DEFAULT_AVATAR,
        "content": content,
        "password_hash": pw_hash,
        "is_admin": int(admin),
        "created_at": now,
        "updated_at": now,
    }, None


def authorize(kind: str, rid: str, parent_id: str | None, body: dict, *, db):
    """
    Look a post up and run the ownership check against the request body.
    Returns ``(row, None)`` when the caller may go ahead, else
    ``(None, error_response)``.
    """
    row = load_post(kind, rid, db=db)
    if row is None:
        return None, deny(NOT_FOUND)
    if parent_id is not None and row["parent_id"] != parent_id:
        return None, deny(BAD_REQUEST)

    verified = KINDS[kind].grants and has_grant(kind, rid)
    decision = ownership().can_mutate(
        row,
        text_field(body, "adminKey"),
        text_field(body, "password"),
        verified,
    )
    if not decision.allowed:
        app.logger.info(
            "denied %s on %s:%s (%s)", request.method, kind, rid, decision.error
        )
        return None, deny(decision.error)
    return row, None


def verify_claim(kind: str, rid: str, parent_id: str, fetch=None):
    body = json_body()
    db = get_db()
    decision = ownership().check_claim(
        fetch or (lambda: load_post(kind, rid, db=db)),
        parent_id,
        text_field(body, "adminKey"),
        text_field(body, "password"),
    )
    if not decision.allowed:
        app.logger.info("verify failed for %s:%s (%s)", kind, rid, decision.error)
        return deny(decision.error)
    add_grant(kind, rid)
    return {"ok": True}


def touch_content(kind: str, rid: str, content: str, *, db, **extra) -> None:
    sets = {"content": content, "updated_at": utc_now().isoformat(), **extra}
    assignments = ", ".join(f"{k}=?" for k in sets)
    db.execute(
        f"UPDATE {KINDS[kind].table} SET {assignments} WHERE id=?",
        (*sets.values(), rid),
    )
    db.commit()


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    if request.path.startswith("/api/"):
        resp.headers.setdefault("Cache-Control", "no-store")
    return resp


###############################################################################
# Guestbook
###############################################################################
@app.route("/api/guestbook", methods=["GET"])
def guestbook_list():
    ascending = request.args.get("sort", "new") == "old"
    page = max(1, request.args.get("page", 1, type=int))
    limit = min(PAGE_MAX, max(1, request.args.get("limit", PAGE_DEFAULT, type=int)))
    order = "ASC" if ascending else "DESC"

    db = get_db()
    total = db.execute("SELECT COUNT(*) FROM entry").fetchone()[0]
    entries = [
        public(r)
        for r in db.execute(
            f"""SELECT * FROM entry
                ORDER BY created_at {order}, rowid {order}
                LIMIT ? OFFSET ?""",
            (limit, (page - 1) * limit),
        )
    ]

    replies: dict[str, list] = {e["id"]: [] for e in entries}
    if replies:
        marks = ",".join("?" * len(replies))
        for r in db.execute(
            f"""SELECT * FROM entry_reply WHERE entry_id IN ({marks})
                ORDER BY created_at, rowid""",
            tuple(replies),
        ):
            replies[r["entry_id"]].append(public(r))
    for e in entries:
        e["replies"] = replies[e["id"]]

    return {
        "entries": entries,
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": max(1, -(-total // limit)),
    }


@app.route("/api/guestbook", methods=["POST"])
def guestbook_create():
    body = json_body()
    row, err = new_post(body)
    if err:
        return err
    row["image_url"] = text_field(body, "image_url") or None
    insert_row("entry", row, db=get_db())
    return {"ok": True, "id": row["id"]}, 201


@app.route("/api/guestbook/<entry_id>", methods=["PUT"])
def guestbook_edit(entry_id):
    body = json_body()
    content = text_field(body, "content")
    if not content:
        return bad_field("content is required")

    db = get_db()
    _, err = authorize("entry", entry_id, None, body, db=db)
    if err:
        return err
    touch_content("entry", entry_id, content, db=db)
    return {"ok": True}


@app.route("/api/guestbook/<entry_id>", methods=["DELETE"])
def guestbook_delete(entry_id):
    body = json_body()
    db = get_db()
    row, err = authorize("entry", entry_id, None, body, db=db)
    if err:
        return err

    urls = stored_urls([row], "image_url") + stored_urls(
        db.execute("SELECT image_url FROM entry_reply WHERE entry_id=?", (entry_id,)),
        "image_url",
    )
    db.execute("DELETE FROM entry WHERE id=?", (entry_id,))
    db.commit()
    remove_images(urls)
    return {"ok": True}


@app.route("/api/guestbook/<entry_id>/replies", methods=["POST"])
def entry_reply_create(entry_id):
    db = get_db()
    if not db.execute("SELECT 1 FROM entry WHERE id=?", (entry_id,)).fetchone():
        return deny(NOT_FOUND)

    body = json_body()
    row, err = new_post(body)
    if err:
        return err
    row["entry_id"] = entry_id
    row["image_url"] = text_field(body, "image_url") or None
    insert_row("entry_reply", row, db=db)
    return {"ok": True, "id": row["id"]}, 201


@app.route("/api/guestbook/<entry_id>/replies/<reply_id>", methods=["PUT"])
def entry_reply_edit(entry_id, reply_id):
    body = json_body()
    content = text_field(body, "content")
    if not content:
        return bad_field("content is required")

    db = get_db()
    _, err = authorize("entry_reply", reply_id, entry_id, body, db=db)
    if err:
        return err
    touch_content("entry_reply", reply_id, content, db=db)
    return {"ok": True}


@app.route("/api/guestbook/<entry_id>/replies/<reply_id>", methods=["DELETE"])
def entry_reply_delete(entry_id, reply_id):
    body = json_body()
    db = get_db()
    row, err = authorize("entry_reply", reply_id, entry_id, body, db=db)
    if err:
        return err

    db.execute("DELETE FROM entry_reply WHERE id=?", (reply_id,))
    db.commit()
    drop_grant("entry_reply", reply_id)
    remove_images(stored_urls([row], "image_url"))
    return {"ok": True}


@app.route("/api/guestbook/<entry_id>/replies/<reply_id>/verify", methods=["POST"])
def entry_reply_verify(entry_id, reply_id):
    return verify_claim("entry_reply", reply_id, entry_id)


###############################################################################
# Profiles
###############################################################################
PROFILE_TEXT_FIELDS = ("title", "role", "bio", "cover_url")


def _profile(profile_id: str, *, db):
    return db.execute(
        """SELECT p.*,
                  (SELECT COUNT(*) FROM profile_comment c WHERE c.profile_id = p.id)
                      AS comment_count
             FROM profile p WHERE p.id=?""",
        (profile_id,),
    ).fetchone()


@app.route("/api/profiles", methods=["GET"])
def profiles_list():
    rows = get_db().execute(
        """SELECT p.*,
                  (SELECT COUNT(*) FROM profile_comment c WHERE c.profile_id = p.id)
                      AS comment_count
             FROM profile p
         ORDER BY p.created_at DESC, p.rowid DESC"""
    )
    return {"profiles": [public(r) for r in rows]}


@app.route("/api/profiles", methods=["POST"])
def profiles_create():
    body = json_body()
    if not ownership().is_admin(text_field(body, "adminKey")):
        return deny(UNAUTHORIZED, "Only the admin can add profiles.")

    title = text_field(body, "title")
    if not title:
        return bad_field("title is required")

    now = utc_now().isoformat()
    row = {
        "id": new_id(),
        "title": title,
        "role": text_field(body, "role"),
        "bio": text_field(body, "bio"),
        "cover_url": text_field(body, "cover_url"),
        "image_urls": json.dumps(url_list(body, "image_urls") or []),
        "created_at": now,
        "updated_at": now,
    }
    db = get_db()
    insert_row("profile", row, db=db)
    return {"profile": public(_profile(row["id"], db=db))}, 201


@app.route("/api/profiles/<profile_id>", methods=["GET"])
def profile_detail(profile_id):
    row = _profile(profile_id, db=get_db())
    if row is None:
        return deny(NOT_FOUND)
    return {"profile": public(row)}


@app.route("/api/profiles/<profile_id>", methods=["PUT"])
def profile_update(profile_id):
    body = json_body()
    if not ownership().is_admin(text_field(body, "adminKey")):
        return deny(UNAUTHORIZED, "Only the admin can edit profiles.")

    db = get_db()
    if _profile(profile_id, db=db) is None:
        return deny(NOT_FOUND)

    sets = {k: text_field(body, k) for k in PROFILE_TEXT_FIELDS if k in body}
    if "title" in sets and not sets["title"]:
        return bad_field("title is required")
    urls = url_list(body, "image_urls")
    if urls is not None:
        sets["image_urls"] = json.dumps(urls)
    sets["updated_at"] = utc_now().isoformat()

    assignments = ", ".join(f"{k}=?" for k in sets)
    db.execute(
        f"UPDATE profile SET {assignments} WHERE id=?", (*sets.values(), profile_id)
    )
    db.commit()
    return {"profile": public(_profile(profile_id, db=db))}


@app.route("/api/profiles/<profile_id>", methods=["DELETE"])
def profile_delete(profile_id):
    body = json_body()
    if not ownership().is_admin(text_field(body, "adminKey")):
        return deny(UNAUTHORIZED, "Only the admin can delete profiles.")

    db = get_db()
    row = _profile(profile_id, db=db)
    if row is None:
        return deny(NOT_FOUND)

    urls = stored_urls([row], "cover_url", "image_urls")
    urls += stored_urls(
        db.execute(
            "SELECT image_urls FROM profile_comment WHERE profile_id=?", (profile_id,)
        ),
        "image_urls",
    )
    urls += stored_urls(
        db.execute(
            """SELECT r.image_urls FROM comment_reply r
                 JOIN profile_comment c ON c.id = r.comment_id
                WHERE c.profile_id=?""",
            (profile_id,),
        ),
        "image_urls",
    )
    db.execute("DELETE FROM profile WHERE id=?", (profile_id,))
    db.commit()
    remove_images(urls)
    return {"ok": True}


###############################################################################
# Profile comments
###############################################################################
def _comment_in_profile(comment_id: str, profile_id: str, *, db) -> bool:
    return bool(
        db.execute(
            "SELECT 1 FROM profile_comment WHERE id=? AND profile_id=?",
            (comment_id, profile_id),
        ).fetchone()
    )


@app.route("/api/profiles/<profile_id>/comments", methods=["GET"])
def comments_list(profile_id):
    rows = get_db().execute(
        """SELECT * FROM profile_comment WHERE profile_id=?
            ORDER BY likes_count DESC, created_at DESC, rowid DESC""",
        (profile_id,),
    )
    return {"comments": [public(r) for r in rows]}


@app.route("/api/profiles/<profile_id>/comments", methods=["POST"])
def comment_create(profile_id):
    db = get_db()
    if not db.execute("SELECT 1 FROM profile WHERE id=?", (profile_id,)).fetchone():
        return deny(NOT_FOUND)

    body = json_body()
    row, err = new_post(body)
    if err:
        return err
    row["profile_id"] = profile_id
    row["image_urls"] = json.dumps(url_list(body, "image_urls") or [])
    insert_row("profile_comment", row, db=db)
    return {"comment": public(load_post("comment", row["id"], db=db))}, 201


@app.route("/api/profiles/<profile_id>/comments/<comment_id>", methods=["PATCH"])
def comment_edit(profile_id, comment_id):
    body = json_body()
    content = text_field(body, "content")
    if not content:
        return bad_field("content is required")

    db = get_db()
    _, err = authorize("comment", comment_id, profile_id, body, db=db)
    if err:
        return err

    extra = {}
    urls = url_list(body, "image_urls")
    if urls is not None:
        extra["image_urls"] = json.dumps(urls)
    touch_content("comment", comment_id, content, db=db, **extra)
    return {"comment": public(load_post("comment", comment_id, db=db))}


@app.route("/api/profiles/<profile_id>/comments/<comment_id>", methods=["DELETE"])
def comment_delete(profile_id, comment_id):
    body = json_body()
    db = get_db()
    row, err = authorize("comment", comment_id, profile_id, body, db=db)
    if err:
        return err

    urls = stored_urls([row], "image_urls") + stored_urls(
        db.execute(
            "SELECT image_urls FROM comment_reply WHERE comment_id=?", (comment_id,)
        ),
        "image_urls",
    )
    db.execute("DELETE FROM profile_comment WHERE id=?", (comment_id,))
    db.commit()
    drop_grant("comment", comment_id)
    remove_images(urls)
    return {"ok": True}


@app.route("/api/profiles/<profile_id>/comments/<comment_id>/verify", methods=["POST"])
def comment_verify(profile_id, comment_id):
    return verify_claim("comment", comment_id, profile_id)


@app.route("/api/profiles/<profile_id>/comments/<comment_id>/like", methods=["POST"])
def comment_like(profile_id, comment_id):
    db = get_db()
    if not _comment_in_profile(comment_id, profile_id, db=db):
        return deny(NOT_FOUND)

    db.execute(
        "UPDATE profile_comment SET likes_count = likes_count + 1 WHERE id=?",
        (comment_id,),
    )
    likes = db.execute(
        "SELECT likes_count FROM profile_comment WHERE id=?", (comment_id,)
    ).fetchone()[0]
    db.commit()
    return {"ok": True, "likes_count": likes}


###############################################################################
# Comment replies
###############################################################################
@app.route(
    "/api/profiles/<profile_id>/comments/<comment_id>/replies", methods=["GET"]
)
def comment_replies_list(profile_id, comment_id):
    db = get_db()
    if not _comment_in_profile(comment_id, profile_id, db=db):
        return deny(NOT_FOUND)
    rows = db.execute(
        "SELECT * FROM comment_reply WHERE comment_id=? ORDER BY created_at, rowid",
        (comment_id,),
    )
    return {"replies": [public(r) for r in rows]}


@app.route(
    "/api/profiles/<profile_id>/comments/<comment_id>/replies", methods=["POST"]
)
def comment_reply_create(profile_id, comment_id):
    db = get_db()
    if not _comment_in_profile(comment_id, profile_id, db=db):
        return deny(NOT_FOUND)

    body = json_body()
    row, err = new_post(body)
    if err:
        return err
    row["comment_id"] = comment_id
    row["image_urls"] = json.dumps(url_list(body, "image_urls") or [])
    insert_row("comment_reply", row, db=db)
    return {"reply": public(load_post("comment_reply", row["id"], db=db))}, 201


@app.route(
    "/api/profiles/<profile_id>/comments/<comment_id>/replies/<reply_id>",
    methods=["PATCH"],
)
def comment_reply_edit(profile_id, comment_id, reply_id):
    body = json_body()
    content = text_field(body, "content")
    if not content:
        return bad_field("content is required")

    db = get_db()
    if not _comment_in_profile(comment_id, profile_id, db=db):
        return deny(NOT_FOUND)
    _, err = authorize("comment_reply", reply_id, comment_id, body, db=db)
    if err:
        return err
    touch_content("comment_reply", reply_id, content, db=db)
    return {"reply": public(load_post("comment_reply", reply_id, db=db))}


@app.route(
    "/api/profiles/<profile_id>/comments/<comment_id>/replies/<reply_id>",
    methods=["DELETE"],
)
def comment_reply_delete(profile_id, comment_id, reply_id):
    body = json_body()
    db = get_db()
    if not _comment_in_profile(comment_id, profile_id, db=db):
        return deny(NOT_FOUND)
    row, err = authorize("comment_reply", reply_id, comment_id, body, db=db)
    if err:
        return err

    db.execute("DELETE FROM comment_reply WHERE id=?", (reply_id,))
    db.commit()
    drop_grant("comment_reply", reply_id)
    remove_images(stored_urls([row], "image_urls"))
    return {"ok": True}


@app.route(
    "/api/profiles/<profile_id>/comments/<comment_id>/replies/<reply_id>/verify",
    methods=["POST"],
)
def comment_reply_verify(profile_id, comment_id, reply_id):
    db = get_db()

    def fetch():
        # a comment outside this profile hides its replies
        if not _comment_in_profile(comment_id, profile_id, db=db):
            return None
        return load_post("comment_reply", reply_id, db=db)

    return verify_claim("comment_reply", reply_id, comment_id, fetch)


###############################################################################
# Uploads
###############################################################################
@app.route("/api/uploads", methods=["POST"])
def upload_image():
    cfg = r2_config()
    if not r2_is_configured(cfg):
        return bad_field("Image uploads are not configured.")

    f = request.files.get("file")
    if f is None or not f.filename:
        return bad_field("file is required")

    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        return {"error": BAD_REQUEST, "message": "Only image uploads are allowed."}, 415

    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    if size > UPLOAD_MAX_BYTES:
        return {"error": BAD_REQUEST, "message": "File too large (6 MiB max)."}, 413

    folder = _FOLDER_STRIP_RE.sub("", request.form.get("folder") or "").strip("/")
    ext = Path(secure_filename(f.filename)).suffix.lower().lstrip(".") or "png"
    key = (
        f"{folder or UPLOAD_DEFAULT_FOLDER}/"
        f"{int(time() * 1000)}-{secrets.token_hex(6)}.{ext}"
    )

    try:
        client = _r2_client(cfg)
        client.upload_fileobj(
            f.stream,
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        return {"error": "upload_failed", "message": "Upload failed – check R2 credentials."}, 502

    return {"url": r2_object_url(cfg, key), "key": key}, 201


###############################################################################
# Errors
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    return deny(NOT_FOUND, "No such endpoint.")


@app.errorhandler(HTTPException)
def http_error(exc):
    return {
        "error": (exc.name or "error").lower().replace(" ", "_"),
        "message": exc.description,
    }, exc.code


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic JSON 500.  Flask has already logged the traceback by the time
    this runs; in debug mode the Werkzeug debugger shows it instead.
    """
    return {"error": "server_error", "message": "Something broke on our side."}, 500
