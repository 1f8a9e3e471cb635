"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from guestbook.board import app, configure_ownership, init_db

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ADMIN_KEY=ADMIN_KEY,
        # the test client talks plain http
        SESSION_COOKIE_SECURE=False,
    )
    configure_ownership(app)
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin_key() -> str:
    return ADMIN_KEY


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch guestbook.board.utc_now for the whole session so every call
    returns an ever-increasing timestamp and ordering is deterministic.
    """
    from guestbook import board

    counter = itertools.count()

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(board, "utc_now", _fake_now)

    yield

    mp.undo()


@pytest.fixture
def no_r2(monkeypatch, tmp_path):
    """No blob-store credentials anywhere (env or .env)."""
    from guestbook import board

    for k in board.R2_ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setattr(board, "ENV_FILE", tmp_path / ".env")


@pytest.fixture
def fake_r2(monkeypatch, tmp_path):
    """
    Configure R2 through the environment and swap the boto3 client for a
    recorder.  Yields the recorder.
    """
    from guestbook import board

    class _Recorder:
        def __init__(self):
            self.uploads: list[dict] = []
            self.deleted: list[str] = []

        def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
            self.uploads.append(
                {"bucket": bucket, "key": key, "body": fileobj.read(), "extra": ExtraArgs}
            )

        def delete_objects(self, Bucket, Delete):
            self.deleted.extend(o["Key"] for o in Delete["Objects"])
            return {}

    rec = _Recorder()
    monkeypatch.setattr(board, "ENV_FILE", tmp_path / ".env")
    monkeypatch.setenv("R2_ACCOUNT_ID", "acct")
    monkeypatch.setenv("R2_ACCESS_KEY_ID", "key-id")
    monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("R2_BUCKET", "guestbook-images")
    monkeypatch.setenv("R2_PUBLIC_BASE", "https://img.example.test")
    monkeypatch.delenv("R2_ENDPOINT", raising=False)
    monkeypatch.setattr(board, "_r2_client", lambda cfg: rec)
    yield rec
