"""
tests/test_profiles.py
"""
from __future__ import annotations

from typing import Any

import pytest

from guestbook.board import get_db


# ───────────────────────── helpers ────────────────────────────────────
def _profile(client, admin_key: str, **fields: Any) -> str:
    payload = {"title": "Hana", "role": "drums", "bio": "hi", "adminKey": admin_key}
    payload.update(fields)
    rv = client.post("/api/profiles", json=payload)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["profile"]["id"]


def _comment(client, pid: str, **fields: Any) -> dict:
    payload = {"name": "fan", "content": "love it", "password": "commentpw"}
    payload.update(fields)
    rv = client.post(f"/api/profiles/{pid}/comments", json=payload)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["comment"]


def _reply(client, pid: str, cid: str, **fields: Any) -> dict:
    payload = {"name": "fan2", "content": "same", "password": "replypw"}
    payload.update(fields)
    rv = client.post(f"/api/profiles/{pid}/comments/{cid}/replies", json=payload)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["reply"]


@pytest.fixture
def pid(client, admin_key) -> str:
    return _profile(client, admin_key)


# ───────────────────────── profiles ───────────────────────────────────
def test_only_admin_creates_profiles(client):
    rv = client.post("/api/profiles", json={"title": "x"})
    assert rv.status_code == 401
    rv = client.post("/api/profiles", json={"title": "x", "adminKey": "guess"})
    assert rv.status_code == 401


def test_profile_requires_title(client, admin_key):
    rv = client.post("/api/profiles", json={"title": "  ", "adminKey": admin_key})
    assert rv.status_code == 400


def test_profile_roundtrip(client, admin_key):
    pid = _profile(
        client,
        admin_key,
        cover_url="https://img.example.test/c.png",
        image_urls=["https://img.example.test/1.png", "", None],
    )
    data = client.get(f"/api/profiles/{pid}").get_json()["profile"]
    assert data["title"] == "Hana"
    assert data["image_urls"] == ["https://img.example.test/1.png"]
    assert data["comment_count"] == 0


def test_profile_missing(client):
    rv = client.get("/api/profiles/nope")
    assert rv.status_code == 404


def test_profiles_newest_first_with_counts(client, admin_key):
    older = _profile(client, admin_key, title="older")
    newer = _profile(client, admin_key, title="newer")
    _comment(client, older)
    _comment(client, older)

    profiles = client.get("/api/profiles").get_json()["profiles"]
    ids = [p["id"] for p in profiles]
    assert ids.index(newer) < ids.index(older)
    counts = {p["id"]: p["comment_count"] for p in profiles}
    assert counts[older] == 2 and counts[newer] == 0


def test_profile_update(client, admin_key, pid):
    rv = client.put(f"/api/profiles/{pid}", json={"bio": "new bio", "image_urls": []})
    assert rv.status_code == 401

    rv = client.put(
        f"/api/profiles/{pid}",
        json={"bio": "new bio", "image_urls": ["https://img.example.test/9.png"], "adminKey": admin_key},
    )
    assert rv.status_code == 200
    prof = rv.get_json()["profile"]
    assert prof["bio"] == "new bio"
    assert prof["title"] == "Hana"  # untouched
    assert prof["image_urls"] == ["https://img.example.test/9.png"]

    rv = client.put(f"/api/profiles/{pid}", json={"title": "", "adminKey": admin_key})
    assert rv.status_code == 400


def test_profile_delete_cascades(client, admin_key, fake_r2):
    pid = _profile(client, admin_key, cover_url="https://img.example.test/p/cover.png")
    c = _comment(client, pid, image_urls=["https://img.example.test/c/1.png"])
    r = _reply(client, pid, c["id"], image_urls=["https://img.example.test/r/1.png"])

    assert client.delete(f"/api/profiles/{pid}", json={}).status_code == 401

    rv = client.delete(f"/api/profiles/{pid}", json={"adminKey": admin_key})
    assert rv.status_code == 200
    db = get_db()
    assert db.execute("SELECT 1 FROM profile_comment WHERE id=?", (c["id"],)).fetchone() is None
    assert db.execute("SELECT 1 FROM comment_reply WHERE id=?", (r["id"],)).fetchone() is None
    assert sorted(fake_r2.deleted) == ["c/1.png", "p/cover.png", "r/1.png"]


# ───────────────────────── comments ───────────────────────────────────
def test_comment_on_missing_profile(client):
    rv = client.post("/api/profiles/nope/comments", json={"name": "a", "content": "b", "password": "secret1"})
    assert rv.status_code == 404


def test_comment_hides_hash(client, pid):
    c = _comment(client, pid)
    assert "password_hash" not in c
    assert c["avatar"] == "🙂"
    assert c["likes_count"] == 0
    assert c["is_admin"] is False


def test_comments_best_first(client, pid):
    a = _comment(client, pid, content="a")
    b = _comment(client, pid, content="b")
    c = _comment(client, pid, content="c")
    for _ in range(2):
        client.post(f"/api/profiles/{pid}/comments/{a['id']}/like")

    ids = [x["id"] for x in client.get(f"/api/profiles/{pid}/comments").get_json()["comments"]]
    assert ids == [a["id"], c["id"], b["id"]]


def test_like_counts_up(client, pid):
    c = _comment(client, pid)
    rv = client.post(f"/api/profiles/{pid}/comments/{c['id']}/like")
    assert rv.get_json() == {"ok": True, "likes_count": 1}
    rv = client.post(f"/api/profiles/{pid}/comments/{c['id']}/like")
    assert rv.get_json()["likes_count"] == 2


def test_like_under_wrong_profile(client, admin_key, pid):
    other = _profile(client, admin_key)
    c = _comment(client, pid)
    rv = client.post(f"/api/profiles/{other}/comments/{c['id']}/like")
    assert rv.status_code == 404


def test_comment_edit_and_images(client, pid):
    c = _comment(client, pid)
    url = f"/api/profiles/{pid}/comments/{c['id']}"

    rv = client.patch(url, json={"content": "x", "password": "nopenope"})
    assert rv.status_code == 401

    rv = client.patch(
        url,
        json={"content": "edited", "password": "commentpw", "image_urls": ["https://img.example.test/e.png"]},
    )
    assert rv.status_code == 200
    body = rv.get_json()["comment"]
    assert body["content"] == "edited"
    assert body["image_urls"] == ["https://img.example.test/e.png"]

    # image_urls left out → kept
    rv = client.patch(url, json={"content": "again", "password": "commentpw"})
    assert rv.get_json()["comment"]["image_urls"] == ["https://img.example.test/e.png"]


def test_comment_under_wrong_profile(client, admin_key, pid):
    other = _profile(client, admin_key)
    c = _comment(client, pid)
    rv = client.patch(f"/api/profiles/{other}/comments/{c['id']}", json={"content": "x", "password": "commentpw"})
    assert rv.status_code == 400
    rv = client.post(f"/api/profiles/{other}/comments/{c['id']}/verify", json={"password": "commentpw"})
    assert rv.status_code == 400


def test_comment_delete_removes_images(client, pid, fake_r2):
    c = _comment(client, pid, image_urls=["https://img.example.test/comments/a.png"])
    _reply(client, pid, c["id"], image_urls=["https://img.example.test/comments/b.png"])

    rv = client.delete(f"/api/profiles/{pid}/comments/{c['id']}", json={"password": "commentpw"})
    assert rv.status_code == 200
    assert sorted(fake_r2.deleted) == ["comments/a.png", "comments/b.png"]


def test_comment_delete_survives_storage_failure(client, pid, fake_r2, monkeypatch):
    from botocore.exceptions import ClientError

    def _boom(**kwargs):
        raise ClientError({"Error": {"Code": "500", "Message": "down"}}, "DeleteObjects")

    monkeypatch.setattr(fake_r2, "delete_objects", _boom)
    c = _comment(client, pid, image_urls=["https://img.example.test/comments/z.png"])
    rv = client.delete(f"/api/profiles/{pid}/comments/{c['id']}", json={"password": "commentpw"})
    assert rv.status_code == 200
    assert get_db().execute("SELECT 1 FROM profile_comment WHERE id=?", (c["id"],)).fetchone() is None


def test_comment_verify_grants_edit(client, pid):
    c = _comment(client, pid)
    base = f"/api/profiles/{pid}/comments/{c['id']}"
    assert client.post(f"{base}/verify", json={"password": "commentpw"}).get_json() == {"ok": True}
    assert client.patch(base, json={"content": "no pw needed"}).status_code == 200


# ───────────────────────── comment replies ────────────────────────────
def test_reply_list_oldest_first(client, pid):
    c = _comment(client, pid)
    r1 = _reply(client, pid, c["id"], content="1")
    r2 = _reply(client, pid, c["id"], content="2")
    data = client.get(f"/api/profiles/{pid}/comments/{c['id']}/replies").get_json()
    assert [r["id"] for r in data["replies"]] == [r1["id"], r2["id"]]


def test_reply_needs_comment_in_profile(client, admin_key, pid):
    other = _profile(client, admin_key)
    c = _comment(client, pid)
    rv = client.post(
        f"/api/profiles/{other}/comments/{c['id']}/replies",
        json={"name": "a", "content": "b", "password": "secret1"},
    )
    assert rv.status_code == 404


def test_admin_reply_has_no_password(client, admin_key, pid):
    c = _comment(client, pid)
    r = _reply(client, pid, c["id"], password="", adminKey=admin_key)
    assert r["is_admin"] is True
    row = get_db().execute("SELECT password_hash FROM comment_reply WHERE id=?", (r["id"],)).fetchone()
    assert row["password_hash"] is None

    url = f"/api/profiles/{pid}/comments/{c['id']}/replies/{r['id']}"
    assert client.patch(url, json={"content": "x", "password": "anything"}).status_code == 401
    assert client.post(f"{url}/verify", json={"password": "anything"}).status_code == 401
    assert client.patch(url, json={"content": "admin edit", "adminKey": admin_key}).status_code == 200


def test_reply_verify_then_delete(client, pid):
    c = _comment(client, pid)
    r = _reply(client, pid, c["id"])
    url = f"/api/profiles/{pid}/comments/{c['id']}/replies/{r['id']}"

    assert client.delete(url, json={}).status_code == 401
    assert client.post(f"{url}/verify", json={"password": "abc"}).get_json()["error"] == "too_short"
    assert client.post(f"{url}/verify", json={"password": "replypw"}).status_code == 200
    assert client.delete(url, json={}).status_code == 200
    assert get_db().execute("SELECT 1 FROM comment_reply WHERE id=?", (r["id"],)).fetchone() is None


def test_reply_under_wrong_comment(client, pid):
    c1, c2 = _comment(client, pid), _comment(client, pid)
    r = _reply(client, pid, c2["id"])
    url = f"/api/profiles/{pid}/comments/{c1['id']}/replies/{r['id']}"
    assert client.patch(url, json={"content": "x", "password": "replypw"}).status_code == 400
    assert client.post(f"{url}/verify", json={"password": "replypw"}).status_code == 400


def test_reply_verify_under_wrong_profile(client, admin_key, pid):
    c = _comment(client, pid)
    r = _reply(client, pid, c["id"])
    url = f"/api/profiles/nope/comments/{c['id']}/replies/{r['id']}/verify"

    assert client.post(url, json={"adminKey": admin_key}).status_code == 200
    assert client.post(url, json={"password": "abc"}).get_json()["error"] == "too_short"
    rv = client.post(url, json={"password": "replypw"})
    assert rv.status_code == 404
    assert rv.get_json()["error"] == "not_found"
