from datetime import timedelta

import pytest
from starlette.websockets import WebSocketDisconnect

from instamoments.core.settings import settings
from instamoments.core.timeutil import utcnow
from instamoments.models.logging import AppErrorLog
from instamoments.models.user import User
from instamoments.services.auth import create_session
from instamoments.services.events import create_event
from instamoments.services.rate_limit import MemoryCounterStore, RateLimiter


@pytest.fixture
def live_event(db_session, host):
    return create_event(db_session, host.UserID, "Party", tier="free", now=utcnow())


@pytest.fixture
def signed_in(client, db_session, host):
    sess = create_session(db_session, user_id=host.UserID)
    client.cookies.set("session_id", str(sess.SessionID))
    return client


def _upload(client, event_id, jpeg, name="Ana", email="ana@example.com", **extra):
    data = {"eventId": event_id, "contributorName": name, **extra}
    if email:
        data["contributorEmail"] = email
    return client.post(
        "/api/upload/photo",
        data=data,
        files={"file": ("photo.jpg", jpeg, "image/jpeg")},
    )


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers.get("X-Request-ID")


def test_photo_upload_returns_item_and_rate_limit_headers(client, live_event, jpeg_bytes):
    r = _upload(client, live_event.EventID, jpeg_bytes, caption="hello")
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["data"]["kind"] == "photo"
    assert body["data"]["fileUrl"].startswith("/storage/events/")
    assert body["meta"]["rateLimit"]["remaining"] == 9
    assert r.headers["X-RateLimit-Limit"] == "10"
    assert r.headers["X-RateLimit-Remaining"] == "9"


def test_upload_quota_error_envelope(client, live_event, jpeg_bytes):
    for _ in range(3):
        assert _upload(client, live_event.EventID, jpeg_bytes).status_code == 201
    r = _upload(client, live_event.EventID, jpeg_bytes)
    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "error": {
            "code": "USER_PHOTO_LIMIT_REACHED",
            "message": "You have reached the maximum of 3 photos per user",
        },
    }


def test_upload_validation_errors(client, live_event, jpeg_bytes):
    r = _upload(client, "not-a-uuid", jpeg_bytes)
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert any(e["field"] == "event_id" for e in error["details"]["errors"])

    r = _upload(client, live_event.EventID, jpeg_bytes, name="   ")
    assert r.status_code == 400

    r = client.post("/api/upload/photo", data={"eventId": live_event.EventID})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_video_upload_refused_without_addon(client, live_event, mp4_bytes):
    r = client.post(
        "/api/upload/video",
        data={"eventId": live_event.EventID, "contributorName": "Ana", "durationSeconds": "5"},
        files={"file": ("clip.mp4", mp4_bytes, "video/mp4")},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VIDEO_NOT_ENABLED"


def test_rate_limited_upload(client, live_event, jpeg_bytes):
    client.app.state.rate_limiter = RateLimiter(MemoryCounterStore(), limit=2, window_seconds=600)
    for _ in range(2):
        assert _upload(client, live_event.EventID, jpeg_bytes, email=None).status_code == 201
    r = _upload(client, live_event.EventID, jpeg_bytes, email=None)
    assert r.status_code == 429
    body = r.json()
    assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["meta"]["rateLimit"]["remaining"] == 0
    assert 0 < int(r.headers["Retry-After"]) <= 600
    assert r.headers["X-RateLimit-Remaining"] == "0"


def test_errors_are_logged(client, db_session, jpeg_bytes):
    _upload(client, "6f1c1c1e-5a7e-4d5e-9a57-2b1d51e3a001", jpeg_bytes)
    row = db_session.query(AppErrorLog).order_by(AppErrorLog.ErrorID.desc()).first()
    assert row is not None
    assert row.StatusCode == 404
    assert row.Message.startswith("GALLERY_NOT_FOUND")


def test_gallery_endpoints(client, live_event, jpeg_bytes):
    for name in ("Ana", "Ben", "Cy"):
        _upload(client, live_event.EventID, jpeg_bytes, name=name, email=None)

    info = client.get(f"/api/gallery/{live_event.GallerySlug}")
    assert info.status_code == 200
    data = info.json()["data"]
    assert data["event"]["name"] == "Party"
    assert data["stats"] == {"totalPhotos": 3, "totalVideos": 0, "totalContributors": 3}

    page = client.get(f"/api/gallery/{live_event.EventID}/media", params={"limit": 2})
    body = page.json()["data"]
    assert [it["contributor_name"] for it in body["items"]] == ["Cy", "Ben"]
    assert body["pagination"]["hasMore"] is True

    page = client.get(
        f"/api/gallery/{live_event.EventID}/media", params={"sortBy": "contributor", "search": "b"}
    )
    assert [it["contributor_name"] for it in page.json()["data"]["items"]] == ["Ben"]

    stats = client.get(f"/api/gallery/{live_event.GallerySlug}/stats")
    assert stats.json()["data"]["stats"]["totalPhotos"] == 3


def test_gallery_errors(client, db_session, host):
    r = client.get("/api/gallery/missing-slug")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "GALLERY_NOT_FOUND"

    old = create_event(db_session, host.UserID, "Old", now=utcnow() - timedelta(days=4))
    r = client.get(f"/api/gallery/{old.GallerySlug}/media")
    assert r.status_code == 410
    assert r.json()["error"]["code"] == "GALLERY_EXPIRED"


def test_bad_gallery_query(client, live_event):
    r = client.get(f"/api/gallery/{live_event.EventID}/media", params={"sortBy": "random"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_event_routes_require_sign_in(client, live_event):
    assert client.post("/api/events", json={"name": "X"}).status_code == 401
    r = client.get(f"/api/events/{live_event.EventID}")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "AUTH_REQUIRED"


def test_create_and_list_events(signed_in):
    r = signed_in.post("/api/events", json={"name": "Wedding", "tier": "standard", "hasVideoAddon": True})
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["limits"]["maxVideos"] == 20
    assert data["priceCents"] == 159900
    assert data["daysRemaining"] == 14

    listed = signed_in.get("/api/events").json()["data"]["events"]
    assert [e["id"] for e in listed] == [data["id"]]

    bad = signed_in.post("/api/events", json={"name": "Wedding", "tier": "gold"})
    assert bad.status_code == 400


def test_other_hosts_event_is_forbidden(signed_in, db_session):
    other = User(Email="other@example.com", IsActive=True)
    db_session.add(other)
    db_session.commit()
    theirs = create_event(db_session, other.UserID, "Not yours", now=utcnow())
    r = signed_in.get(f"/api/events/{theirs.EventID}")
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


def test_upgrade_archive_and_restore(signed_in, live_event):
    r = signed_in.post(f"/api/events/{live_event.EventID}/upgrade", json={"tier": "premium"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["previousTier"] == "free"
    assert data["subscriptionTier"] == "premium"
    assert data["daysRemaining"] == 30

    downgrade = signed_in.post(f"/api/events/{live_event.EventID}/upgrade", json={"tier": "basic"})
    assert downgrade.status_code == 400

    archived = signed_in.post(f"/api/events/{live_event.EventID}/archive")
    assert archived.json()["data"]["status"] == "archived"
    assert signed_in.get(f"/api/gallery/{live_event.EventID}").status_code == 404

    restored = signed_in.post(f"/api/events/{live_event.EventID}/restore")
    assert restored.json()["data"]["status"] == "active"


def test_host_moderates_media(signed_in, live_event, jpeg_bytes):
    media_id = _upload(signed_in, live_event.EventID, jpeg_bytes).json()["data"]["mediaId"]
    url = f"/api/events/{live_event.EventID}/media/{media_id}"

    r = signed_in.patch(url, json={"approved": False, "caption": "hidden"})
    assert r.status_code == 200
    assert r.json()["data"]["item"]["approved"] is False
    assert signed_in.get(f"/api/gallery/{live_event.EventID}/media").json()["data"]["items"] == []

    r = signed_in.delete(url)
    assert r.json()["data"] == {"deleted": media_id, "kind": "photo"}
    assert signed_in.delete(url).status_code == 404


def test_expiration_trigger(client, db_session, host, monkeypatch):
    assert client.post("/api/events/expiration").status_code == 401

    monkeypatch.setattr(settings, "SWEEP_TRIGGER_TOKEN", "s3cret")
    assert client.post("/api/events/expiration", headers={"X-Sweep-Token": "wrong"}).status_code == 401

    create_event(db_session, host.UserID, "Over", now=utcnow() - timedelta(days=4))
    soon = create_event(db_session, host.UserID, "Soon", now=utcnow() - timedelta(days=2, hours=12))

    r = client.post("/api/events/expiration", headers={"X-Sweep-Token": "s3cret"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["processed"]["totalExpired"] == 1
    assert [e["id"] for e in data["expiringEvents"]] == [soon.EventID]

    status = client.get("/api/events/expiration", headers={"X-Sweep-Token": "s3cret"})
    assert status.json()["data"]["expiringSoon"] == 1


def test_live_socket_snapshot_and_insert(client, live_event, jpeg_bytes):
    with client.websocket_connect(f"/ws/gallery/{live_event.GallerySlug}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["items"] == []

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        media_id = _upload(client, live_event.EventID, jpeg_bytes).json()["data"]["mediaId"]
        insert = ws.receive_json()
        assert insert["type"] == "insert"
        assert insert["item"]["id"] == media_id
        assert insert["position"] == 0
        stats = ws.receive_json()
        assert stats["type"] == "stats"
        assert stats["stats"]["totalPhotos"] == 1


def test_live_socket_unknown_gallery(client, db_session):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/gallery/missing") as ws:
            ws.receive_json()
    assert exc.value.code == 4404


def test_update_event_details(signed_in, live_event):
    url = f"/api/events/{live_event.EventID}"
    r = signed_in.put(url, json={"description": "Backyard party", "eventDate": "2026-12-24"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["name"] == "Party"
    assert data["description"] == "Backyard party"
    assert data["eventDate"] == "2026-12-24"

    bad = signed_in.put(url, json={"subscriptionTier": "pro"})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "VALIDATION_ERROR"


def test_delete_event_refused_while_it_has_content(signed_in, live_event, jpeg_bytes):
    assert _upload(signed_in, live_event.EventID, jpeg_bytes).status_code == 201
    r = signed_in.delete(f"/api/events/{live_event.EventID}")
    assert r.status_code == 400
    error = r.json()["error"]
    assert error["code"] == "EVENT_HAS_CONTENT"
    assert error["details"] == {"photos": 1, "videos": 0}


def test_delete_empty_event(signed_in, live_event):
    event_id = live_event.EventID
    r = signed_in.delete(f"/api/events/{event_id}")
    assert r.status_code == 200
    assert r.json()["data"] == {"deleted": event_id}
    assert signed_in.get(f"/api/events/{event_id}").status_code == 404


def test_live_socket_resync_sends_fresh_snapshot(client, live_event, jpeg_bytes):
    with client.websocket_connect(f"/ws/gallery/{live_event.EventID}") as ws:
        assert ws.receive_json()["type"] == "snapshot"
        media_id = _upload(client, live_event.EventID, jpeg_bytes).json()["data"]["mediaId"]
        assert ws.receive_json()["type"] == "insert"
        assert ws.receive_json()["type"] == "stats"

        ws.send_json({"type": "resync"})
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert [it["id"] for it in snapshot["items"]] == [media_id]
        assert snapshot["stats"]["totalPhotos"] == 1
    assert client.app.state.realtime.subscriber_count(live_event.EventID) == 0
