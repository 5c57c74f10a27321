from datetime import timedelta

import pytest

from db import SessionLocal
from instamoments.core import errors
from instamoments.models.event import Event, EventContributor
from instamoments.models.media import Photo, Video
from instamoments.services.expiration import ExpirationSweeper
from instamoments.services.gallery_query import GalleryStats
from instamoments.services.realtime import GalleryCache, Subscriber


@pytest.fixture
def sweeper(storage, realtime, clock):
    return ExpirationSweeper(storage, session_factory=SessionLocal, realtime=realtime, clock=clock)


def test_sweep_deletes_content_and_reports_totals(
    db_session, sweeper, storage, clock, make_event, add_media
):
    event = make_event("standard", video=True)
    refs = [add_media(event, name=f"Guest {i}", size=100).file_ref for i in range(5)]
    refs += [add_media(event, kind="video", name="Ana", email="ana@example.com", size=100).file_ref for _ in range(2)]
    keeper = make_event("pro", name="Still running")
    add_media(keeper, name="Ben")

    clock.advance(days=15)
    stats = sweeper.sweep(db_session, delete_content=True)

    assert stats.to_dict() == {
        "totalExpired": 1,
        "totalPhotosDeleted": 5,
        "totalVideosDeleted": 2,
        "totalStorageFreed": 700,
        "failedEvents": [],
        "skipped": False,
    }
    assert not any(storage.exists(ref) for ref in refs)
    db_session.refresh(event)
    assert event.Status == "expired"
    assert (event.TotalPhotos, event.TotalVideos, event.TotalContributors) == (0, 0, 0)
    assert db_session.query(EventContributor).filter_by(EventID=event.EventID).count() == 0

    db_session.refresh(keeper)
    assert keeper.Status == "active"
    assert db_session.query(Photo).filter_by(EventID=keeper.EventID).count() == 1

    again = sweeper.sweep(db_session, delete_content=True)
    assert again.total_expired == 0
    assert again.total_photos_deleted == 0


def test_sweep_without_delete_keeps_content(db_session, sweeper, clock, make_event, add_media):
    event = make_event("free")
    add_media(event)
    clock.advance(days=3, seconds=1)

    first = sweeper.sweep(db_session)
    assert first.total_expired == 1
    assert first.total_photos_deleted == 0
    assert db_session.query(Photo).count() == 1

    assert sweeper.sweep(db_session).total_expired == 0
    db_session.refresh(event)
    assert event.Status == "expired"


def test_event_expiring_exactly_now_is_not_swept(db_session, sweeper, clock, make_event):
    make_event("free")
    clock.advance(days=3)
    assert sweeper.sweep(db_session).total_expired == 0


def test_sweep_with_own_sessions(db_session, sweeper, clock, make_event, add_media):
    event = make_event("free")
    add_media(event)
    clock.advance(days=4)
    stats = sweeper.sweep(delete_content=True)
    assert stats.total_expired == 1
    assert stats.total_photos_deleted == 1
    db_session.expire_all()
    assert db_session.get(Event, event.EventID).Status == "expired"


def test_one_failing_event_does_not_stop_the_sweep(
    db_session, sweeper, clock, make_event, add_media, monkeypatch
):
    bad = make_event("free", name="Bad")
    good = make_event("free", name="Good")
    add_media(bad)
    add_media(good)
    clock.advance(days=4)

    original = sweeper.delete_event_content

    def flaky(db, event_id):
        if event_id == bad.EventID:
            raise errors.DatabaseError("delete failed")
        return original(db, event_id)

    monkeypatch.setattr(sweeper, "delete_event_content", flaky)
    stats = sweeper.sweep(db_session, delete_content=True)

    assert stats.failed == [bad.EventID]
    assert stats.total_expired == 1
    assert stats.total_photos_deleted == 1
    assert db_session.query(Photo).filter_by(EventID=bad.EventID).count() == 1


def test_failed_content_delete_is_retried_by_the_next_sweep(
    db_session, sweeper, storage, clock, make_event, add_media, monkeypatch, caplog
):
    event = make_event("free")
    ref = add_media(event, size=100).file_ref
    clock.advance(days=4)

    def broken(db, event_id):
        raise errors.DatabaseError("delete failed")

    with monkeypatch.context() as m:
        m.setattr(sweeper, "delete_event_content", broken)
        with caplog.at_level("ERROR", logger="instamoments.services.expiration"):
            first = sweeper.sweep(db_session, delete_content=True)
    assert first.failed == [event.EventID]
    pending = [r for r in caplog.records if r.getMessage() == "sweep.content_pending"]
    assert [r.event_id for r in pending] == [event.EventID]

    db_session.refresh(event)
    assert event.Status == "expired"
    assert sweeper.find_content_pending(db_session) == [event.EventID]
    # Without content deletion the pending event is left alone
    assert sweeper.sweep(db_session).total_photos_deleted == 0

    second = sweeper.sweep(db_session, delete_content=True)
    assert second.failed == []
    assert second.total_expired == 0
    assert second.total_photos_deleted == 1
    assert second.total_storage_freed == 100
    assert not storage.exists(ref)
    assert sweeper.find_content_pending(db_session) == []
    assert sweeper.sweep(db_session, delete_content=True).total_photos_deleted == 0


def test_blob_delete_failures_are_tolerated(db_session, sweeper, storage, clock, make_event, add_media, monkeypatch):
    event = make_event("free")
    add_media(event, size=50)
    monkeypatch.setattr(storage, "delete", lambda ref: False)
    clock.advance(days=4)
    stats = sweeper.sweep(db_session, delete_content=True)
    assert stats.total_photos_deleted == 1
    assert stats.total_storage_freed == 50
    assert db_session.query(Photo).count() == 0


def test_concurrent_sweep_is_skipped(db_session, sweeper):
    sweeper._running.acquire()
    try:
        stats = sweeper.sweep(db_session)
    finally:
        sweeper._running.release()
    assert stats.skipped
    assert stats.total_expired == 0


def test_sweep_disconnects_live_viewers(db_session, sweeper, realtime, clock, make_event):
    event = make_event("free")
    messages = []
    sub = Subscriber(
        GalleryCache(), refetch=lambda q: ([], GalleryStats()), sink=messages.append, clock=clock
    )
    realtime.subscribe(event.EventID, sub)
    clock.advance(days=4)
    sweeper.sweep(db_session)
    assert messages[-1] == {"type": "disconnected", "reason": "gallery_expired"}
    assert not realtime.has_channel(event.EventID)


def test_find_expiring_soon(db_session, sweeper, clock, make_event):
    soon = make_event("free", name="Soon")
    make_event("standard", name="Later")
    clock.advance(days=2, hours=13)
    assert [e.EventID for e in sweeper.find_expiring_soon(db_session, threshold_hours=24)] == [soon.EventID]
    assert sweeper.find_expiring_soon(db_session, threshold_hours=1) == []


def test_upgrade_restarts_expiry_from_now(db_session, sweeper, clock, make_event):
    event = make_event("free")
    assert event.ExpiresAt == clock() + timedelta(days=3)

    clock.advance(days=1)
    upgraded = sweeper.extend_expiration(db_session, event, "standard")
    assert upgraded.ExpiresAt == clock() + timedelta(days=14)
    assert upgraded.SubscriptionTier == "standard"
    assert (upgraded.MaxPhotos, upgraded.MaxPhotosPerUser, upgraded.MaxVideos) == (100, 5, 0)
    assert upgraded.HasVideoAddon is False

    with_video = sweeper.extend_expiration(db_session, event, "standard", has_video_addon=True)
    assert with_video.HasVideoAddon is True
    assert with_video.MaxVideos == 20


@pytest.mark.parametrize(
    "tier, addon",
    [("basic", None), ("free", None), ("platinum", None), ("basic", True)],
)
def test_upgrade_rejects_downgrades_and_unknown_tiers(db_session, sweeper, make_event, tier, addon):
    event = make_event("basic")
    with pytest.raises(errors.ValidationFailed):
        sweeper.extend_expiration(db_session, event, tier, has_video_addon=addon)


def test_upgrade_refused_for_expired_event(db_session, sweeper, clock, make_event):
    event = make_event("free")
    clock.advance(days=4)
    sweeper.sweep(db_session)
    db_session.refresh(event)
    with pytest.raises(errors.GalleryExpired):
        sweeper.extend_expiration(db_session, event, "pro")


def test_archive_and_restore(db_session, sweeper, clock, make_event):
    event = make_event("free")
    sweeper.archive(db_session, event)
    assert event.Status == "archived"

    with pytest.raises(errors.ValidationFailed):
        sweeper.archive(db_session, event)

    # Archived events are left alone by the sweep
    clock.advance(days=4)
    assert sweeper.sweep(db_session).total_expired == 0

    sweeper.restore(db_session, event)
    assert event.Status == "active"
    with pytest.raises(errors.ValidationFailed):
        sweeper.restore(db_session, event)
