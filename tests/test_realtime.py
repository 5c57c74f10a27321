import threading
from datetime import datetime, timedelta

import pytest

from instamoments.schemas import PhotoItem, VideoItem
from instamoments.services.gallery_query import GalleryQuery, GalleryStats
from instamoments.services.realtime import (
    Delta,
    DeltaType,
    GalleryCache,
    RealtimeSyncEngine,
    Subscriber,
)

T0 = datetime(2026, 3, 1, 12, 0, 0)


def photo(media_id, minute=0, name="Ana", caption=None, approved=True):
    return PhotoItem(
        id=media_id,
        event_id="evt",
        contributor_name=name,
        file_ref=f"events/evt/photos/{media_id}.jpg",
        size_bytes=10,
        mime_type="image/jpeg",
        caption=caption,
        approved=approved,
        uploaded_at=T0 + timedelta(minutes=minute),
    )


def video(media_id, minute=0, name="Ana"):
    return VideoItem(
        id=media_id,
        event_id="evt",
        contributor_name=name,
        file_ref=f"events/evt/videos/{media_id}.mp4",
        size_bytes=10,
        mime_type="video/mp4",
        uploaded_at=T0 + timedelta(minutes=minute),
        duration_seconds=4.0,
    )


def _delta(kind, item, seq=1):
    return Delta(type=DeltaType(kind), item=item, event_id="evt", seq=seq)


class Viewer:
    """Subscriber wired to an in-memory message list and a fake gallery."""

    def __init__(self, engine, store, query=None):
        self.messages = []
        self.store = store
        self.sub = Subscriber(
            GalleryCache(query),
            refetch=self.refetch,
            sink=self.messages.append,
            clock=engine.clock,
        )

    def refetch(self, q):
        items = [it for it in self.store["items"] if q.matches(it)]
        return items, self.store["stats"]

    def types(self):
        return [m["type"] for m in self.messages]


@pytest.fixture
def clock_now():
    state = {"now": T0}

    def clock():
        return state["now"]

    clock.state = state
    return clock


@pytest.fixture
def engine(clock_now):
    return RealtimeSyncEngine(heartbeat_timeout_seconds=60, reconcile_every=3, clock=clock_now)


@pytest.fixture
def store():
    return {"items": [], "stats": GalleryStats()}


def test_cache_inserts_in_newest_first_order():
    cache = GalleryCache()
    for media_id, minute in (("b", 2), ("a", 1), ("d", 4), ("c", 3)):
        cache.apply(_delta("insert", photo(media_id, minute)))
    assert cache.ids() == ["d", "c", "b", "a"]
    assert cache.stats.total_photos == 4


def test_cache_respects_oldest_and_contributor_sort():
    oldest = GalleryCache(GalleryQuery(sort_by="oldest"))
    by_name = GalleryCache(GalleryQuery(sort_by="contributor"))
    items = [photo("1", 3, "Cy"), photo("2", 1, "Ana"), video("3", 2, "Ben"), photo("4", 0, "Ana")]
    for it in items:
        oldest.apply(_delta("insert", it))
        by_name.apply(_delta("insert", it))
    assert oldest.ids() == ["4", "2", "3", "1"]
    assert by_name.ids() == ["4", "2", "3", "1"]
    assert [it.contributor_name for it in by_name.items] == ["Ana", "Ana", "Ben", "Cy"]


def test_insert_returns_position():
    cache = GalleryCache()
    cache.apply(_delta("insert", photo("a", 1)))
    cache.apply(_delta("insert", photo("c", 3)))
    changed, position = cache.apply(_delta("insert", photo("b", 2)))
    assert changed
    assert position == 1


def test_duplicate_insert_is_ignored():
    cache = GalleryCache()
    cache.load([photo("a", 1)], GalleryStats(total_photos=1, total_contributors=1))
    changed, _ = cache.apply(_delta("insert", photo("a", 1)))
    assert not changed
    assert cache.ids() == ["a"]
    assert cache.stats.total_photos == 1


def test_filtered_out_insert_still_moves_counters():
    cache = GalleryCache(GalleryQuery(media_type="videos"))
    changed, _ = cache.apply(_delta("insert", photo("p", 1, name="Ben")))
    assert not changed
    assert "p" not in cache
    assert cache.stats == GalleryStats(total_photos=1, total_videos=0, total_contributors=1)

    cache.apply(_delta("insert", video("v", 2, name="Ben")))
    assert cache.ids() == ["v"]
    assert cache.stats.total_contributors == 1


def test_update_and_delete():
    cache = GalleryCache(GalleryQuery(search="cake"))
    cache.apply(_delta("insert", photo("a", 1, caption="cake time")))
    assert cache.ids() == ["a"]

    # Caption edit takes it out of the search view
    changed, _ = cache.apply(_delta("update", photo("a", 1, caption="first dance")))
    assert changed
    assert cache.ids() == []

    cache.apply(_delta("update", photo("a", 1, caption="cake again")))
    assert cache.ids() == ["a"]

    cache.apply(_delta("update", photo("a", 1, caption="cake again", approved=False)))
    assert cache.ids() == []
    assert cache.stats.total_photos == 0

    cache.apply(_delta("insert", photo("b", 2, caption="more cake")))
    assert cache.stats.total_photos == 1
    changed, _ = cache.apply(_delta("delete", photo("b", 2, caption="more cake")))
    assert changed
    assert cache.ids() == []
    assert cache.stats.total_photos == 0


def test_reconcile_overwrites_counters():
    cache = GalleryCache()
    cache.apply(_delta("insert", photo("a", 1)))
    assert cache.reconcile(GalleryStats(total_photos=5, total_contributors=2))
    assert cache.stats.total_photos == 5
    assert not cache.reconcile(GalleryStats(total_photos=5, total_contributors=2))


def test_subscribe_sends_snapshot(engine, store):
    store["items"] = [photo("a", 1), photo("b", 2)]
    store["stats"] = GalleryStats(total_photos=2, total_contributors=1)
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)

    snapshot = viewer.messages[0]
    assert snapshot["type"] == "snapshot"
    assert [it["id"] for it in snapshot["items"]] == ["b", "a"]
    assert snapshot["stats"]["totalPhotos"] == 2
    assert engine.subscriber_count("evt") == 1


def test_deltas_are_delivered_in_publish_order(engine, store):
    first, second = Viewer(engine, store), Viewer(engine, store)
    engine.subscribe("evt", first.sub)
    engine.subscribe("evt", second.sub)

    for i in range(5):
        engine.publish("evt", DeltaType.INSERT, photo(f"m{i}", i))

    for viewer in (first, second):
        seqs = [m["seq"] for m in viewer.messages if m["type"] == "insert"]
        assert seqs == [1, 2, 3, 4, 5]
        assert viewer.sub.cache.ids() == ["m4", "m3", "m2", "m1", "m0"]


def test_channels_are_independent(engine, store):
    a, b = Viewer(engine, store), Viewer(engine, store)
    engine.subscribe("evt-a", a.sub)
    engine.subscribe("evt-b", b.sub)
    engine.publish("evt-a", DeltaType.INSERT, photo("x", 1))
    assert a.sub.cache.ids() == ["x"]
    assert b.sub.cache.ids() == []
    assert engine.publish("evt-none", DeltaType.INSERT, photo("y", 1)) is None


def test_stale_subscriber_is_reaped_then_resyncs(engine, store, clock_now):
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)

    clock_now.state["now"] = T0 + timedelta(seconds=61)
    assert engine.reap_stale() == [viewer.sub.id]
    assert viewer.sub.connected is False
    assert viewer.messages[-1] == {"type": "disconnected", "reason": "heartbeat_timeout"}

    # Missed while disconnected; no replay
    engine.publish("evt", DeltaType.INSERT, photo("missed", 5))
    assert "missed" not in viewer.sub.cache

    store["items"] = [photo("missed", 5)]
    store["stats"] = GalleryStats(total_photos=1, total_contributors=1)
    engine.reconnect("evt", viewer.sub)
    assert viewer.sub.connected
    assert viewer.sub.cache.ids() == ["missed"]
    assert viewer.messages[-1]["type"] == "snapshot"


def test_heartbeat_keeps_subscriber_alive(engine, store, clock_now):
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)
    clock_now.state["now"] = T0 + timedelta(seconds=45)
    viewer.sub.heartbeat()
    clock_now.state["now"] = T0 + timedelta(seconds=90)
    assert engine.reap_stale() == []


def test_failing_sink_disconnects_only_that_subscriber(engine, store):
    healthy = Viewer(engine, store)

    def broken(message):
        if message["type"] != "snapshot":
            raise ConnectionResetError("socket closed")

    dead = Subscriber(GalleryCache(), refetch=healthy.refetch, sink=broken, clock=engine.clock)
    engine.subscribe("evt", dead)
    engine.subscribe("evt", healthy.sub)

    engine.publish("evt", DeltaType.INSERT, photo("a", 1))
    engine.publish("evt", DeltaType.INSERT, photo("b", 2))
    assert dead.connected is False
    assert healthy.sub.cache.ids() == ["b", "a"]
    # Delivery stopped after the sink failed
    assert dead.cache.ids() == ["a"]


def test_periodic_reconcile_uses_stats_loader(clock_now, store):
    loaded = GalleryStats(total_photos=42, total_videos=1, total_contributors=7)
    engine = RealtimeSyncEngine(reconcile_every=3, stats_loader=lambda eid: loaded, clock=clock_now)
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)
    for i in range(3):
        engine.publish("evt", DeltaType.INSERT, photo(f"m{i}", i))
    assert viewer.sub.cache.stats == loaded
    assert viewer.messages[-1]["reconciled"] is True
    assert engine.channel("evt").deltas_since_reconcile == 0


def test_close_event_disconnects_viewers(engine, store):
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)
    engine.close_event("evt", "gallery_expired")
    assert not engine.has_channel("evt")
    assert viewer.messages[-1] == {"type": "disconnected", "reason": "gallery_expired"}


def test_unsubscribe_drops_empty_channel(engine, store):
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)
    engine.unsubscribe("evt", viewer.sub.id)
    assert not engine.has_channel("evt")
    assert engine.subscriber_count("evt") == 0


def test_ordered_section_holds_back_a_second_writer(engine, store):
    viewer = Viewer(engine, store)
    engine.subscribe("evt", viewer.sub)
    engine.publish("evt", DeltaType.INSERT, photo("a", 1, caption="cake"))

    inside = threading.Event()
    release = threading.Event()

    def slow_update():
        with engine.ordered("evt"):
            inside.set()
            release.wait(5)
            engine.publish("evt", DeltaType.UPDATE, photo("a", 1, caption="edited"))

    def delete():
        with engine.ordered("evt"):
            engine.publish("evt", DeltaType.DELETE, photo("a", 1, caption="edited"))

    updater = threading.Thread(target=slow_update)
    updater.start()
    assert inside.wait(5)
    deleter = threading.Thread(target=delete)
    deleter.start()
    deleter.join(0.2)
    assert deleter.is_alive()

    release.set()
    updater.join(5)
    deleter.join(5)
    kinds = [m["type"] for m in viewer.messages if m["type"] != "stats"]
    assert kinds == ["snapshot", "insert", "update", "delete"]
    assert viewer.sub.cache.ids() == []


def test_ordered_section_without_viewers_leaves_no_channel(engine):
    with engine.ordered("evt"):
        assert engine.publish("evt", DeltaType.INSERT, photo("a", 1)).seq == 1
    assert not engine.has_channel("evt")
