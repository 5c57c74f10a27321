"""Per-event realtime channels fanning insert/update/delete deltas to gallery viewers.

One Channel per event. Writers commit and publish inside
`RealtimeSyncEngine.ordered(event_id)`, which holds the channel lock; publish
stamps a sequence number and delivers to every subscriber before the lock is
released, so all subscribers of an event observe deltas in commit order.
Channels of different events share nothing and publish in parallel.

There is no replay log. A subscriber that misses heartbeats or whose sink
fails is marked disconnected; deltas are not queued for it, and on reconnect
it rebuilds its cache from a full gallery refetch.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from instamoments.core.timeutil import utcnow
from instamoments.schemas import public_media_dict
from instamoments.services.gallery_query import GalleryQuery, GalleryStats, sort_spec

logger = logging.getLogger(__name__)
audit = logging.getLogger("audit")


class DeltaType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Delta:
    type: DeltaType
    item: object  # PhotoItem | VideoItem
    event_id: str
    seq: int = 0

    def to_dict(self, position: Optional[int] = None) -> dict:
        body = {
            "type": self.type.value,
            "seq": self.seq,
            "eventId": self.event_id,
            "item": public_media_dict(self.item),
        }
        if position is not None:
            body["position"] = position
        return body


class GalleryCache:
    """A viewer's ordered item list plus optimistic counters.

    Inserts land where the viewer's sort order puts them (binary search on
    the same key the gallery query sorts by), so "by contributor" views stay
    ordered, not just newest/oldest. Items are deduplicated by id because an
    initial page fetch and a realtime insert can both carry the same item.
    """

    def __init__(self, query: Optional[GalleryQuery] = None):
        self.query = query or GalleryQuery()
        self._key, self._reverse = sort_spec(self.query.sort_by)
        self.items: list = []
        self._ids: Dict[str, object] = {}
        self._contributors: set = set()
        self.stats = GalleryStats()

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, media_id: str) -> bool:
        return media_id in self._ids

    def ids(self) -> List[str]:
        return [it.id for it in self.items]

    def load(self, items, stats: Optional[GalleryStats] = None) -> None:
        self.items = []
        self._ids = {}
        for it in items:
            self._insert(it)
        self._contributors = {it.contributor_name for it in self.items}
        if stats is not None:
            self.stats = stats

    def _position(self, item) -> int:
        k = self._key(item)
        lo, hi = 0, len(self.items)
        while lo < hi:
            mid = (lo + hi) // 2
            mk = self._key(self.items[mid])
            before = mk > k if self._reverse else mk < k
            if before:
                lo = mid + 1
            else:
                hi = mid
        return lo

    def _insert(self, item) -> Optional[int]:
        if item.id in self._ids:
            return None
        pos = self._position(item)
        self.items.insert(pos, item)
        self._ids[item.id] = item
        return pos

    def _remove(self, media_id: str) -> Optional[object]:
        item = self._ids.pop(media_id, None)
        if item is not None:
            self.items = [it for it in self.items if it.id != media_id]
        return item

    def _bump(self, kind: str, step: int) -> None:
        if kind == "video":
            self.stats = replace(self.stats, total_videos=max(0, self.stats.total_videos + step))
        else:
            self.stats = replace(self.stats, total_photos=max(0, self.stats.total_photos + step))

    def apply(self, delta: Delta) -> Tuple[bool, Optional[int]]:
        """Apply a delta; returns (changed, position of the item if present)."""
        item = delta.item
        if delta.type is DeltaType.INSERT:
            if item.id in self._ids:
                return False, None
            if item.approved:
                self._bump(item.kind, +1)
                if item.contributor_name not in self._contributors:
                    self._contributors.add(item.contributor_name)
                    self.stats = replace(
                        self.stats, total_contributors=self.stats.total_contributors + 1
                    )
            if not self.query.matches(item):
                return False, None
            return True, self._insert(item)

        if delta.type is DeltaType.DELETE:
            removed = self._remove(item.id)
            if removed is not None or item.approved:
                self._bump(item.kind, -1)
            return removed is not None, None

        # update: re-place the item, or drop it if it no longer matches
        previous = self._remove(item.id)
        if previous is not None and previous.approved != item.approved:
            self._bump(item.kind, +1 if item.approved else -1)
        if not self.query.matches(item):
            return previous is not None, None
        return True, self._insert(item)

    def reconcile(self, stats: GalleryStats) -> bool:
        drifted = stats != self.stats
        self.stats = stats
        return drifted


Refetch = Callable[[GalleryQuery], Tuple[list, GalleryStats]]
Sink = Callable[[dict], None]


class Subscriber:
    """Server-side mirror of one viewer connection."""

    _ids = itertools.count(1)

    def __init__(
        self,
        cache: GalleryCache,
        refetch: Refetch,
        sink: Optional[Sink] = None,
        clock: Callable[[], datetime] = utcnow,
        subscriber_id: Optional[str] = None,
    ):
        self.id = subscriber_id or f"sub-{next(self._ids)}"
        self.cache = cache
        self._refetch = refetch
        self._sink = sink
        self._clock = clock
        self.connected = False
        self.last_seen = clock()
        self.last_seq = 0

    def heartbeat(self) -> None:
        self.last_seen = self._clock()

    def mark_disconnected(self, reason: str) -> None:
        if not self.connected:
            return
        self.connected = False
        audit.info(
            "realtime.subscriber.disconnected",
            extra={"subscriber_id": self.id, "reason": reason},
        )
        self._emit({"type": "disconnected", "reason": reason})

    def resync(self) -> None:
        """Rebuild the cache from a full refetch and resume delivery."""
        items, stats = self._refetch(self.cache.query)
        self.cache.load(items, stats)
        self.connected = True
        self.last_seen = self._clock()
        self._emit(
            {
                "type": "snapshot",
                "items": [public_media_dict(it) for it in self.cache.items],
                "stats": self.cache.stats.to_dict(),
            }
        )

    def deliver(self, delta: Delta) -> None:
        if not self.connected:
            return
        self.last_seq = delta.seq
        changed, position = self.cache.apply(delta)
        if changed:
            self._emit(delta.to_dict(position=position))
        # Counters move even when the item is outside the viewer's filter
        self._emit({"type": "stats", "seq": delta.seq, "stats": self.cache.stats.to_dict()})

    def reconcile(self, stats: GalleryStats) -> None:
        if self.cache.reconcile(stats):
            self._emit({"type": "stats", "stats": stats.to_dict(), "reconciled": True})

    def _emit(self, message: dict) -> None:
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception:
            # A failing sink is a dead connection; the viewer must resync
            logger.warning("realtime.sink_failed", extra={"subscriber_id": self.id}, exc_info=True)
            self.connected = False


class Channel:
    def __init__(self, event_id: str):
        self.event_id = event_id
        self._lock = threading.RLock()
        self.subscribers: Dict[str, Subscriber] = {}
        self.seq = 0
        self.deltas_since_reconcile = 0
        self.writers = 0

    def add(self, subscriber: Subscriber) -> None:
        with self._lock:
            self.subscribers[subscriber.id] = subscriber

    def remove(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self.subscribers.pop(subscriber_id, None)

    def publish(self, delta_type: DeltaType, item) -> Delta:
        with self._lock:
            self.seq += 1
            self.deltas_since_reconcile += 1
            delta = Delta(type=delta_type, item=item, event_id=self.event_id, seq=self.seq)
            for sub in list(self.subscribers.values()):
                sub.deliver(delta)
            return delta

    def reconcile(self, stats: GalleryStats) -> None:
        with self._lock:
            self.deltas_since_reconcile = 0
            for sub in list(self.subscribers.values()):
                sub.reconcile(stats)


class RealtimeSyncEngine:
    def __init__(
        self,
        heartbeat_timeout_seconds: int = 60,
        reconcile_every: int = 50,
        stats_loader: Optional[Callable[[str], Optional[GalleryStats]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self.reconcile_every = reconcile_every
        self.stats_loader = stats_loader
        self.clock = clock
        self._channels: Dict[str, Channel] = {}
        self._lock = threading.Lock()

    def channel(self, event_id: str) -> Channel:
        with self._lock:
            ch = self._channels.get(event_id)
            if ch is None:
                ch = self._channels[event_id] = Channel(event_id)
            return ch

    def has_channel(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._channels

    def subscriber_count(self, event_id: str) -> int:
        with self._lock:
            ch = self._channels.get(event_id)
        return len(ch.subscribers) if ch else 0

    def subscribe(self, event_id: str, subscriber: Subscriber) -> Subscriber:
        """Register and load the subscriber's initial snapshot."""
        ch = self.channel(event_id)
        # Snapshot under the channel lock so no delta slips between fetch and registration
        with ch._lock:
            ch.add(subscriber)
            subscriber.resync()
        audit.info(
            "realtime.subscribe",
            extra={"event_id": event_id, "subscriber_id": subscriber.id},
        )
        return subscriber

    def unsubscribe(self, event_id: str, subscriber_id: str) -> None:
        with self._lock:
            ch = self._channels.get(event_id)
        if ch is None:
            return
        ch.remove(subscriber_id)
        self._drop_if_idle(event_id, ch)

    def _drop_if_idle(self, event_id: str, ch: Channel) -> None:
        with self._lock:
            if not ch.subscribers and not ch.writers and self._channels.get(event_id) is ch:
                del self._channels[event_id]

    @contextmanager
    def ordered(self, event_id: str) -> Iterator[Channel]:
        """Hold the event's channel lock across a commit and its publish.

        Writers of one event run this section one at a time, so the order
        deltas are published in is the order their transactions committed.
        The engine lock is never taken while waiting on a channel lock.
        """
        with self._lock:
            ch = self._channels.get(event_id)
            if ch is None:
                ch = self._channels[event_id] = Channel(event_id)
            ch.writers += 1
        try:
            with ch._lock:
                yield ch
        finally:
            with self._lock:
                ch.writers -= 1
            self._drop_if_idle(event_id, ch)

    def reconnect(self, event_id: str, subscriber: Subscriber) -> None:
        ch = self.channel(event_id)
        with ch._lock:
            ch.add(subscriber)
            subscriber.resync()

    def publish(self, event_id: str, delta_type: DeltaType, item) -> Optional[Delta]:
        with self._lock:
            ch = self._channels.get(event_id)
        if ch is None:
            return None
        delta = ch.publish(DeltaType(delta_type), item)
        if self.stats_loader is not None and ch.deltas_since_reconcile >= self.reconcile_every:
            self.reconcile(event_id)
        return delta

    def reconcile(self, event_id: str, stats: Optional[GalleryStats] = None) -> None:
        """Overwrite optimistic counters with the Event row's values."""
        with self._lock:
            ch = self._channels.get(event_id)
        if ch is None:
            return
        if stats is None:
            if self.stats_loader is None:
                return
            try:
                stats = self.stats_loader(event_id)
            except Exception:
                logger.warning("realtime.reconcile_failed", extra={"event_id": event_id}, exc_info=True)
                return
            if stats is None:
                return
        ch.reconcile(stats)

    def reap_stale(self) -> List[str]:
        """Mark subscribers without a recent heartbeat as disconnected."""
        cutoff = self.clock() - self.heartbeat_timeout
        reaped: List[str] = []
        with self._lock:
            channels = list(self._channels.values())
        for ch in channels:
            with ch._lock:
                for sub in ch.subscribers.values():
                    if sub.connected and sub.last_seen < cutoff:
                        sub.mark_disconnected("heartbeat_timeout")
                        reaped.append(sub.id)
        return reaped

    def close_event(self, event_id: str, reason: str) -> None:
        """Disconnect every viewer of an event (expired or archived)."""
        with self._lock:
            ch = self._channels.pop(event_id, None)
        if ch is None:
            return
        with ch._lock:
            for sub in ch.subscribers.values():
                sub.mark_disconnected(reason)
