"""Paginated gallery reads merging photos and videos.

Each media table is queried independently with the same filters and
ordering, then the two sorted windows are merged (heapq.merge, no full
re-sort) and sliced to the requested page.

Offset pagination is not stable under concurrent inserts: an upload landing
between a client's page 0 and page 1 fetch shifts the boundary by one. The
realtime channel's id dedup hides the resulting duplicate; a cursor keyed by
``(UploadedAt, MediaID)`` would remove it.
"""

from __future__ import annotations

import heapq
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from instamoments.core import errors
from instamoments.core.timeutil import utcnow
from instamoments.models.event import Event, EventContributor
from instamoments.models.media import Photo, Video
from instamoments.schemas import media_from_row, public_media_dict

SORT_CHOICES = ("newest", "oldest", "contributor")
TYPE_CHOICES = ("all", "photos", "videos")

_KIND_MODELS = {"photo": Photo, "video": Video}
_TYPE_KINDS = {"all": ("photo", "video"), "photos": ("photo",), "videos": ("video",)}


def sort_spec(sort_by: str) -> Tuple[Callable[[Any], tuple], bool]:
    """(key, reverse) giving the display order of media items for `sort_by`."""
    if sort_by == "contributor":
        return (lambda it: ((it.contributor_name or "").lower(), it.uploaded_at, it.id)), False
    if sort_by == "oldest":
        return (lambda it: (it.uploaded_at, it.id)), False
    return (lambda it: (it.uploaded_at, it.id)), True


def _order_clauses(model, sort_by: str):
    if sort_by == "contributor":
        # Same key as sort_spec; column collations differ between backends
        return (func.lower(model.ContributorName).asc(), model.UploadedAt.asc(), model.MediaID.asc())
    if sort_by == "oldest":
        return (model.UploadedAt.asc(), model.MediaID.asc())
    return (model.UploadedAt.desc(), model.MediaID.desc())


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class GalleryQuery:
    page: int = 0
    limit: int = 20
    search: Optional[str] = None
    contributor: Optional[str] = None
    sort_by: str = "newest"
    media_type: str = "all"

    def __post_init__(self):
        if self.page < 0:
            raise errors.ValidationFailed("page must be >= 0")
        if self.limit < 1:
            raise errors.ValidationFailed("limit must be >= 1")
        if self.sort_by not in SORT_CHOICES:
            raise errors.ValidationFailed(f"sortBy must be one of {', '.join(SORT_CHOICES)}")
        if self.media_type not in TYPE_CHOICES:
            raise errors.ValidationFailed(f"type must be one of {', '.join(TYPE_CHOICES)}")

    @property
    def offset(self) -> int:
        return self.page * self.limit

    @property
    def kinds(self) -> Tuple[str, ...]:
        return _TYPE_KINDS[self.media_type]

    @property
    def contributor_filter(self) -> Optional[str]:
        if not self.contributor or self.contributor == "all":
            return None
        return self.contributor

    def matches(self, item) -> bool:
        """Python twin of the SQL filters, used by realtime caches."""
        if not item.approved or item.kind not in self.kinds:
            return False
        if self.contributor_filter is not None and item.contributor_name != self.contributor_filter:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = (item.caption or "", item.contributor_name or "")
            if not any(needle in h.lower() for h in haystacks):
                return False
        return True

    def filters(self) -> Dict[str, Any]:
        return {
            "search": self.search or "",
            "contributor": self.contributor or "",
            "sortBy": self.sort_by,
            "type": self.media_type,
        }


@dataclass
class GalleryPage:
    items: List[Any]
    page: int
    limit: int
    total: int
    filters: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_more(self) -> bool:
        return self.page * self.limit + len(self.items) < self.total

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [public_media_dict(it) for it in self.items],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "hasMore": self.has_more,
                "totalPages": self.total_pages,
            },
            "filters": self.filters,
        }


@dataclass(frozen=True)
class GalleryStats:
    total_photos: int = 0
    total_videos: int = 0
    total_contributors: int = 0

    @classmethod
    def from_event(cls, event) -> "GalleryStats":
        return cls(
            total_photos=int(event.TotalPhotos or 0),
            total_videos=int(event.TotalVideos or 0),
            total_contributors=int(event.TotalContributors or 0),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalPhotos": self.total_photos,
            "totalVideos": self.total_videos,
            "totalContributors": self.total_contributors,
        }


def load_gallery_event(db: Session, key: str, now: Optional[datetime] = None) -> Event:
    """Resolve an event by id or gallery slug for public reads.

    Raises GalleryNotFound for unknown or non-active events and
    GalleryExpired once ExpiresAt has passed.
    """
    now = now or utcnow()
    event = (
        db.query(Event)
        .filter(or_(Event.EventID == key, Event.GallerySlug == key))
        .first()
    )
    if event is None or event.Status != "active":
        raise errors.GalleryNotFound()
    if event.ExpiresAt < now:
        raise errors.GalleryExpired()
    return event


class GalleryQueryService:
    def __init__(self, storage=None, max_limit: int = 100):
        self.storage = storage
        self.max_limit = max_limit

    def _filtered(self, db: Session, model, event_id: str, q: GalleryQuery):
        base = db.query(model).filter(model.EventID == event_id, model.IsApproved.is_(True))
        if q.search:
            pattern = f"%{_escape_like(q.search)}%"
            base = base.filter(
                or_(
                    model.Caption.ilike(pattern, escape="\\"),
                    model.ContributorName.ilike(pattern, escape="\\"),
                )
            )
        if q.contributor_filter is not None:
            base = base.filter(model.ContributorName == q.contributor_filter)
        return base

    def _fetch(self, db: Session, kind: str, event_id: str, q: GalleryQuery, window: int) -> list:
        model = _KIND_MODELS[kind]
        rows = (
            self._filtered(db, model, event_id, q)
            .order_by(*_order_clauses(model, q.sort_by))
            .limit(window)
            .all()
        )
        return [media_from_row(r, self.storage) for r in rows]

    def _count(self, db: Session, kind: str, event_id: str, q: GalleryQuery) -> int:
        return int(self._filtered(db, _KIND_MODELS[kind], event_id, q).count())

    def query(self, db: Session, event, q: GalleryQuery) -> GalleryPage:
        if q.limit > self.max_limit:
            q = GalleryQuery(**{**asdict(q), "limit": self.max_limit})
        event_id = event.EventID
        # Enough rows from each source that the merged prefix covers the page
        window = q.offset + q.limit
        sources = [self._fetch(db, kind, event_id, q, window) for kind in q.kinds]
        if len(sources) == 1:
            merged = sources[0]
        else:
            key, reverse = sort_spec(q.sort_by)
            merged = list(heapq.merge(*sources, key=key, reverse=reverse))
        items = merged[q.offset : q.offset + q.limit]
        total = sum(self._count(db, kind, event_id, q) for kind in q.kinds)
        return GalleryPage(items=items, page=q.page, limit=q.limit, total=total, filters=q.filters())

    def stats(self, db: Session, event, recent: int = 10) -> Dict[str, Any]:
        contributors = (
            db.query(EventContributor)
            .filter(EventContributor.EventID == event.EventID)
            .order_by(EventContributor.LastContributionAt.desc())
            .limit(recent)
            .all()
        )
        return {
            "stats": GalleryStats.from_event(event).to_dict(),
            "recentContributors": [
                {
                    "name": c.ContributorName,
                    "photos": int(c.PhotoCount or 0),
                    "videos": int(c.VideoCount or 0),
                    "lastContributionAt": (
                        c.LastContributionAt.isoformat() if c.LastContributionAt else None
                    ),
                }
                for c in contributors
            ],
        }
