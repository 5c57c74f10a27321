import os

# Tests run against the in-memory SQLite engine; set before `db` is imported.
os.environ["TEST_SQLITE"] = "1"
os.environ.setdefault("ANALYTICS_ENABLED", "0")
os.environ.setdefault("SWEEP_ENABLED", "0")
os.environ["LOG_FILE"] = ""

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import instamoments.models  # noqa: E402,F401  registers every table on Base
from db import SessionLocal, engine  # noqa: E402
from instamoments.models.user import Base, User  # noqa: E402
from instamoments.schemas import UploadMetadata  # noqa: E402
from instamoments.services.events import create_event  # noqa: E402
from instamoments.services.ingestion import IngestionPipeline, StoredBlobs  # noqa: E402
from instamoments.services.quota import MediaKind  # noqa: E402
from instamoments.services.rate_limit import MemoryCounterStore, RateLimiter  # noqa: E402
from instamoments.services.realtime import RealtimeSyncEngine  # noqa: E402
from instamoments.services.storage import LocalStorageService  # noqa: E402

# Smallest byte strings libmagic (when installed) identifies as the declared type
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00" + b"\x00" * 200
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom" + b"\x00" * 200

T0 = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_session():
    """Fresh schema per test on the shared in-memory engine.

    Services commit and roll back for real, so each test gets its own tables
    instead of an outer transaction; the session is also exposed to
    `db.get_db` so request handlers share it.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    import db as dbmod

    dbmod._TEST_SESSION = session
    try:
        yield session
    finally:
        dbmod._TEST_SESSION = None
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def host(db_session):
    user = User(Email="host@example.com", DisplayName="Host", IsActive=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageService(root=str(tmp_path / "storage"))


@pytest.fixture
def realtime(clock):
    return RealtimeSyncEngine(heartbeat_timeout_seconds=60, reconcile_every=1000, clock=clock)


@pytest.fixture
def pipeline(storage, realtime, clock):
    return IngestionPipeline(storage, realtime=realtime, clock=clock)


@pytest.fixture
def make_event(db_session, host, clock):
    def _make(tier="free", video=False, name="Wedding", now=None):
        return create_event(
            db_session, host.UserID, name, tier=tier, has_video_addon=video, now=now or clock()
        )

    return _make


@pytest.fixture
def add_media(db_session, pipeline, storage):
    """Store a blob and run the record/counter step, bypassing MIME sniffing."""
    counter = {"n": 0}

    def _add(event, kind="photo", name="Guest", email=None, caption=None, size=100, duration=5.0):
        counter["n"] += 1
        media_kind = MediaKind(kind)
        mime = "video/mp4" if media_kind is MediaKind.VIDEO else "image/jpeg"
        ref = storage.put(b"x" * size, f"events/{event.EventID}/{kind}s/{counter['n']}", mime)
        metadata = UploadMetadata(
            event_id=event.EventID,
            contributor_name=name,
            contributor_email=email,
            caption=caption,
            media_kind=media_kind,
            duration_seconds=duration if media_kind is MediaKind.VIDEO else None,
        )
        stored = StoredBlobs(
            media_id=f"{counter['n']:08d}-0000-4000-8000-000000000000",
            file_ref=ref,
            size_bytes=size,
            mime_type=mime,
        )
        return pipeline.ingest(db_session, event, metadata, stored)

    return _add


@pytest.fixture
def client(db_session, storage, realtime):
    # Import the app here so the TEST_SQLITE setup above runs first.
    from main import app
    from instamoments.services.expiration import ExpirationSweeper
    from instamoments.services.gallery_query import GalleryQueryService

    saved = dict(app.state._state)
    app.state.storage = storage
    app.state.realtime = realtime
    app.state.pipeline = IngestionPipeline(storage, realtime=realtime)
    app.state.gallery = GalleryQueryService(storage)
    app.state.rate_limiter = RateLimiter(MemoryCounterStore(), limit=10, window_seconds=600)
    app.state.analytics = None
    app.state.sweeper = ExpirationSweeper(storage, session_factory=SessionLocal, realtime=realtime)
    try:
        yield TestClient(app)
    finally:
        app.state._state.clear()
        app.state._state.update(saved)


@pytest.fixture
def jpeg_bytes():
    return JPEG_BYTES


@pytest.fixture
def mp4_bytes():
    return MP4_BYTES
