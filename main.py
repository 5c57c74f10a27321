import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import sentry_sdk
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi import HTTPException as FastAPIHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sentry_sdk.integrations.starlette import StarletteIntegration

from db import SessionLocal, get_db
from instamoments.api import events, gallery, live, uploads
from instamoments.core import errors
from instamoments.core.logging_utils import configure_logging
from instamoments.core.middleware_compression import add_compression_middleware
from instamoments.core.settings import settings
from instamoments.core.timeutil import epoch_seconds, utcnow
from instamoments.jobs.expiration_job import build_scheduler, start_scheduler, stop_scheduler
from instamoments.models import AppErrorLog, Event
from instamoments.services.analytics import AnalyticsRecorder
from instamoments.services.auth import get_user_id_from_request
from instamoments.services.expiration import ExpirationSweeper
from instamoments.services.gallery_query import GalleryQueryService, GalleryStats
from instamoments.services.ingestion import IngestionPipeline, UploadLimits
from instamoments.services.rate_limit import build_rate_limiter
from instamoments.services.realtime import RealtimeSyncEngine
from instamoments.services.storage import LocalStorageService, build_storage

load_dotenv()

# Configure logging (console + rotating file; JSON by default)
configure_logging(settings)
logger = logging.getLogger("app")

# Initialize Sentry if DSN provided
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[StarletteIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0.0),
        send_default_pii=False,
    )


def _load_stats(event_id: str) -> Optional[GalleryStats]:
    db = SessionLocal()
    try:
        event = db.query(Event).filter(Event.EventID == event_id).first()
        return GalleryStats.from_event(event) if event else None
    finally:
        db.close()


# Long-lived services; routes read them from app.state
storage = build_storage(settings)
realtime = RealtimeSyncEngine(
    heartbeat_timeout_seconds=settings.REALTIME_HEARTBEAT_TIMEOUT_SECONDS,
    reconcile_every=settings.REALTIME_RECONCILE_EVERY,
    stats_loader=_load_stats,
)
analytics = AnalyticsRecorder.background(SessionLocal, enabled=settings.ANALYTICS_ENABLED)
pipeline = IngestionPipeline(
    storage,
    realtime=realtime,
    analytics=analytics,
    limits=UploadLimits.from_settings(settings),
)
sweeper = ExpirationSweeper(
    storage,
    session_factory=SessionLocal,
    realtime=realtime,
    max_workers=settings.SWEEP_MAX_WORKERS,
)
scheduler = build_scheduler(settings, sweeper, realtime)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler(scheduler)
    try:
        yield
    finally:
        stop_scheduler(scheduler)
        analytics.shutdown()


app = FastAPI(title="InstaMoments", lifespan=lifespan)
add_compression_middleware(app)

app.state.storage = storage
app.state.realtime = realtime
app.state.analytics = analytics
app.state.pipeline = pipeline
app.state.gallery = GalleryQueryService(storage, max_limit=settings.GALLERY_MAX_LIMIT)
app.state.sweeper = sweeper
app.state.rate_limiter = build_rate_limiter(settings, session_factory=SessionLocal)

if isinstance(storage, LocalStorageService):
    app.mount(
        "/storage",
        StaticFiles(directory=settings.LOCAL_STORAGE_ROOT, check_dir=False),
        name="storage",
    )

# Static /api/events/expiration is declared before /api/events/{event_id} inside the router
app.include_router(uploads.router)
app.include_router(gallery.router)
app.include_router(events.router)
app.include_router(live.router)


@app.get("/health")
def health():
    return {"status": "ok", "time": utcnow().isoformat()}


# Request logging middleware with request id and user/session context
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start = time.perf_counter()
    request.state.request_id = request_id
    extra_ctx = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    logger.info("request.start", extra=extra_ctx)
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception("request.error", extra={**extra_ctx, "duration_ms": duration_ms})
        raise

    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request.end",
        extra={
            **extra_ctx,
            "user_id": getattr(request.state, "user_id", None),
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


def _log_error_to_db(request: Request, status: int, message: str, stack: Optional[str] = None):
    """Best-effort AppErrorLog row; never raises."""
    db_gen = get_db()
    db = None
    try:
        db = next(db_gen)
        request_id = getattr(request.state, "request_id", None)
        user_id = getattr(request.state, "user_id", None)
        if user_id is None:
            try:
                user_id = get_user_id_from_request(request, db)
            except Exception:
                user_id = None
        db.add(
            AppErrorLog(
                RequestID=str(request_id) if request_id else None,
                Path=str(request.url.path)[:500],
                Method=request.method,
                StatusCode=int(status),
                UserID=user_id,
                ClientIP=request.client.host if request.client else None,
                UserAgent=(request.headers.get("user-agent") or "")[:255] or None,
                Message=message,
                StackTrace=stack,
            )
        )
        db.commit()
    except Exception:
        logger.warning("errorlog.write_failed", exc_info=True)
        if db is not None:
            try:
                db.rollback()
            except Exception:
                pass
    finally:
        db_gen.close()


def _error_response(request: Request, status: int, body: dict, headers=None) -> JSONResponse:
    resp = JSONResponse(body, status_code=status, headers=headers)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        resp.headers["X-Request-ID"] = str(request_id)
    return resp


@app.exception_handler(errors.GalleryError)
async def gallery_error_handler(request: Request, exc: errors.GalleryError):
    body = {"success": False, "error": exc.to_dict()}
    headers = None
    if isinstance(exc, errors.RateLimitExceeded):
        retry_after = max(0, int((exc.reset_at - utcnow()).total_seconds() + 0.999))
        headers = {
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
            "X-RateLimit-Reset": str(epoch_seconds(exc.reset_at)),
            "Retry-After": str(retry_after),
        }
        body["meta"] = {
            "rateLimit": {"remaining": exc.remaining, "resetAt": exc.reset_at.isoformat()}
        }
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"code": exc.code, "path": request.url.path})
    _log_error_to_db(request, exc.status_code, f"{exc.code}: {exc.message}")
    return _error_response(request, exc.status_code, body, headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    err = errors.ValidationFailed(details={"errors": details})
    _log_error_to_db(request, err.status_code, f"{err.code}: {err.message}")
    return _error_response(request, err.status_code, {"success": False, "error": err.to_dict()})


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    status = getattr(exc, "status_code", 500) or 500
    if status >= 400 and status != 404:
        _log_error_to_db(request, status, str(getattr(exc, "detail", "HTTP error")))
    body = {"success": False, "error": {"code": "HTTP_ERROR", "message": str(exc.detail)}}
    return _error_response(request, status, body, getattr(exc, "headers", None))


@app.exception_handler(500)
async def server_error_handler(request: Request, exc):
    _log_error_to_db(
        request,
        500,
        str(exc),
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
    body = {
        "success": False,
        "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    }
    return _error_response(request, 500, body)
