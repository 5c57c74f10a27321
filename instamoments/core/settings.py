from typing import Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database (set via .env; avoid hardcoding secrets here)
    DB_SERVER: str = ""  # e.g. 192.168.1.50 or hostname
    DB_NAME: str = "InstaMoments"
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_DRIVER: str = "ODBC Driver 17 for SQL Server"
    DB_PORT: int = 1433

    # Security
    SECRET_KEY: str = "CHANGE_THIS_TO_A_SECRET_KEY"

    # App/Base URL
    BASE_URL: str = "http://localhost:8000"

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON: bool = True
    LOG_FILE: str = "logs/app.log"
    LOG_MAX_BYTES: int = 5_000_000  # 5 MB
    LOG_BACKUP_COUNT: int = 5

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0

    # Upload validation
    MAX_PHOTO_BYTES: int = 10 * 1024 * 1024
    MAX_VIDEO_BYTES: int = 50 * 1024 * 1024
    MAX_THUMBNAIL_BYTES: int = 1 * 1024 * 1024
    ALLOWED_PHOTO_MIME_TYPES: Tuple[str, ...] = (
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/heic",
        "image/heif",
    )
    ALLOWED_VIDEO_MIME_TYPES: Tuple[str, ...] = (
        "video/mp4",
        "video/webm",
        "video/mov",
        "video/quicktime",
    )
    MIN_VIDEO_SECONDS: float = 1.0
    MAX_VIDEO_SECONDS: float = 20.0

    # Upload rate limiting: 10 uploads per 10 minutes per identity
    UPLOAD_RATE_LIMIT_ATTEMPTS: int = 10
    UPLOAD_RATE_LIMIT_WINDOW_SECONDS: int = 10 * 60

    # Redis (shared rate-limit counters); DB table is used when empty
    REDIS_URL: str = ""

    # AWS S3 Storage (optional; local filesystem if not configured)
    AWS_REGION: str = ""
    AWS_ACCESS_KEY_ID: str = ""  # Optional; uses IAM role on EC2
    AWS_SECRET_ACCESS_KEY: str = ""  # Optional; uses IAM role on EC2
    S3_UPLOADS_BUCKET: str = ""  # If empty, uses local filesystem
    LOCAL_STORAGE_ROOT: str = "storage"

    # Gallery reads
    GALLERY_DEFAULT_LIMIT: int = 20
    GALLERY_MAX_LIMIT: int = 100

    # Expiration sweep
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_MINUTES: int = 60
    SWEEP_DELETE_CONTENT: bool = False
    SWEEP_MAX_WORKERS: int = 1
    EXPIRING_SOON_HOURS: int = 24
    SWEEP_TRIGGER_TOKEN: str = ""  # shared secret for external cron calls

    # Realtime gallery channels
    REALTIME_HEARTBEAT_SECONDS: int = 25
    REALTIME_HEARTBEAT_TIMEOUT_SECONDS: int = 60
    REALTIME_RECONCILE_EVERY: int = 50  # deltas between stats reconciliations

    # Analytics (fire-and-forget)
    ANALYTICS_ENABLED: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()

# Basic validation for required settings to prevent confusing runtime errors
_missing = []
if not settings.DB_SERVER:
    _missing.append("DB_SERVER")
if not settings.DB_USER:
    _missing.append("DB_USER")
if not settings.DB_PASSWORD:
    _missing.append("DB_PASSWORD")
if settings.SECRET_KEY == "CHANGE_THIS_TO_A_SECRET_KEY" or not settings.SECRET_KEY:
    _missing.append("SECRET_KEY")

if _missing:
    # Do not crash imports in some tools; instead, provide a helpful message.
    import warnings

    warnings.warn(
        "Missing required settings in .env: "
        + ", ".join(_missing)
        + ". Update .env and restart the app."
    )
