import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from instamoments.core.settings import settings


def _mssql_url() -> str:
    server = settings.DB_SERVER
    # If DB_SERVER already contains a port (":" or ",") or an instance name ("\\"),
    # use it as-is; otherwise append :port
    if any(sep in (server or "") for sep in (":", ",", "\\")):
        hostpart = server
    else:
        hostpart = f"{server}:{settings.DB_PORT}"
    return (
        f"mssql+pyodbc://{settings.DB_USER}:{settings.DB_PASSWORD}@{hostpart}/{settings.DB_NAME}"
        f"?driver={settings.DB_DRIVER.replace(' ', '+')}"
    )


# Tests opt into an in-memory SQLite DB with TEST_SQLITE=1.
if os.getenv("TEST_SQLITE") == "1":
    # StaticPool so the same in-memory DB is reused across connections.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(
        _mssql_url(),
        connect_args={
            "TrustServerCertificate": "yes",
            "Encrypt": "yes",
        },
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Tests install a transactional session here so request handlers share it.
_TEST_SESSION = None


def get_db():
    if _TEST_SESSION is not None:
        yield _TEST_SESSION
        return

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
