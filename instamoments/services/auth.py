"""Session lookup for host-scoped operations.

Login screens and password flows live outside this service; sessions are
issued elsewhere (or by `create_session` in seed scripts and tests) and
arrive here as a `session_id` cookie.
"""

import uuid
from datetime import timedelta
from typing import Any, Optional

from fastapi import Depends
from sqlalchemy.orm import Session
from starlette.requests import Request

from db import get_db
from instamoments.core import errors
from instamoments.core.timeutil import utcnow
from instamoments.models.user import User, UserSession

SESSION_COOKIE = "session_id"


def create_session(
    db: Session,
    user_id: int,
    expires_in_minutes: int = 60 * 24,
    ip_address: str = "",
    user_agent: str = "",
) -> UserSession:
    now = utcnow()
    session = UserSession(
        SessionID=str(uuid.uuid4()),
        UserID=user_id,
        CreatedAt=now,
        ExpiresAt=now + timedelta(minutes=expires_in_minutes),
        IsActive=True,
        LastSeen=now,
        IPAddress=ip_address or None,
        UserAgent=user_agent or None,
    )
    db.add(session)
    db.commit()
    return session


def get_session(db: Session, session_id: str) -> Optional[UserSession]:
    session = (
        db.query(UserSession)
        .filter(UserSession.SessionID == str(session_id), UserSession.IsActive)
        .first()
    )
    if session is None:
        return None
    now = utcnow()
    if session.ExpiresAt is None or session.ExpiresAt <= now:
        return None
    session.LastSeen = now
    db.commit()
    return session


def deactivate_session(db: Session, session_id: str) -> None:
    session = db.query(UserSession).filter(UserSession.SessionID == str(session_id)).first()
    if session:
        session.IsActive = False
        db.commit()


def get_user_id_from_request(request: Request, db: Session) -> Optional[int]:
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return None
    session_obj = get_session(db=db, session_id=session_id)
    if not session_obj:
        return None
    uid: Any = session_obj.UserID
    try:
        return int(uid) if uid is not None else None
    except (TypeError, ValueError):
        return None


def require_user(request: Request, db: Session = Depends(get_db)) -> int:
    """FastAPI dependency: the caller's user id, or AUTH_REQUIRED."""
    user_id = get_user_id_from_request(request, db)
    if user_id is None:
        raise errors.AuthRequired()
    user = db.query(User).filter(User.UserID == user_id, User.IsActive).first()
    if user is None:
        raise errors.AuthRequired()
    request.state.user_id = user_id
    return user_id
