"""Create (or reuse) a host user, optionally an event, and print a session cookie.

Login screens are not part of this service; use this to get a `session_id`
for calling the host endpoints locally.
"""

import argparse

from sqlalchemy.orm import Session

from db import SessionLocal
from instamoments.core.tiers import TIER_ORDER
from instamoments.models.user import User
from instamoments.services.auth import create_session
from instamoments.services.events import create_event


def upsert_host(s: Session, email: str, display_name: str) -> tuple[bool, int]:
    user = s.query(User).filter(User.Email == email).first()
    created = False
    if not user:
        user = User(Email=email, DisplayName=display_name or None, IsActive=True)
        s.add(user)
        created = True
    else:
        if display_name:
            user.DisplayName = display_name
        user.IsActive = True
    s.commit()
    s.refresh(user)
    return created, int(user.UserID)


def main():
    parser = argparse.ArgumentParser(description="Create a host user and session.")
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", default="")
    parser.add_argument("--event", default="", help="Also create an event with this name")
    parser.add_argument("--tier", default="free", choices=TIER_ORDER)
    parser.add_argument("--video", action="store_true", help="Buy the video addon")
    parser.add_argument("--minutes", type=int, default=60 * 24, help="Session lifetime")
    args = parser.parse_args()

    s = SessionLocal()
    try:
        created, user_id = upsert_host(s, args.email.strip().lower(), args.name.strip())
        print(("Created" if created else "Updated") + f" host UserID={user_id}")
        if args.event:
            event = create_event(s, user_id, args.event, tier=args.tier, has_video_addon=args.video)
            print(f"Event {event.EventID} slug={event.GallerySlug} expires={event.ExpiresAt:%Y-%m-%d %H:%M}")
        session = create_session(s, user_id, expires_in_minutes=args.minutes)
        print(f"session_id={session.SessionID}")
    finally:
        s.close()


if __name__ == "__main__":
    main()
