"""Run one expiration sweep now (same code path as the scheduled job)."""

import argparse
import json

from db import SessionLocal
from instamoments.core.logging_utils import configure_logging
from instamoments.core.settings import settings
from instamoments.jobs.expiration_job import run_sweep
from instamoments.services.expiration import ExpirationSweeper
from instamoments.services.storage import build_storage


def main():
    parser = argparse.ArgumentParser(description="Expire overdue events.")
    parser.add_argument("--delete-content", action="store_true", help="Also delete media")
    parser.add_argument("--workers", type=int, default=settings.SWEEP_MAX_WORKERS)
    parser.add_argument("--expiring-hours", type=int, default=0, help="List events expiring within N hours")
    args = parser.parse_args()

    configure_logging(settings)
    sweeper = ExpirationSweeper(
        build_storage(settings), session_factory=SessionLocal, max_workers=args.workers
    )
    stats = run_sweep(sweeper, delete_content=args.delete_content)
    print(json.dumps(stats.to_dict(), indent=2))

    if args.expiring_hours:
        s = SessionLocal()
        try:
            for e in sweeper.find_expiring_soon(s, args.expiring_hours):
                print(f"{e.EventID}  {e.Name!r}  expires {e.ExpiresAt:%Y-%m-%d %H:%M}")
        finally:
            s.close()


if __name__ == "__main__":
    main()
