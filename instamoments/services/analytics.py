"""Fire-and-forget analytics rows (photo_upload, video_upload, gallery_view).

Recording never raises into the caller: a failed insert is logged at
warning level and dropped.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from instamoments.models.logging import AnalyticsEvent

logger = logging.getLogger(__name__)

EVENT_TYPES = ("photo_upload", "video_upload", "gallery_view")


class AnalyticsRecorder:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]],
        enabled: bool = True,
        executor: Optional[Executor] = None,
    ):
        self.session_factory = session_factory
        self.enabled = enabled and session_factory is not None
        self._executor = executor

    @classmethod
    def background(cls, session_factory, enabled: bool = True) -> "AnalyticsRecorder":
        return cls(
            session_factory,
            enabled=enabled,
            executor=ThreadPoolExecutor(max_workers=1, thread_name_prefix="analytics"),
        )

    def record(
        self,
        event_type: str,
        event_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        args = (event_type, event_id, properties or {}, user_agent, ip_address)
        if self._executor is None:
            self._write(*args)
            return
        try:
            self._executor.submit(self._write, *args)
        except RuntimeError:
            # executor already shut down
            logger.warning("analytics.dropped", extra={"event_type": event_type})

    def _write(self, event_type, event_id, properties, user_agent, ip_address) -> None:
        db = None
        try:
            db = self.session_factory()
            db.add(
                AnalyticsEvent(
                    EventID=event_id,
                    EventType=event_type,
                    Properties=json.dumps(properties, default=str),
                    UserAgent=(user_agent or "")[:255] or None,
                    IPAddress=(ip_address or "")[:45] or None,
                )
            )
            db.commit()
        except Exception:
            logger.warning(
                "analytics.write_failed",
                extra={"event_type": event_type, "event_id": event_id},
                exc_info=True,
            )
            if db is not None:
                try:
                    db.rollback()
                except Exception:
                    pass
        finally:
            if db is not None:
                db.close()

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
