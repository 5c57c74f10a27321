# Package init for instamoments.models
from .event import Event as Event
from .event import EventContributor as EventContributor
from .logging import AnalyticsEvent as AnalyticsEvent
from .logging import AppErrorLog as AppErrorLog
from .media import Photo as Photo
from .media import Video as Video
from .rate_limit import RateLimitCounter as RateLimitCounter
from .user import Base as Base  # explicit re-export
from .user import User as User
from .user import UserSession as UserSession
