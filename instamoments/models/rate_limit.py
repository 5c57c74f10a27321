from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from instamoments.models.user import Base


class RateLimitCounter(Base):
    __tablename__ = "RateLimitCounter"

    Key = Column(String(255), primary_key=True)
    WindowStart = Column(DateTime, nullable=False)
    ResetAt = Column(DateTime, nullable=False)
    Count = Column(Integer, nullable=False, default=0)
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())
