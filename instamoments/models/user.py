import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    __tablename__ = "Users"
    UserID = Column(Integer, primary_key=True, autoincrement=True)
    Email = Column(String(255), nullable=False, unique=True)
    DisplayName = Column(String(100), nullable=True)
    IsActive = Column(Boolean, default=True)
    DateCreated = Column(DateTime, server_default=func.now())
    LastUpdated = Column(DateTime, server_default=func.now(), onupdate=func.now())


class UserSession(Base):
    __tablename__ = "UserSession"
    SessionID = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    ExpiresAt = Column(DateTime, nullable=True)
    IsActive = Column(Boolean, default=True)
    LastSeen = Column(DateTime, server_default=func.now())
    IPAddress = Column(String(45), nullable=True)
    UserAgent = Column(String(255), nullable=True)
