from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from kitchen_sync.database import Base, utcnow
import uuid


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("provider", "provider_account_id"),)

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    provider = Column(String, default="google")
    provider_account_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    # Encrypted at rest, see kitchen_sync.encryption
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(Integer, nullable=True)  # Unix seconds
    token_type = Column(String, nullable=True)
    # age envelope handed to calendarsync, regenerated on demand
    auth_storage = Column(Text, nullable=True)
    auth_storage_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    calendars = relationship("Calendar", back_populates="account", cascade="all, delete-orphan")


class Calendar(Base):
    __tablename__ = "calendars"
    __table_args__ = (UniqueConstraint("account_id", "external_id"),)

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String, nullable=False)  # e.g. the Google calendar id
    summary = Column(String, nullable=False)
    time_zone = Column(String, nullable=False, default="UTC")

    account = relationship("Account", back_populates="calendars")
