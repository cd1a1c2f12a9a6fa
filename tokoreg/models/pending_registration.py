"""Legacy signup stub: created by the wa.me link entry point, claimed on first chat contact."""
from sqlalchemy import Column, Integer, String, DateTime

from tokoreg.database import Base, utc_now


class PendingRegistration(Base):
    __tablename__ = "pending_registrations"

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(20), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
