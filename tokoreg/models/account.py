"""Account: the materialized store-owner record created by registration."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean

from tokoreg.database import Base, utc_now


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    # Canonical identity key; unique so two completion paths cannot both insert
    identity = Column(String(20), unique=True, index=True, nullable=False)

    store_name = Column(String(100), nullable=True)
    owner_name = Column(String(100), nullable=True)
    pin_hash = Column(String(255), nullable=True)

    registration_method = Column(String(10), nullable=True)  # chat | web | both
    is_active = Column(Boolean, default=False, nullable=False)
    onboarding_complete = Column(Boolean, default=False, nullable=False)
    registration_completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=True, onupdate=utc_now)
