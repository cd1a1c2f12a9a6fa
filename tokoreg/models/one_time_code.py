"""Short-lived numeric codes bound to an identity and a purpose."""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Index, text

from tokoreg.database import Base, utc_now


class CodePurpose(str, enum.Enum):
    initial_verification = "initial_verification"
    web_verification = "web_verification"
    hybrid_link = "hybrid_link"


class CodeStatus(str, enum.Enum):
    pending = "pending"
    used = "used"
    expired = "expired"


class OneTimeCode(Base):
    __tablename__ = "one_time_codes"
    __table_args__ = (
        Index(
            "uq_one_time_codes_pending_identity",
            "identity",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(20), nullable=False, index=True)
    code = Column(String(10), nullable=False)
    purpose = Column(String(30), nullable=False)
    # Back-reference only; the code does not own the session
    source_session_id = Column(String(36), nullable=True)
    # Channel the code must be redeemed on; NULL accepts either
    target_channel = Column(String(10), nullable=True)

    status = Column(String(20), nullable=False, default=CodeStatus.pending.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
