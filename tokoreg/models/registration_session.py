"""Registration session: the mutable, time-bounded record of an in-progress signup."""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, text

from tokoreg.database import Base, utc_now


class Channel(str, enum.Enum):
    chat = "chat"
    web = "web"
    both = "both"


class RegistrationStep(str, enum.Enum):
    options = "options"
    data_collection = "data_collection"
    verification = "verification"
    completed = "completed"


class SessionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    completed = "completed"
    expired = "expired"


LIVE_STATUSES = (SessionStatus.pending.value, SessionStatus.active.value)

# Canonical question order for the chat flow
REQUIRED_FIELDS = ("store_name", "owner_name", "pin_hash")


def _new_session_id() -> str:
    return str(uuid.uuid4())


class RegistrationSession(Base):
    __tablename__ = "registration_sessions"
    __table_args__ = (
        # At most one pending/active session per identity
        Index(
            "uq_registration_sessions_live_identity",
            "identity",
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
            sqlite_where=text("status IN ('pending', 'active')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_session_id)
    identity = Column(String(20), nullable=False, index=True)

    origin_channel = Column(String(10), nullable=False, default=Channel.chat.value)
    current_step = Column(String(20), nullable=False, default=RegistrationStep.options.value)
    # store_name, owner_name, pin_hash; values are overwritten, never removed
    collected_fields = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=SessionStatus.pending.value, index=True)

    # Bumped on every write; compare-and-set guard for field merges
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False, index=True)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES
