"""Registration operations exposed to front-ends (routers, chat adapter).

Thin entry points over the flows, bridge and stores; identities are canonicalized here once.
"""
from datetime import timedelta

from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.database import utc_now
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.models.registration_session import Channel, REQUIRED_FIELDS
from tokoreg.services import accounts, bridge, one_time_codes, sessions
from tokoreg.services.chat_flow import ChatFlow
from tokoreg.services import messages as msg
from tokoreg.services.identity import canonicalize
from tokoreg.services.results import (
    FieldSubmission,
    HandoffArtifact,
    RegistrationStart,
    RegistrationStatusView,
    SessionHandle,
    SessionStatusView,
    WebVerification,
    storage_guard,
)
from tokoreg.services.transport import ChatTransport
from tokoreg.services.web_flow import WebFlow


def start_registration(db: Session, transport: ChatTransport, identity: str, channel: str) -> RegistrationStart:
    """Chat: session + option prompt. Web: session + OTP sent over chat."""
    if Channel(channel) == Channel.chat:
        return ChatFlow(db, transport).start(identity)
    return WebFlow(db, transport).start(identity)


def submit_field(db: Session, transport: ChatTransport, identity: str, value: str) -> FieldSubmission:
    return ChatFlow(db, transport).submit_field(identity, value)


def submit_otp(db: Session, transport: ChatTransport, identity: str, code: str) -> WebVerification:
    return WebFlow(db, transport).verify(identity, code)


def initiate_handoff(db: Session, transport: ChatTransport, identity: str, direction: str) -> HandoffArtifact:
    """Create the continuation artifact. A web link carries a verification code, so it only ever
    travels over chat; the caller gets it back for in-process use but must not show it on the web."""
    identity = canonicalize(identity)
    artifact = bridge.initiate(db, identity, bridge.HandoffDirection(direction))
    if artifact.direction == bridge.HandoffDirection.to_web.value:
        minutes = get_settings().otp_ttl_minutes
        transport.send_text(identity, msg.CONTINUE_ON_WEB.format(url=artifact.url, minutes=minutes))
    return artifact


def restart_registration(db: Session, identity: str, channel: str) -> SessionHandle:
    return sessions.restart_session(db, canonicalize(identity), Channel(channel))


def get_session_status(db: Session, identity: str) -> SessionStatusView:
    identity = canonicalize(identity)
    row = sessions.find_by_identity(db, identity)
    if row is None:
        return SessionStatusView(has_session=False, pending_code=one_time_codes.pending_status(db, identity))
    fields = row.collected_fields or {}
    return SessionStatusView(
        has_session=True,
        session_id=row.id,
        status=row.status,
        current_step=row.current_step,
        origin_channel=row.origin_channel,
        fields_present={name: bool((fields.get(name) or "").strip()) for name in REQUIRED_FIELDS},
        expires_at=row.expires_at,
        pending_code=one_time_codes.pending_status(db, identity),
    )


def get_registration_status(db: Session, identity: str) -> RegistrationStatusView:
    identity = canonicalize(identity)
    with storage_guard(db, "registration.status"):
        registered = accounts.is_registered(db, identity)
    if registered:
        return RegistrationStatusView(is_registered=True, has_active_session=False)
    row = sessions.find_by_identity(db, identity)
    if row is None:
        return RegistrationStatusView(is_registered=False, has_active_session=False, missing_fields=list(REQUIRED_FIELDS))
    return RegistrationStatusView(
        is_registered=False,
        has_active_session=True,
        missing_fields=sessions.missing_fields(row.collected_fields),
    )


def create_whatsapp_link(db: Session, identity: str) -> dict:
    """Legacy entry point: park a short-lived signup stub and return a wa.me link that opens the chat flow.

    The stub is claimed (deleted) on the identity's first chat message, or removed by the reaper.
    """
    settings = get_settings()
    identity = canonicalize(identity)
    now = utc_now()
    expires_at = now + timedelta(minutes=settings.pending_registration_ttl_minutes)
    with storage_guard(db, "registration.whatsapp_link"):
        stub = db.query(PendingRegistration).filter(PendingRegistration.identity == identity).first()
        if stub is None:
            db.add(PendingRegistration(identity=identity, created_at=now, expires_at=expires_at))
        else:
            stub.created_at = now
            stub.expires_at = expires_at
        db.commit()
    return {
        "wa_link": f"https://wa.me/{settings.chat_bot_number}?text=DAFTAR",
        "expires_at": expires_at,
    }
