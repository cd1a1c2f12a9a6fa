"""Cross-channel bridge: hand a session between chat and web, and merge what both channels collected.

Merge is field-level last-writer-wins. Conflicts never block a write; they are written to the
audit log so support can see what was replaced.
"""
import enum
import logging
from urllib.parse import quote, urlencode

from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.models.one_time_code import CodePurpose
from tokoreg.models.registration_session import (
    LIVE_STATUSES,
    REQUIRED_FIELDS,
    Channel,
    RegistrationSession,
    RegistrationStep,
)
from tokoreg.database import utc_now
from tokoreg.services import one_time_codes, sessions
from tokoreg.services.audit_log import create_log, CATEGORY_FAILED_ATTEMPT, CATEGORY_HANDOFF, CATEGORY_MERGE_CONFLICT
from tokoreg.services.identity import mask_identity
from tokoreg.services.results import (
    ErrorKind,
    HandoffAcceptance,
    HandoffArtifact,
    MergeResult,
    storage_guard,
)

log = logging.getLogger("uvicorn.error")

PIN_CONFLICT = "pin_hash: a PIN was already set"


class HandoffDirection(str, enum.Enum):
    to_web = "to_web"
    to_chat = "to_chat"


def merge(existing: dict | None, incoming: dict | None) -> MergeResult:
    """Incoming non-empty values win; a different non-empty existing value is reported as a conflict.

    PIN hashes are never compared or echoed, only flagged as already set.
    """
    merged = dict(existing or {})
    conflicts = []
    for name in REQUIRED_FIELDS:
        new = (incoming or {}).get(name)
        if new is None or not str(new).strip():
            continue
        new = str(new).strip()
        old = str(merged.get(name) or "").strip()
        if name == "pin_hash":
            if old:
                conflicts.append(PIN_CONFLICT)
        elif old and old != new:
            conflicts.append(f"{name}: {old} vs {new}")
        merged[name] = new
    return MergeResult(merged=merged, conflicts=conflicts)


def sync_data(db: Session, session_id: str, channel: str, incoming: dict | None) -> MergeResult | None:
    """Merge incoming fields into the session from channel. None when the session is not writable."""
    channel = getattr(channel, "value", channel)
    with storage_guard(db, "bridge.sync_data"):
        row = sessions.get_session(db, session_id)
        if row is None or row.status not in LIVE_STATUSES or row.expires_at <= utc_now():
            return None
        identity = row.identity
        result = merge(row.collected_fields, incoming)
    if not sessions.sync_from_channel(db, session_id, channel, incoming):
        return None
    if result.conflicts:
        with storage_guard(db, "bridge.log_conflicts"):
            create_log(
                db,
                CATEGORY_MERGE_CONFLICT,
                "Registration fields overwritten",
                "; ".join(result.conflicts),
                identity=identity,
                session_id=session_id,
                channel=channel,
                meta={"fields": [c.split(":", 1)[0] for c in result.conflicts]},
            )
            db.commit()
        log.info("[Bridge] %d field conflict(s) on session %s from %s", len(result.conflicts), session_id, channel)
    return result


def continuation_url(direction: HandoffDirection, identity: str, code: str) -> str:
    settings = get_settings()
    if HandoffDirection(direction) == HandoffDirection.to_web:
        return f"{settings.frontend_url}/verify?" + urlencode({"otp": code, "phone": identity})
    return f"https://wa.me/{settings.chat_bot_number}?text=" + quote(f"VERIFY {code}")


def initiate(db: Session, identity: str, direction: HandoffDirection) -> HandoffArtifact:
    """Ensure a session exists, bind a hybrid_link code to it, and build the continuation artifact."""
    direction = HandoffDirection(direction)
    source = Channel.chat if direction == HandoffDirection.to_web else Channel.web
    handle = sessions.get_or_create_session(db, identity, source)
    target = Channel.web if direction == HandoffDirection.to_web else Channel.chat
    issued = one_time_codes.generate(db, identity, CodePurpose.hybrid_link, handle.session_id, target)
    if direction == HandoffDirection.to_web:
        sessions.update_step(db, handle.session_id, RegistrationStep.verification)
    with storage_guard(db, "bridge.initiate"):
        create_log(
            db,
            CATEGORY_HANDOFF,
            "Hand-off initiated",
            f"Continuation {direction.value} issued for session {handle.session_id}.",
            identity=identity,
            session_id=handle.session_id,
            channel=source.value,
        )
        db.commit()
    log.info("[Bridge] Hand-off %s for %s (session %s)", direction.value, mask_identity(identity), handle.session_id)
    return HandoffArtifact(
        session_id=handle.session_id,
        direction=direction.value,
        code=issued.code,
        url=continuation_url(direction, identity, issued.code),
        expires_at=issued.expires_at,
    )


def _resolve_session(db: Session, source_session_id: str | None, identity: str) -> RegistrationSession | None:
    row = sessions.get_session(db, source_session_id) if source_session_id else None
    if row is not None and row.identity == identity and row.status in LIVE_STATUSES and row.expires_at > utc_now():
        return row
    # The code can outlive its source link (e.g. after a restart); fall back to the live session
    return sessions.find_by_identity(db, identity)


def accept_handoff(db: Session, identity: str, submitted_code: str, target_channel: str) -> HandoffAcceptance:
    """Validate the code, resolve its session, and mark it synced from target_channel.

    Incomplete sessions move to the verification step; complete ones are left ready for completion.
    """
    target_channel = getattr(target_channel, "value", target_channel)
    validation = one_time_codes.validate(db, identity, submitted_code, target_channel)
    if not validation.valid:
        if validation.error_kind in (ErrorKind.mismatch, ErrorKind.attempts_exceeded):
            with storage_guard(db, "bridge.log_failed_code"):
                create_log(
                    db,
                    CATEGORY_FAILED_ATTEMPT,
                    "Verification code rejected",
                    f"Code rejected on {target_channel}: {validation.error_kind.value}.",
                    identity=identity,
                    channel=target_channel,
                    meta={"attempts_remaining": validation.attempts_remaining},
                )
                db.commit()
        return HandoffAcceptance(
            accepted=False, error_kind=validation.error_kind, attempts_remaining=validation.attempts_remaining,
        )

    with storage_guard(db, "bridge.accept_handoff"):
        row = _resolve_session(db, validation.session_id, identity)
        session_id = row.id if row is not None else None
    if session_id is None:
        return HandoffAcceptance(accepted=False, error_kind=ErrorKind.expired)

    if sync_data(db, session_id, target_channel, {}) is None:
        return HandoffAcceptance(accepted=False, error_kind=ErrorKind.expired)
    sessions.mark_active(db, session_id)
    complete = sessions.is_data_complete(db, session_id)
    if not complete:
        sessions.update_step(db, session_id, RegistrationStep.verification)

    with storage_guard(db, "bridge.accept_handoff"):
        row = sessions.get_session(db, session_id)
        step = row.current_step
        create_log(
            db,
            CATEGORY_HANDOFF,
            "Hand-off accepted",
            f"Session {session_id} continued on {target_channel}.",
            identity=identity,
            session_id=session_id,
            channel=target_channel,
            meta={"purpose": validation.purpose, "origin": row.origin_channel},
        )
        db.commit()
    log.info("[Bridge] %s accepted on %s for %s", validation.purpose, target_channel, mask_identity(identity))
    return HandoffAcceptance(accepted=True, session_id=session_id, current_step=step, data_complete=complete)
