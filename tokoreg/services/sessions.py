"""Registration session store.

Owns the authoritative session row per identity. Concurrency relies on the database only:
- a partial unique index keeps one pending/active session per identity (get-or-create converges
  on the winner's row after an IntegrityError);
- field and step writes are compare-and-set on the version column, retried a few times;
- completion flips status with a conditional UPDATE that re-checks liveness and expiry, and
  materializes the Account in the same transaction.

Every mutating write slides expires_at forward, capped at created_at + max lifetime.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.database import utc_now
from tokoreg.models.registration_session import (
    LIVE_STATUSES,
    REQUIRED_FIELDS,
    Channel,
    RegistrationSession,
    RegistrationStep,
    SessionStatus,
)
from tokoreg.services import accounts
from tokoreg.services.audit_log import create_log, CATEGORY_STATUS_CHANGE
from tokoreg.services.identity import mask_identity
from tokoreg.services.results import ErrorKind, SessionHandle, StoreCompletion, StorageUnavailable, storage_guard

log = logging.getLogger("uvicorn.error")

_CREATE_RETRIES = 3
_CAS_RETRIES = 5


def _value(v) -> str:
    return getattr(v, "value", v)


def _expiry_for(created_at: datetime, now: datetime) -> datetime:
    settings = get_settings()
    sliding = now + timedelta(minutes=settings.session_ttl_minutes)
    ceiling = created_at + timedelta(minutes=settings.session_max_lifetime_minutes)
    return min(sliding, ceiling)


def _clean_fields(partial: dict | None) -> dict[str, str]:
    """Keep only known fields with non-empty string values."""
    clean = {}
    for key, value in (partial or {}).items():
        if key not in REQUIRED_FIELDS or value is None:
            continue
        value = str(value).strip()
        if value:
            clean[key] = value
    return clean


def missing_fields(fields: dict | None) -> list[str]:
    """Required fields not yet set, in canonical question order."""
    fields = fields or {}
    return [name for name in REQUIRED_FIELDS if not (fields.get(name) or "").strip()]


def to_handle(row: RegistrationSession, is_new: bool = False) -> SessionHandle:
    return SessionHandle(
        session_id=row.id,
        is_new=is_new,
        current_step=row.current_step,
        collected_fields=dict(row.collected_fields or {}),
        origin_channel=row.origin_channel,
        expires_at=row.expires_at,
    )


def get_session(db: Session, session_id: str) -> RegistrationSession | None:
    if not session_id:
        return None
    return (
        db.query(RegistrationSession)
        .filter(RegistrationSession.id == session_id)
        .populate_existing()
        .first()
    )


def find_by_identity(db: Session, identity: str) -> RegistrationSession | None:
    """Most recent pending/active session that has not passed its deadline."""
    with storage_guard(db, "sessions.find_by_identity"):
        return (
            db.query(RegistrationSession)
            .filter(
                RegistrationSession.identity == identity,
                RegistrationSession.status.in_(LIVE_STATUSES),
                RegistrationSession.expires_at > utc_now(),
            )
            .order_by(RegistrationSession.created_at.desc())
            .populate_existing()
            .first()
        )


def latest_for_identity(db: Session, identity: str) -> RegistrationSession | None:
    """Most recent session in any status; tells 'expired' apart from 'never started'."""
    with storage_guard(db, "sessions.latest_for_identity"):
        return (
            db.query(RegistrationSession)
            .filter(RegistrationSession.identity == identity)
            .order_by(RegistrationSession.created_at.desc())
            .populate_existing()
            .first()
        )


def _expire_overdue_for_identity(db: Session, identity: str, now: datetime) -> int:
    return (
        db.query(RegistrationSession)
        .filter(
            RegistrationSession.identity == identity,
            RegistrationSession.status.in_(LIVE_STATUSES),
            RegistrationSession.expires_at <= now,
        )
        .update(
            {
                RegistrationSession.status: SessionStatus.expired.value,
                RegistrationSession.updated_at: now,
                RegistrationSession.version: RegistrationSession.version + 1,
            },
            synchronize_session=False,
        )
    )


def _live_row(db: Session, identity: str) -> RegistrationSession | None:
    return (
        db.query(RegistrationSession)
        .filter(RegistrationSession.identity == identity, RegistrationSession.status.in_(LIVE_STATUSES))
        .order_by(RegistrationSession.created_at.desc())
        .populate_existing()
        .first()
    )


def get_or_create_session(db: Session, identity: str, channel: str) -> SessionHandle:
    """Return the identity's live session unchanged, or create one at step=options, status=pending.

    Concurrent callers for the same identity converge on one row.
    """
    settings = get_settings()
    channel = _value(channel)
    with storage_guard(db, "sessions.get_or_create"):
        for _ in range(_CREATE_RETRIES):
            now = utc_now()
            if _expire_overdue_for_identity(db, identity, now):
                log.info("[Sessions] Expired overdue session for %s", mask_identity(identity))
            existing = _live_row(db, identity)
            if existing is not None:
                db.commit()
                return to_handle(existing, is_new=False)

            row = RegistrationSession(
                id=str(uuid.uuid4()),
                identity=identity,
                origin_channel=channel,
                current_step=RegistrationStep.options.value,
                collected_fields={},
                status=SessionStatus.pending.value,
                version=1,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(minutes=settings.session_ttl_minutes),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race to another creator; loop back and pick up its row
                db.rollback()
                continue
            log.info("[Sessions] Created session %s for %s via %s", row.id, mask_identity(identity), channel)
            return to_handle(row, is_new=True)
    raise StorageUnavailable("sessions.get_or_create")


def _write(
    db: Session,
    session_id: str,
    build: Callable[[RegistrationSession, datetime], dict],
    operation: str,
) -> bool:
    """Compare-and-set write on a live, unexpired session. False when the session is gone,
    terminal or past its deadline, or when every retry lost to a concurrent writer."""
    with storage_guard(db, operation):
        for _ in range(_CAS_RETRIES):
            now = utc_now()
            row = get_session(db, session_id)
            if row is None or row.status not in LIVE_STATUSES or row.expires_at <= now:
                db.rollback()
                return False
            seen_version = row.version
            values = build(row, now)
            values.update({
                RegistrationSession.version: seen_version + 1,
                RegistrationSession.updated_at: now,
                RegistrationSession.expires_at: _expiry_for(row.created_at, now),
            })
            updated = (
                db.query(RegistrationSession)
                .filter(
                    RegistrationSession.id == session_id,
                    RegistrationSession.version == seen_version,
                    RegistrationSession.status.in_(LIVE_STATUSES),
                    RegistrationSession.expires_at > now,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            if updated == 1:
                return True
        log.warning("[Sessions] %s gave up on %s after %d concurrent writes", operation, session_id, _CAS_RETRIES)
        return False


def update_fields(db: Session, session_id: str, partial_fields: dict | None) -> bool:
    """Overwrite the given non-empty fields; absent or empty ones are ignored."""
    clean = _clean_fields(partial_fields)

    def build(row, now):
        if not clean:
            return {}
        merged = dict(row.collected_fields or {})
        merged.update(clean)
        return {RegistrationSession.collected_fields: merged}

    return _write(db, session_id, build, "sessions.update_fields")


def update_step(db: Session, session_id: str, step: str) -> bool:
    step = _value(step)
    return _write(db, session_id, lambda row, now: {RegistrationSession.current_step: step}, "sessions.update_step")


def mark_active(db: Session, session_id: str) -> bool:
    return _write(
        db,
        session_id,
        lambda row, now: {RegistrationSession.status: SessionStatus.active.value},
        "sessions.mark_active",
    )


def mark_expired(db: Session, session_id: str) -> bool:
    """pending/active -> expired. Expiring a completed (or already expired) session is a no-op."""
    with storage_guard(db, "sessions.mark_expired"):
        now = utc_now()
        updated = (
            db.query(RegistrationSession)
            .filter(RegistrationSession.id == session_id, RegistrationSession.status.in_(LIVE_STATUSES))
            .update(
                {
                    RegistrationSession.status: SessionStatus.expired.value,
                    RegistrationSession.updated_at: now,
                    RegistrationSession.version: RegistrationSession.version + 1,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated == 1


def sync_from_channel(db: Session, session_id: str, channel: str, partial_fields: dict | None) -> bool:
    """Apply incoming fields (incoming wins per field) and upgrade origin to 'both' when a
    different channel touches the session."""
    channel = _value(channel)
    clean = _clean_fields(partial_fields)

    def build(row, now):
        values = {}
        if clean:
            merged = dict(row.collected_fields or {})
            merged.update(clean)
            values[RegistrationSession.collected_fields] = merged
        if row.origin_channel != channel and row.origin_channel != Channel.both.value:
            values[RegistrationSession.origin_channel] = Channel.both.value
        return values

    return _write(db, session_id, build, "sessions.sync_from_channel")


def is_data_complete(db: Session, session_id: str) -> bool:
    with storage_guard(db, "sessions.is_data_complete"):
        row = get_session(db, session_id)
        return row is not None and not missing_fields(row.collected_fields)


def next_missing_field(db: Session, session_id: str) -> str | None:
    """First unset field in store_name, owner_name, pin_hash order; None when complete."""
    with storage_guard(db, "sessions.next_missing_field"):
        row = get_session(db, session_id)
        if row is None:
            return None
        missing = missing_fields(row.collected_fields)
        return missing[0] if missing else None


def _classify_terminal(row: RegistrationSession | None, now: datetime) -> ErrorKind | None:
    if row is None:
        return ErrorKind.not_found
    if row.status == SessionStatus.completed.value:
        return ErrorKind.already_completed
    if row.status == SessionStatus.expired.value or row.expires_at <= now:
        return ErrorKind.expired
    return None


def complete_session(db: Session, session_id: str) -> StoreCompletion:
    """Single-winner transition to completed, with the Account written in the same transaction.

    Any failure rolls back and leaves the session unchanged.
    """
    with storage_guard(db, "sessions.complete_session"):
        now = utc_now()
        row = get_session(db, session_id)
        kind = _classify_terminal(row, now)
        if kind is not None:
            db.rollback()
            return StoreCompletion(success=False, error_kind=kind)

        identity = row.identity
        fields = dict(row.collected_fields or {})
        method = row.origin_channel
        missing = missing_fields(fields)
        if missing:
            db.rollback()
            return StoreCompletion(success=False, error_kind=ErrorKind.incomplete, missing=missing)

        flipped = (
            db.query(RegistrationSession)
            .filter(
                RegistrationSession.id == session_id,
                RegistrationSession.status.in_(LIVE_STATUSES),
                RegistrationSession.expires_at > now,
            )
            .update(
                {
                    RegistrationSession.status: SessionStatus.completed.value,
                    RegistrationSession.current_step: RegistrationStep.completed.value,
                    RegistrationSession.updated_at: now,
                    RegistrationSession.version: RegistrationSession.version + 1,
                },
                synchronize_session=False,
            )
        )
        if flipped != 1:
            # Another completer or the reaper got there first
            db.rollback()
            kind = _classify_terminal(get_session(db, session_id), now) or ErrorKind.already_completed
            return StoreCompletion(success=False, error_kind=kind)

        account, kind = accounts.materialize_account(db, identity, fields, method, now)
        if kind is not None:
            db.rollback()
            log.info("[Sessions] Completion of %s refused: %s already registered", session_id, mask_identity(identity))
            return StoreCompletion(success=False, error_kind=kind)

        create_log(
            db,
            CATEGORY_STATUS_CHANGE,
            "Registration completed",
            f"Session {session_id} completed via {method}.",
            identity=identity,
            session_id=session_id,
            account_id=account.id,
            channel=method,
        )
        db.commit()
        log.info("[Sessions] Session %s completed; account %s for %s", session_id, account.id, mask_identity(identity))
        return StoreCompletion(success=True, account_id=account.id)


def restart_session(db: Session, identity: str, channel: str) -> SessionHandle:
    """Explicit expire-then-create; never mutates the old session's data."""
    with storage_guard(db, "sessions.restart"):
        now = utc_now()
        expired = (
            db.query(RegistrationSession)
            .filter(RegistrationSession.identity == identity, RegistrationSession.status.in_(LIVE_STATUSES))
            .update(
                {
                    RegistrationSession.status: SessionStatus.expired.value,
                    RegistrationSession.updated_at: now,
                    RegistrationSession.version: RegistrationSession.version + 1,
                },
                synchronize_session=False,
            )
        )
        db.commit()
    if expired:
        log.info("[Sessions] Restart for %s expired %d session(s)", mask_identity(identity), expired)
    return get_or_create_session(db, identity, channel)


def expire_stale_sessions(db: Session, now: datetime | None = None) -> int:
    """pending/active sessions past expires_at -> expired. Caller commits."""
    now = now or utc_now()
    return (
        db.query(RegistrationSession)
        .filter(RegistrationSession.status.in_(LIVE_STATUSES), RegistrationSession.expires_at <= now)
        .update(
            {
                RegistrationSession.status: SessionStatus.expired.value,
                RegistrationSession.updated_at: now,
                RegistrationSession.version: RegistrationSession.version + 1,
            },
            synchronize_session=False,
        )
    )


def purge_completed_sessions(db: Session, older_than: datetime) -> int:
    """Delete completed sessions last touched before older_than. Caller commits."""
    return (
        db.query(RegistrationSession)
        .filter(
            RegistrationSession.status == SessionStatus.completed.value,
            RegistrationSession.updated_at < older_than,
        )
        .delete(synchronize_session=False)
    )


def session_counts(db: Session) -> dict[str, int]:
    rows = (
        db.query(RegistrationSession.status, func.count(RegistrationSession.id))
        .group_by(RegistrationSession.status)
        .all()
    )
    counts = {status.value: 0 for status in SessionStatus}
    counts.update({status: count for status, count in rows})
    return counts
