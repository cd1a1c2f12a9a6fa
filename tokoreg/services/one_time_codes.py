"""One-time codes: generate, validate (single use, attempt ceiling), expire.

All state changes are conditional UPDATEs on the code row, so concurrent validators cannot
both consume a code and concurrent wrong guesses each count.
"""
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.database import utc_now
from tokoreg.models.one_time_code import OneTimeCode, CodeStatus
from tokoreg.services.identity import mask_identity
from tokoreg.services.results import CodeValidation, ErrorKind, IssuedCode, storage_guard

log = logging.getLogger("uvicorn.error")

CODE_LENGTH = 6
_GENERATE_RETRIES = 3


def _random_code() -> str:
    return str(secrets.randbelow(10 ** CODE_LENGTH)).zfill(CODE_LENGTH)


def _expire_pending(db: Session, identity: str) -> int:
    return (
        db.query(OneTimeCode)
        .filter(OneTimeCode.identity == identity, OneTimeCode.status == CodeStatus.pending.value)
        .update({OneTimeCode.status: CodeStatus.expired.value}, synchronize_session=False)
    )


def generate(
    db: Session,
    identity: str,
    purpose: str,
    source_session_id: str | None = None,
    target_channel: str | None = None,
) -> IssuedCode:
    """Expire any pending code for identity and issue a fresh one.

    target_channel pins where the code may be redeemed: a code shown on the web must come back
    through chat, and a code sent to chat must be typed on the web.
    """
    settings = get_settings()
    purpose = getattr(purpose, "value", purpose)
    target_channel = getattr(target_channel, "value", target_channel)
    with storage_guard(db, "otp.generate"):
        for attempt in range(_GENERATE_RETRIES):
            now = utc_now()
            _expire_pending(db, identity)
            row = OneTimeCode(
                identity=identity,
                code=_random_code(),
                purpose=purpose,
                source_session_id=source_session_id,
                target_channel=target_channel,
                status=CodeStatus.pending.value,
                attempts=0,
                max_attempts=settings.otp_max_attempts,
                created_at=now,
                expires_at=now + timedelta(minutes=settings.otp_ttl_minutes),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent generate for the same identity won the pending slot; supersede it
                db.rollback()
                if attempt == _GENERATE_RETRIES - 1:
                    raise
                continue
            log.info("[OTP] Issued %s code for %s", purpose, mask_identity(identity))
            return IssuedCode(
                code=row.code,
                expires_at=row.expires_at,
                purpose=row.purpose,
                source_session_id=row.source_session_id,
            )


def _current_pending(db: Session, identity: str) -> OneTimeCode | None:
    return (
        db.query(OneTimeCode)
        .filter(OneTimeCode.identity == identity, OneTimeCode.status == CodeStatus.pending.value)
        .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
        .first()
    )


def _matches(row: OneTimeCode, submitted: str) -> bool:
    return hmac.compare_digest(row.code.encode("utf-8"), submitted.encode("utf-8"))


def _remaining(row: OneTimeCode) -> int:
    return max(row.max_attempts - row.attempts, 0)


def validate(db: Session, identity: str, submitted: str | None, channel: str | None = None) -> CodeValidation:
    """Check a submitted code against the identity's pending code.

    NotFound when no pending code exists (including one already used), Expired past the
    deadline, AttemptsExceeded at the ceiling, Mismatch on a wrong guess (counted). A match
    consumes the code exactly once. A code pinned to another channel than channel is NotFound
    and is left untouched.
    """
    channel = getattr(channel, "value", channel)
    submitted = (submitted or "").strip()
    with storage_guard(db, "otp.validate"):
        now = utc_now()
        row = _current_pending(db, identity)
        if row is None:
            return CodeValidation(valid=False, error_kind=ErrorKind.not_found)
        if channel and row.target_channel and row.target_channel != channel:
            log.info("[OTP] %s code for %s offered on %s", row.target_channel, mask_identity(identity), channel)
            return CodeValidation(valid=False, error_kind=ErrorKind.not_found)
        code_id = row.id

        if row.expires_at <= now:
            db.query(OneTimeCode).filter(
                OneTimeCode.id == code_id,
                OneTimeCode.status == CodeStatus.pending.value,
            ).update({OneTimeCode.status: CodeStatus.expired.value}, synchronize_session=False)
            db.commit()
            return CodeValidation(valid=False, error_kind=ErrorKind.expired, purpose=row.purpose)

        if row.attempts >= row.max_attempts:
            return CodeValidation(
                valid=False, error_kind=ErrorKind.attempts_exceeded, purpose=row.purpose, attempts_remaining=0,
            )

        if not _matches(row, submitted):
            db.query(OneTimeCode).filter(
                OneTimeCode.id == code_id,
                OneTimeCode.status == CodeStatus.pending.value,
            ).update({OneTimeCode.attempts: OneTimeCode.attempts + 1}, synchronize_session=False)
            db.commit()
            db.refresh(row)
            log.info("[OTP] Wrong code for %s (%d/%d)", mask_identity(identity), row.attempts, row.max_attempts)
            if row.attempts >= row.max_attempts:
                return CodeValidation(
                    valid=False, error_kind=ErrorKind.attempts_exceeded, purpose=row.purpose, attempts_remaining=0,
                )
            return CodeValidation(
                valid=False, error_kind=ErrorKind.mismatch, purpose=row.purpose, attempts_remaining=_remaining(row),
            )

        consumed = db.query(OneTimeCode).filter(
            OneTimeCode.id == code_id,
            OneTimeCode.status == CodeStatus.pending.value,
            OneTimeCode.code == submitted,
            OneTimeCode.attempts < OneTimeCode.max_attempts,
            OneTimeCode.expires_at > now,
        ).update(
            {OneTimeCode.status: CodeStatus.used.value, OneTimeCode.used_at: now},
            synchronize_session=False,
        )
        db.commit()
        if consumed == 1:
            log.info("[OTP] Code verified for %s (%s)", mask_identity(identity), row.purpose)
            return CodeValidation(valid=True, session_id=row.source_session_id, purpose=row.purpose)

        # Lost a race with another validator, a wrong guess or the deadline: report what happened
        db.refresh(row)
        if row.status == CodeStatus.used.value:
            kind = ErrorKind.not_found
        elif row.attempts >= row.max_attempts:
            kind = ErrorKind.attempts_exceeded
        else:
            kind = ErrorKind.expired
        return CodeValidation(valid=False, error_kind=kind, purpose=row.purpose, attempts_remaining=_remaining(row))


def pending_status(db: Session, identity: str) -> dict:
    """Summary of the identity's live pending code, for status polling and resend UX."""
    with storage_guard(db, "otp.pending_status"):
        row = _current_pending(db, identity)
        if row is None or row.expires_at <= utc_now():
            return {"has_pending_code": False, "purpose": None, "expires_at": None, "attempts_remaining": None}
        return {
            "has_pending_code": True,
            "purpose": row.purpose,
            "expires_at": row.expires_at,
            "attempts_remaining": _remaining(row),
        }


def expire_stale_codes(db: Session, now: datetime | None = None) -> int:
    """Mark pending codes past their deadline as expired. Caller commits."""
    now = now or utc_now()
    return (
        db.query(OneTimeCode)
        .filter(OneTimeCode.status == CodeStatus.pending.value, OneTimeCode.expires_at <= now)
        .update({OneTimeCode.status: CodeStatus.expired.value}, synchronize_session=False)
    )


def purge_old_codes(db: Session, older_than: datetime) -> int:
    """Delete used/expired codes created before older_than. Caller commits."""
    return (
        db.query(OneTimeCode)
        .filter(
            OneTimeCode.status.in_((CodeStatus.used.value, CodeStatus.expired.value)),
            OneTimeCode.created_at < older_than,
        )
        .delete(synchronize_session=False)
    )
