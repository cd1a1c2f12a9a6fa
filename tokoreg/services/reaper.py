"""Background sweeps: expire overdue sessions and codes, drop unclaimed signup stubs, archive old rows.

Each run is single-flight per process: a trigger that arrives while a run is in progress is
skipped, not queued. Statements are set-based and conditional, so overlapping runs from other
instances only ever touch rows already past their deadline.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tokoreg.database import SessionLocal, utc_now
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.services import one_time_codes, sessions

log = logging.getLogger("uvicorn.error")

CODE_ARCHIVE_DAYS = 7
COMPLETED_SESSION_ARCHIVE_DAYS = 30


@dataclass
class ReaperStats:
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    sessions_expired: int = 0
    codes_expired: int = 0
    stubs_deleted: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None

    def as_dict(self) -> dict:
        return {
            "runs": self.runs,
            "skipped": self.skipped,
            "failures": self.failures,
            "sessions_expired": self.sessions_expired,
            "codes_expired": self.codes_expired,
            "stubs_deleted": self.stubs_deleted,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class SweepResult:
    sessions_expired: int = 0
    codes_expired: int = 0
    stubs_deleted: int = 0


_lock = threading.Lock()
stats = ReaperStats()


def delete_expired_pending_registrations(db: Session, now: datetime) -> int:
    """Drop wa.me signup stubs nobody claimed before their deadline. Caller commits."""
    return (
        db.query(PendingRegistration)
        .filter(PendingRegistration.expires_at <= now)
        .delete(synchronize_session=False)
    )


def sweep(db: Session, now: datetime | None = None) -> SweepResult:
    """One reaper pass in a single transaction."""
    now = now or utc_now()
    result = SweepResult(
        sessions_expired=sessions.expire_stale_sessions(db, now),
        codes_expired=one_time_codes.expire_stale_codes(db, now),
        stubs_deleted=delete_expired_pending_registrations(db, now),
    )
    db.commit()
    return result


def run_registration_reaper_job(session_factory=SessionLocal) -> SweepResult | None:
    """Scheduler entry point. Returns None when another run is already in progress."""
    if not _lock.acquire(blocking=False):
        stats.skipped += 1
        log.info("[Reaper] Previous run still in progress; skipping")
        return None
    try:
        db: Session = session_factory()
        try:
            result = sweep(db)
        except SQLAlchemyError as e:
            db.rollback()
            stats.failures += 1
            stats.last_error = e.__class__.__name__
            log.warning("[Reaper] Sweep failed: %s", e)
            return None
        finally:
            db.close()
        stats.runs += 1
        stats.last_run_at = utc_now()
        stats.last_error = None
        stats.sessions_expired += result.sessions_expired
        stats.codes_expired += result.codes_expired
        stats.stubs_deleted += result.stubs_deleted
        if result.sessions_expired or result.codes_expired or result.stubs_deleted:
            log.info(
                "[Reaper] Expired %d session(s), %d code(s); deleted %d pending registration(s).",
                result.sessions_expired, result.codes_expired, result.stubs_deleted,
            )
        return result
    finally:
        _lock.release()


def run_registration_archival_job(session_factory=SessionLocal) -> dict | None:
    """Daily long-horizon purge of used/expired codes and completed sessions."""
    db: Session = session_factory()
    try:
        now = utc_now()
        codes = one_time_codes.purge_old_codes(db, now - timedelta(days=CODE_ARCHIVE_DAYS))
        completed = sessions.purge_completed_sessions(db, now - timedelta(days=COMPLETED_SESSION_ARCHIVE_DAYS))
        db.commit()
        if codes or completed:
            log.info("[Archival] Purged %d code(s) and %d completed session(s).", codes, completed)
        return {"codes_purged": codes, "sessions_purged": completed}
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("[Archival] Purge failed: %s", e)
        return None
    finally:
        db.close()
