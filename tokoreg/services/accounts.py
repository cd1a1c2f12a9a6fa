"""Account materialization: the one place an Account row is created or completed.

Both completion paths (session and direct data) go through materialize_account, whose guard is
keyed on identity: a unique index on accounts.identity plus a conditional update that only
touches rows whose registration_completed_at is still NULL.
"""
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tokoreg.database import utc_now
from tokoreg.models.account import Account
from tokoreg.services.results import ErrorKind


def get_account(db: Session, identity: str) -> Account | None:
    return db.query(Account).filter(Account.identity == identity).first()


def is_registered(db: Session, identity: str) -> bool:
    return (
        db.query(Account.id)
        .filter(Account.identity == identity, Account.registration_completed_at.isnot(None))
        .first()
        is not None
    )


def materialize_account(
    db: Session,
    identity: str,
    fields: dict,
    method: str | None,
    now: datetime | None = None,
) -> tuple[Account | None, ErrorKind | None]:
    """Create the Account (or complete an unfinished one) and activate it in the same write.

    Returns (account, None) or (None, DuplicateAccount). Does not commit; on a duplicate the
    transaction has been rolled back.
    """
    now = now or utc_now()
    values = {
        "store_name": fields.get("store_name"),
        "owner_name": fields.get("owner_name"),
        "pin_hash": fields.get("pin_hash"),
        "registration_method": method,
        "is_active": True,
        "onboarding_complete": True,
        "registration_completed_at": now,
        "updated_at": now,
    }

    existing = get_account(db, identity)
    if existing is not None:
        updated = (
            db.query(Account)
            .filter(Account.id == existing.id, Account.registration_completed_at.is_(None))
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            db.rollback()
            return None, ErrorKind.duplicate_account
        db.refresh(existing)
        return existing, None

    account = Account(identity=identity, created_at=now, **values)
    db.add(account)
    try:
        db.flush()
    except IntegrityError:
        # Another completion inserted this identity first
        db.rollback()
        return None, ErrorKind.duplicate_account
    return account, None
