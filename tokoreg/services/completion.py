"""Completion coordinator: the only component that materializes an Account.

Credentials come from the same create_access_token used by PIN login.
"""
import logging

from sqlalchemy.orm import Session

from tokoreg.database import utc_now
from tokoreg.models.account import Account
from tokoreg.models.registration_session import SessionStatus
from tokoreg.services import accounts, sessions
from tokoreg.services.audit_log import create_log, CATEGORY_STATUS_CHANGE
from tokoreg.services.auth import create_access_token
from tokoreg.services.identity import mask_identity
from tokoreg.services.messages import describe_missing, error_message
from tokoreg.services.results import CompletionOutcome, ErrorKind, storage_guard

log = logging.getLogger("uvicorn.error")


def _failure(kind: ErrorKind, missing: list[str] | None = None) -> CompletionOutcome:
    missing = missing or []
    return CompletionOutcome(error_kind=kind, missing=missing, message=error_message(kind, missing=missing))


def _success(account: Account) -> CompletionOutcome:
    return CompletionOutcome(
        account=account,
        credential=create_access_token(account.id, account.identity),
        message="Registration complete.",
    )


def complete_from_session(db: Session, session_id: str) -> CompletionOutcome:
    """Validate the session and run the atomic materialize-and-flip; returns a credential on success."""
    with storage_guard(db, "completion.precheck"):
        row = sessions.get_session(db, session_id)
        if row is None:
            return _failure(ErrorKind.not_found)
        if row.status == SessionStatus.completed.value:
            return _failure(ErrorKind.already_completed)
        if row.status == SessionStatus.expired.value or row.expires_at <= utc_now():
            return _failure(ErrorKind.expired)
        missing = sessions.missing_fields(row.collected_fields)
    if missing:
        log.info("[Completion] Session %s incomplete: %s", session_id, ", ".join(describe_missing(missing)))
        return _failure(ErrorKind.incomplete, missing)

    result = sessions.complete_session(db, session_id)
    if not result.success:
        return _failure(result.error_kind, result.missing)

    with storage_guard(db, "completion.load_account"):
        account = db.query(Account).filter(Account.id == result.account_id).first()
    return _success(account)


def complete_with_direct_data(
    db: Session,
    identity: str,
    store_name: str,
    owner_name: str,
    pin_hash: str,
    method: str = "web",
) -> CompletionOutcome:
    """Completion without a session row. Shares the Account-level guard with the session path."""
    fields = {"store_name": store_name, "owner_name": owner_name, "pin_hash": pin_hash}
    missing = sessions.missing_fields(fields)
    if missing:
        return _failure(ErrorKind.incomplete, missing)

    with storage_guard(db, "completion.direct"):
        account, kind = accounts.materialize_account(db, identity, fields, method)
        if kind is not None:
            log.info("[Completion] Direct completion refused: %s already registered", mask_identity(identity))
            return _failure(kind)
        create_log(
            db,
            CATEGORY_STATUS_CHANGE,
            "Registration completed",
            f"Direct completion via {method}.",
            identity=identity,
            account_id=account.id,
            channel=method,
        )
        db.commit()
        db.refresh(account)
    log.info("[Completion] Account %s created directly for %s", account.id, mask_identity(identity))
    return _success(account)
