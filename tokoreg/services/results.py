"""Tagged results returned by the registration core.

Components never raise across their boundaries for expected outcomes; they return one of
these records with an ErrorKind. The only exception is StorageUnavailable, raised when the
database itself fails, so callers can retry the whole operation.
"""
from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

log = logging.getLogger("uvicorn.error")


class ErrorKind(str, enum.Enum):
    not_found = "not_found"
    expired = "expired"
    attempts_exceeded = "attempts_exceeded"
    mismatch = "mismatch"
    validation_failed = "validation_failed"
    already_completed = "already_completed"
    duplicate_account = "duplicate_account"
    incomplete = "incomplete"
    storage_unavailable = "storage_unavailable"


# Redundant-but-harmless outcomes: the user is already registered and can log in
ALREADY_REGISTERED_KINDS = (ErrorKind.already_completed, ErrorKind.duplicate_account)


class StorageUnavailable(Exception):
    """Database failed mid-operation; the transaction was rolled back and may be retried."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"storage unavailable during {operation}")


@contextmanager
def storage_guard(db: Session, operation: str):
    """Roll back and raise StorageUnavailable when the database fails inside the block."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("[Storage] %s failed: %s", operation, e.__class__.__name__)
        raise StorageUnavailable(operation, e) from e


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime
    purpose: str
    source_session_id: str | None = None


@dataclass
class CodeValidation:
    valid: bool
    session_id: str | None = None
    purpose: str | None = None
    error_kind: ErrorKind | None = None
    attempts_remaining: int | None = None


@dataclass
class SessionHandle:
    session_id: str
    is_new: bool
    current_step: str
    collected_fields: dict[str, str]
    origin_channel: str
    expires_at: datetime


@dataclass
class StoreCompletion:
    success: bool
    account_id: int | None = None
    error_kind: ErrorKind | None = None
    missing: list[str] = field(default_factory=list)


@dataclass
class CompletionOutcome:
    """Success carries account and credential; failures carry the kind (and missing items for incomplete)."""

    error_kind: ErrorKind | None = None
    account: Any = None
    credential: str | None = None
    missing: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.error_kind is None and self.credential is not None

    @property
    def already_registered(self) -> bool:
        return self.error_kind in ALREADY_REGISTERED_KINDS


@dataclass
class MergeResult:
    merged: dict[str, str]
    conflicts: list[str] = field(default_factory=list)


@dataclass
class HandoffArtifact:
    session_id: str
    direction: str
    code: str
    url: str
    expires_at: datetime


@dataclass
class HandoffAcceptance:
    accepted: bool
    session_id: str | None = None
    current_step: str | None = None
    data_complete: bool = False
    error_kind: ErrorKind | None = None
    attempts_remaining: int | None = None


@dataclass
class FieldSubmission:
    """Outcome of one field-bearing input: a next prompt, validation errors, or a completion."""

    accepted: bool
    field_name: str | None = None
    next_field: str | None = None
    prompt: str | None = None
    errors: list[str] = field(default_factory=list)
    error_kind: ErrorKind | None = None
    completion: CompletionOutcome | None = None


@dataclass
class ChatReply:
    handled: bool
    messages: list[str] = field(default_factory=list)
    completion: CompletionOutcome | None = None


@dataclass
class RegistrationStart:
    channel: str
    session_id: str | None = None
    is_new: bool = False
    current_step: str | None = None
    prompt: str | None = None
    code_sent: bool = False
    code_expires_at: datetime | None = None
    error_kind: ErrorKind | None = None


@dataclass
class WebVerification:
    valid: bool
    session_id: str | None = None
    registration_token: str | None = None
    current_step: str | None = None
    data_complete: bool = False
    error_kind: ErrorKind | None = None
    attempts_remaining: int | None = None


@dataclass
class FormSubmission:
    accepted: bool
    errors: list[str] = field(default_factory=list)
    error_kind: ErrorKind | None = None
    missing: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    completion: CompletionOutcome | None = None


@dataclass
class SessionStatusView:
    has_session: bool
    session_id: str | None = None
    status: str | None = None
    current_step: str | None = None
    origin_channel: str | None = None
    fields_present: dict[str, bool] = field(default_factory=dict)
    expires_at: datetime | None = None
    pending_code: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegistrationStatusView:
    is_registered: bool
    has_active_session: bool
    missing_fields: list[str] = field(default_factory=list)
