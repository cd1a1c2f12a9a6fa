"""Append-only registration audit log: status changes, hand-offs, merge conflicts, rejected codes.

Rows are never updated or deleted. create_log only flushes; the caller commits, so the entry
lands in the same transaction as the change it describes.
"""
from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from tokoreg.models.audit_log import AuditLog

CATEGORY_STATUS_CHANGE = "status_change"
CATEGORY_MERGE_CONFLICT = "merge_conflict"
CATEGORY_FAILED_ATTEMPT = "failed_attempt"
CATEGORY_HANDOFF = "handoff"

# Column limits (match model)
_LIMITS = {"category": 32, "title": 255, "message": 10_000, "identity": 20, "channel": 10}


def _jsonable(value: Any) -> Any:
    """Enums to their value, dates to ISO strings, containers recursively; anything else via str()."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return str(value)


def _clip(name: str, value: str | None) -> str | None:
    value = (value or "").strip()[:_LIMITS[name]]
    return value or None


def create_log(
    db: Session,
    category: str,
    title: str,
    message: str,
    *,
    identity: str | None = None,
    session_id: str | None = None,
    account_id: int | None = None,
    channel: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        category=_clip("category", category) or CATEGORY_STATUS_CHANGE,
        title=_clip("title", title) or "-",
        message=_clip("message", message) or "-",
        identity=_clip("identity", identity),
        session_id=session_id,
        account_id=account_id,
        channel=_clip("channel", _jsonable(channel)),
        meta=_jsonable(meta) if meta is not None else None,
    )
    db.add(entry)
    db.flush()
    return entry
