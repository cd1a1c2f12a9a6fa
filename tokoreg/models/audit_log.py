"""Append-only registration audit trail (merge conflicts, completions, failed codes).
No updates or deletes - every record is permanent."""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON

from tokoreg.database import Base, utc_now


class AuditLog(Base):
    __tablename__ = "registration_audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # category: status_change | merge_conflict | failed_attempt | handoff
    category = Column(String(32), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    identity = Column(String(20), nullable=True, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    account_id = Column(Integer, nullable=True)
    channel = Column(String(10), nullable=True)

    # Optional structured data (e.g. conflicting fields, error kind)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
