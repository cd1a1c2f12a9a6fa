"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; no migration scripts needed for fresh installs.
"""
from tokoreg.models.account import Account
from tokoreg.models.registration_session import RegistrationSession
from tokoreg.models.one_time_code import OneTimeCode
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.models.audit_log import AuditLog

__all__ = [
    "Account",
    "RegistrationSession",
    "OneTimeCode",
    "PendingRegistration",
    "AuditLog",
]
