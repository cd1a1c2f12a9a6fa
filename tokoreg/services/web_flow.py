"""Web-channel registration flow: OTP first, then one form for the remaining fields.

The OTP is delivered over the chat transport, so finishing on the web always proves control of
the chat identity. A successful verify mints a registration token that authorizes form writes.
"""
import logging

from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.database import utc_now
from tokoreg.models.one_time_code import CodePurpose
from tokoreg.models.registration_session import Channel, RegistrationStep, SessionStatus
from tokoreg.services import accounts, bridge, completion, one_time_codes, sessions
from tokoreg.services import messages as msg
from tokoreg.services.auth import create_registration_token
from tokoreg.services.identity import canonicalize, mask_identity
from tokoreg.services.results import (
    ErrorKind,
    FormSubmission,
    RegistrationStart,
    WebVerification,
    storage_guard,
)
from tokoreg.services.transport import ChatTransport
from tokoreg.services.validation import prepare_fields

log = logging.getLogger("uvicorn.error")


class WebFlow:
    def __init__(self, db: Session, transport: ChatTransport):
        self.db = db
        self.transport = transport

    def _send_code(self, identity: str, session_id: str, purpose: CodePurpose):
        issued = one_time_codes.generate(self.db, identity, purpose, session_id, Channel.web)
        minutes = get_settings().otp_ttl_minutes
        delivered = self.transport.send_text(identity, msg.OTP_SENT.format(code=issued.code, minutes=minutes))
        if not delivered:
            log.warning("[WebFlow] Verification code for %s could not be delivered", mask_identity(identity))
        return issued, delivered

    def start(self, identity: str) -> RegistrationStart:
        """Get or create the session, move it to verification and send a code to the chat identity."""
        identity = canonicalize(identity)
        if accounts.is_registered(self.db, identity):
            return RegistrationStart(
                channel=Channel.web.value, prompt=msg.ALREADY_REGISTERED, error_kind=ErrorKind.already_completed,
            )
        handle = sessions.get_or_create_session(self.db, identity, Channel.web)
        sessions.update_step(self.db, handle.session_id, RegistrationStep.verification)
        purpose = CodePurpose.initial_verification if handle.is_new else CodePurpose.web_verification
        issued, delivered = self._send_code(identity, handle.session_id, purpose)
        log.info("[WebFlow] Start for %s (session %s, new=%s)", mask_identity(identity), handle.session_id, handle.is_new)
        return RegistrationStart(
            channel=Channel.web.value,
            session_id=handle.session_id,
            is_new=handle.is_new,
            current_step=RegistrationStep.verification.value,
            prompt="Enter the 6-digit code we sent to your WhatsApp.",
            code_sent=delivered,
            code_expires_at=issued.expires_at,
        )

    def resend(self, identity: str) -> RegistrationStart:
        """New code for the live session; the previous code stops working."""
        identity = canonicalize(identity)
        if accounts.is_registered(self.db, identity):
            return RegistrationStart(
                channel=Channel.web.value, prompt=msg.ALREADY_REGISTERED, error_kind=ErrorKind.already_completed,
            )
        row = sessions.find_by_identity(self.db, identity)
        if row is None:
            latest = sessions.latest_for_identity(self.db, identity)
            kind = ErrorKind.expired if latest is not None else ErrorKind.not_found
            return RegistrationStart(channel=Channel.web.value, prompt=msg.error_message(kind), error_kind=kind)
        session_id = row.id
        issued, delivered = self._send_code(identity, session_id, CodePurpose.web_verification)
        return RegistrationStart(
            channel=Channel.web.value,
            session_id=session_id,
            current_step=row.current_step,
            prompt="A new code has been sent.",
            code_sent=delivered,
            code_expires_at=issued.expires_at,
        )

    def verify(self, identity: str, code: str) -> WebVerification:
        """Validate a web or hand-off code and mint a registration token for the resolved session."""
        identity = canonicalize(identity)
        acceptance = bridge.accept_handoff(self.db, identity, code, Channel.web)
        if not acceptance.accepted:
            return WebVerification(
                valid=False, error_kind=acceptance.error_kind, attempts_remaining=acceptance.attempts_remaining,
            )
        return WebVerification(
            valid=True,
            session_id=acceptance.session_id,
            registration_token=create_registration_token(identity, acceptance.session_id),
            current_step=acceptance.current_step,
            data_complete=acceptance.data_complete,
        )

    def submit_form(
        self,
        session_id: str,
        identity: str,
        store_name: str | None = None,
        owner_name: str | None = None,
        pin: str | None = None,
    ) -> FormSubmission:
        """Validate every supplied field at once, merge them in, and complete once nothing is missing.

        Partial submissions are fine; omitted fields keep whatever either channel already stored.
        """
        identity = canonicalize(identity)
        with storage_guard(self.db, "web.submit_form"):
            row = sessions.get_session(self.db, session_id)
            if row is None or row.identity != identity:
                return FormSubmission(accepted=False, error_kind=ErrorKind.not_found)
            if row.status == SessionStatus.completed.value:
                return FormSubmission(accepted=False, error_kind=ErrorKind.already_completed)
            if row.status == SessionStatus.expired.value or row.expires_at <= utc_now():
                return FormSubmission(accepted=False, error_kind=ErrorKind.expired)

        prepared, errors = prepare_fields({"store_name": store_name, "owner_name": owner_name, "pin_hash": pin})
        if errors:
            return FormSubmission(accepted=False, errors=errors, error_kind=ErrorKind.validation_failed)

        merged = bridge.sync_data(self.db, session_id, Channel.web, prepared)
        if merged is None:
            return FormSubmission(accepted=False, error_kind=ErrorKind.expired)

        with storage_guard(self.db, "web.submit_form"):
            row = sessions.get_session(self.db, session_id)
            missing = sessions.missing_fields(row.collected_fields)
        if missing:
            return FormSubmission(accepted=True, missing=missing, conflicts=merged.conflicts)

        outcome = completion.complete_from_session(self.db, session_id)
        if outcome.success:
            self.notify_chat_completion(identity, outcome.account.owner_name)
        return FormSubmission(accepted=outcome.success, error_kind=outcome.error_kind, conflicts=merged.conflicts,
                              missing=outcome.missing, completion=outcome)

    def notify_chat_completion(self, identity: str, owner_name: str | None) -> None:
        """Tell the chat side the web finished, so it does not wait on a verification that already happened."""
        self.transport.send_text(identity, msg.COMPLETED_ON_WEB.format(owner_name=owner_name or "there"))
