"""Chat-channel registration flow.

State lives in the session row only: the pending question is next_missing_field, and the
"awaiting option" state is current_step == options. Nothing is kept in process memory, so any
instance can handle the next message.
"""
import logging
import re

from sqlalchemy.orm import Session

from tokoreg.config import get_settings
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.models.registration_session import (
    Channel,
    RegistrationStep,
    SessionStatus,
)
from tokoreg.services import accounts, bridge, completion, sessions
from tokoreg.services import messages as msg
from tokoreg.services.identity import canonicalize, mask_identity
from tokoreg.services.results import (
    ChatReply,
    CompletionOutcome,
    ErrorKind,
    FieldSubmission,
    RegistrationStart,
    StorageUnavailable,
    storage_guard,
)
from tokoreg.services.transport import ChatTransport
from tokoreg.services.validation import prepare_field

log = logging.getLogger("uvicorn.error")

RESTART_COMMANDS = {"RESTART", "ULANG"}
REGISTRATION_COMMANDS = {"DAFTAR", "REGISTER"} | RESTART_COMMANDS
OPTION_CHAT = "1"
OPTION_WEB = "2"
_VERIFY = re.compile(r"^VERIFY\s+(\d{6})$", re.IGNORECASE)
_IN_PROGRESS_STEPS = (RegistrationStep.data_collection.value, RegistrationStep.verification.value)


class ChatFlow:
    def __init__(self, db: Session, transport: ChatTransport):
        self.db = db
        self.transport = transport

    def handle_message(self, identity: str, text: str) -> ChatReply:
        """Route one already-parsed inbound chat message. handled=False means not a registration message."""
        identity = canonicalize(identity)
        text = (text or "").strip()
        try:
            return self._dispatch(identity, text)
        except StorageUnavailable as e:
            log.warning("[ChatFlow] %s for %s", e, mask_identity(identity))
            return self._reply(identity, [msg.TRY_AGAIN])

    def submit_field(self, identity: str, value: str) -> FieldSubmission:
        """Validate value against the next missing field and store it; completes when nothing is missing.

        A missing or expired session yields Expired (or NotFound if none ever existed); a new
        session is never created here. A session handed off to the web is left alone.
        """
        identity = canonicalize(identity)
        row = sessions.find_by_identity(self.db, identity)
        if row is None:
            return FieldSubmission(accepted=False, error_kind=self._why_no_session(identity))

        session_id = row.id
        if row.current_step == RegistrationStep.verification.value:
            # Handed off to the web; only RESTART brings it back to chat
            return FieldSubmission(accepted=False, prompt=msg.FINISH_ON_WEB)
        if row.current_step != RegistrationStep.data_collection.value:
            sessions.mark_active(self.db, session_id)
            sessions.update_step(self.db, session_id, RegistrationStep.data_collection)

        missing = sessions.missing_fields(row.collected_fields)
        if not missing:
            return FieldSubmission(accepted=True, completion=completion.complete_from_session(self.db, session_id))

        field = missing[0]
        prepared, errors = prepare_field(field, value)
        if errors:
            return FieldSubmission(
                accepted=False,
                field_name=field,
                next_field=field,
                prompt=msg.FIELD_PROMPTS[field],
                errors=errors,
                error_kind=ErrorKind.validation_failed,
            )
        if not sessions.update_fields(self.db, session_id, {field: prepared}):
            return FieldSubmission(accepted=False, field_name=field, error_kind=self._why_no_session(identity))

        next_field = sessions.next_missing_field(self.db, session_id)
        if next_field is None:
            outcome = completion.complete_from_session(self.db, session_id)
            return FieldSubmission(accepted=True, field_name=field, completion=outcome)
        return FieldSubmission(
            accepted=True, field_name=field, next_field=next_field, prompt=msg.FIELD_PROMPTS[next_field],
        )

    def _dispatch(self, identity: str, text: str) -> ChatReply:
        command = text.upper()
        verify = _VERIFY.match(text)
        if accounts.is_registered(self.db, identity):
            if command in REGISTRATION_COMMANDS or verify:
                return self._reply(identity, [msg.ALREADY_REGISTERED])
            return ChatReply(handled=False)

        if verify:
            return self._accept_handoff(identity, verify.group(1))
        if command in RESTART_COMMANDS:
            return self._restart(identity)

        row = sessions.find_by_identity(self.db, identity)
        if row is None:
            latest = sessions.latest_for_identity(self.db, identity)
            if latest is not None and latest.current_step in _IN_PROGRESS_STEPS:
                return self._reply(identity, [msg.SESSION_EXPIRED])
            return self._first_contact(identity)

        if row.current_step == RegistrationStep.options.value:
            return self._choose_option(identity, row.id, command)
        if row.current_step == RegistrationStep.data_collection.value:
            return self._collect(identity, text)
        if row.current_step == RegistrationStep.verification.value:
            return self._reply(identity, [msg.FINISH_ON_WEB])
        return self._reply(identity, [msg.ALREADY_REGISTERED])

    def _why_no_session(self, identity: str) -> ErrorKind:
        """Expired when the identity had a session that lapsed, NotFound when there is nothing to resume."""
        latest = sessions.latest_for_identity(self.db, identity)
        if latest is None:
            return ErrorKind.not_found
        if latest.status == SessionStatus.completed.value:
            return ErrorKind.already_completed
        return ErrorKind.expired

    def start(self, identity: str) -> RegistrationStart:
        """First contact: get or create the chat session and send the prompt for where it stands."""
        identity = canonicalize(identity)
        if accounts.is_registered(self.db, identity):
            self.transport.send_text(identity, msg.ALREADY_REGISTERED)
            return RegistrationStart(
                channel=Channel.chat.value, prompt=msg.ALREADY_REGISTERED, error_kind=ErrorKind.already_completed,
            )
        self._claim_pending_registration(identity)
        handle = sessions.get_or_create_session(self.db, identity, Channel.chat)
        if handle.is_new:
            log.info("[ChatFlow] First contact from %s", mask_identity(identity))

        if handle.current_step == RegistrationStep.data_collection.value:
            missing = sessions.missing_fields(handle.collected_fields)
            prompt = msg.FIELD_PROMPTS[missing[0]] if missing else msg.WELCOME
        elif handle.current_step == RegistrationStep.verification.value:
            prompt = msg.FINISH_ON_WEB
        else:
            prompt = msg.WELCOME
        self.transport.send_text(identity, prompt)
        return RegistrationStart(
            channel=Channel.chat.value,
            session_id=handle.session_id,
            is_new=handle.is_new,
            current_step=handle.current_step,
            prompt=prompt,
        )

    def _first_contact(self, identity: str) -> ChatReply:
        started = self.start(identity)
        return ChatReply(handled=True, messages=[started.prompt])

    def _claim_pending_registration(self, identity: str) -> None:
        """Delete the identity's wa.me signup stub, if any; the session replaces it."""
        with storage_guard(self.db, "chat.claim_pending"):
            claimed = (
                self.db.query(PendingRegistration)
                .filter(PendingRegistration.identity == identity)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        if claimed:
            log.info("[ChatFlow] Claimed pending registration for %s", mask_identity(identity))

    def _choose_option(self, identity: str, session_id: str, command: str) -> ChatReply:
        if command == OPTION_CHAT:
            sessions.mark_active(self.db, session_id)
            sessions.update_step(self.db, session_id, RegistrationStep.data_collection)
            field = sessions.next_missing_field(self.db, session_id)
            if field is None:
                return self._completion_reply(identity, completion.complete_from_session(self.db, session_id))
            return self._reply(identity, [msg.FIELD_PROMPTS[field]])
        if command == OPTION_WEB:
            artifact = bridge.initiate(self.db, identity, bridge.HandoffDirection.to_web)
            minutes = get_settings().otp_ttl_minutes
            return self._reply(identity, [msg.CONTINUE_ON_WEB.format(url=artifact.url, minutes=minutes)])
        return self._reply(identity, [msg.OPTIONS_REMINDER])

    def _collect(self, identity: str, text: str) -> ChatReply:
        submission = self.submit_field(identity, text)
        if submission.completion is not None:
            return self._completion_reply(identity, submission.completion)
        if submission.errors:
            return self._reply(identity, [msg.format_errors(submission.errors), submission.prompt])
        if submission.error_kind == ErrorKind.expired:
            return self._reply(identity, [msg.SESSION_EXPIRED])
        if submission.error_kind is not None:
            return self._reply(identity, [msg.error_message(submission.error_kind)])
        return self._reply(identity, [submission.prompt])

    def _accept_handoff(self, identity: str, code: str) -> ChatReply:
        acceptance = bridge.accept_handoff(self.db, identity, code, Channel.chat)
        if not acceptance.accepted:
            return self._reply(
                identity, [msg.error_message(acceptance.error_kind, attempts_remaining=acceptance.attempts_remaining)],
            )
        if acceptance.data_complete:
            return self._completion_reply(identity, completion.complete_from_session(self.db, acceptance.session_id))
        sessions.update_step(self.db, acceptance.session_id, RegistrationStep.data_collection)
        field = sessions.next_missing_field(self.db, acceptance.session_id)
        return self._reply(identity, [msg.HANDOFF_ACCEPTED, msg.FIELD_PROMPTS[field]])

    def _restart(self, identity: str) -> ChatReply:
        sessions.restart_session(self.db, identity, Channel.chat)
        return self._reply(identity, [msg.RESTARTED, msg.WELCOME])

    def _completion_reply(self, identity: str, outcome: CompletionOutcome) -> ChatReply:
        if outcome.success:
            text = msg.COMPLETED.format(owner_name=outcome.account.owner_name, store_name=outcome.account.store_name)
        elif outcome.error_kind == ErrorKind.expired:
            text = msg.SESSION_EXPIRED
        else:
            text = outcome.message
        return self._reply(identity, [text], outcome=outcome)

    def _reply(self, identity: str, texts: list[str], outcome: CompletionOutcome | None = None) -> ChatReply:
        for text in texts:
            self.transport.send_text(identity, text)
        return ChatReply(handled=True, messages=texts, completion=outcome)
