"""Chat flow: option prompt, question-by-question collection, hand-off codes, restart."""
from datetime import timedelta

import pytest
from freezegun import freeze_time

from tokoreg.models.account import Account
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.models.registration_session import Channel, RegistrationStep, SessionStatus
from tokoreg.services import bridge, registration, sessions
from tokoreg.services import messages as msg
from tokoreg.services.chat_flow import ChatFlow
from tokoreg.services.results import ErrorKind

from conftest import IDENTITY, PHONE


@pytest.fixture
def chat(db_session, transport):
    return ChatFlow(db_session, transport)


def _live(db):
    return sessions.find_by_identity(db, IDENTITY)


@pytest.mark.integration
class TestConversation:
    def test_first_contact_sends_options(self, chat, db_session, transport):
        reply = chat.handle_message(PHONE, "halo")
        assert reply.handled
        assert reply.messages == [msg.WELCOME]
        assert transport.outbox == [(IDENTITY, msg.WELCOME)]

        row = _live(db_session)
        assert row.origin_channel == Channel.chat.value
        assert row.current_step == RegistrationStep.options.value

    def test_unknown_option_reminds(self, chat):
        chat.handle_message(PHONE, "halo")
        assert chat.handle_message(PHONE, "3").messages == [msg.OPTIONS_REMINDER]

    def test_full_registration_in_chat(self, chat, db_session):
        chat.handle_message(PHONE, "DAFTAR")
        assert chat.handle_message(PHONE, "1").messages == [msg.FIELD_PROMPTS["store_name"]]
        row = _live(db_session)
        assert (row.status, row.current_step) == (SessionStatus.active.value, RegistrationStep.data_collection.value)

        assert chat.handle_message(PHONE, "Warung Berkah").messages == [msg.FIELD_PROMPTS["owner_name"]]
        assert chat.handle_message(PHONE, "Siti Aminah").messages == [msg.FIELD_PROMPTS["pin_hash"]]

        rejected = chat.handle_message(PHONE, "123456")
        assert "sequence" in rejected.messages[0]
        assert rejected.messages[1] == msg.FIELD_PROMPTS["pin_hash"]

        done = chat.handle_message(PHONE, "112233")
        assert done.completion.success
        assert done.messages == [msg.COMPLETED.format(owner_name="Siti Aminah", store_name="Warung Berkah")]
        assert db_session.query(Account).one().registration_method == Channel.chat.value

    def test_invalid_answer_reprompts_same_question(self, chat):
        chat.handle_message(PHONE, "halo")
        chat.handle_message(PHONE, "1")
        reply = chat.handle_message(PHONE, "ab")
        assert "at least 3" in reply.messages[0]
        assert reply.messages[1] == msg.FIELD_PROMPTS["store_name"]

    def test_registered_identity(self, chat, db_session, complete_fields):
        handle = sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
        sessions.update_fields(db_session, handle.session_id, complete_fields)
        sessions.complete_session(db_session, handle.session_id)

        assert chat.handle_message(PHONE, "daftar").messages == [msg.ALREADY_REGISTERED]
        assert chat.handle_message(PHONE, "VERIFY 123456").messages == [msg.ALREADY_REGISTERED]
        assert chat.handle_message(PHONE, "how do I restock?").handled is False

    def test_option_two_hands_off_to_web(self, chat, db_session):
        chat.handle_message(PHONE, "halo")
        reply = chat.handle_message(PHONE, "2")
        assert "https://daftar.example.com/verify?otp=" in reply.messages[0]
        assert _live(db_session).current_step == RegistrationStep.verification.value
        assert chat.handle_message(PHONE, "hello?").messages == [msg.FINISH_ON_WEB]


@pytest.mark.integration
class TestExpiryAndRestart:
    def test_expired_mid_collection(self, chat, db_session):
        with freeze_time("2026-03-02 08:00:00") as frozen:
            chat.handle_message(PHONE, "halo")
            chat.handle_message(PHONE, "1")
            chat.handle_message(PHONE, "Warung Berkah")
            frozen.tick(timedelta(minutes=31))

            assert chat.handle_message(PHONE, "Siti Aminah").messages == [msg.SESSION_EXPIRED]
            assert _live(db_session) is None

            restarted = chat.handle_message(PHONE, "RESTART")
            assert restarted.messages == [msg.RESTARTED, msg.WELCOME]
            row = _live(db_session)
            assert row.collected_fields == {}
            assert row.current_step == RegistrationStep.options.value

    def test_restart_discards_live_session(self, chat, db_session):
        chat.handle_message(PHONE, "halo")
        chat.handle_message(PHONE, "1")
        chat.handle_message(PHONE, "Warung Berkah")
        old_id = _live(db_session).id

        chat.handle_message(PHONE, "ulang")
        assert _live(db_session).id != old_id
        assert sessions.get_session(db_session, old_id).status == SessionStatus.expired.value


@pytest.mark.integration
class TestHandoffIntoChat:
    def test_verify_code_continues_web_session(self, chat, db_session, pending_code):
        artifact = bridge.initiate(db_session, IDENTITY, bridge.HandoffDirection.to_chat)
        sessions.update_fields(db_session, artifact.session_id, {"store_name": "Warung Berkah"})

        reply = chat.handle_message(PHONE, f"VERIFY {artifact.code}")
        assert reply.messages == [msg.HANDOFF_ACCEPTED, msg.FIELD_PROMPTS["owner_name"]]
        row = _live(db_session)
        assert row.id == artifact.session_id
        assert row.origin_channel == Channel.both.value
        assert row.current_step == RegistrationStep.data_collection.value
        assert pending_code() is None

        assert chat.handle_message(PHONE, "Siti Aminah").messages == [msg.FIELD_PROMPTS["pin_hash"]]

    def test_verify_completes_when_data_already_complete(self, chat, db_session, complete_fields):
        artifact = bridge.initiate(db_session, IDENTITY, bridge.HandoffDirection.to_chat)
        sessions.update_fields(db_session, artifact.session_id, complete_fields)
        reply = chat.handle_message(PHONE, f"verify {artifact.code}")
        assert reply.completion.success
        assert reply.completion.account.registration_method == Channel.both.value

    def test_wrong_verify_code(self, chat, db_session):
        artifact = bridge.initiate(db_session, IDENTITY, bridge.HandoffDirection.to_chat)
        wrong = "000000" if artifact.code != "000000" else "999999"
        reply = chat.handle_message(PHONE, f"VERIFY {wrong}")
        assert reply.messages == [msg.error_message(ErrorKind.mismatch, attempts_remaining=2)]


@pytest.mark.integration
class TestSubmitField:
    def test_no_session(self, chat):
        assert chat.submit_field(PHONE, "Warung Berkah").error_kind == ErrorKind.not_found

    def test_after_completion(self, chat, db_session, complete_fields):
        handle = sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
        sessions.update_fields(db_session, handle.session_id, complete_fields)
        sessions.complete_session(db_session, handle.session_id)
        assert chat.submit_field(PHONE, "Warung Berkah").error_kind == ErrorKind.already_completed

    def test_never_creates_a_session(self, chat, db_session):
        chat.submit_field(PHONE, "Warung Berkah")
        assert sessions.latest_for_identity(db_session, IDENTITY) is None

    def test_accepts_and_points_to_next_field(self, chat, db_session):
        sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
        result = chat.submit_field(PHONE, "Warung Berkah")
        assert result.accepted
        assert (result.field_name, result.next_field) == ("store_name", "owner_name")
        assert _live(db_session).current_step == RegistrationStep.data_collection.value

    def test_refuses_session_handed_off_to_web(self, chat, db_session):
        chat.handle_message(PHONE, "DAFTAR")
        chat.handle_message(PHONE, "2")
        assert _live(db_session).current_step == RegistrationStep.verification.value

        result = chat.submit_field(PHONE, "Warung Berkah")
        assert not result.accepted
        assert result.prompt == msg.FINISH_ON_WEB
        assert chat.handle_message(PHONE, "Warung Berkah").messages == [msg.FINISH_ON_WEB]

        row = _live(db_session)
        assert row.current_step == RegistrationStep.verification.value
        assert row.collected_fields == {}


@pytest.mark.integration
def test_first_message_claims_whatsapp_link_stub(chat, db_session):
    link = registration.create_whatsapp_link(db_session, PHONE)
    assert link["wa_link"] == "https://wa.me/6281100000000?text=DAFTAR"
    assert db_session.query(PendingRegistration).count() == 1

    chat.handle_message(PHONE, "DAFTAR")
    assert db_session.query(PendingRegistration).count() == 0
    assert _live(db_session) is not None
