"""End-to-end registration scenarios through the operations layer."""
from datetime import timedelta

import pytest
from freezegun import freeze_time

from tokoreg.models.account import Account
from tokoreg.models.registration_session import Channel, SessionStatus
from tokoreg.services import completion, registration, sessions
from tokoreg.services import messages as msg
from tokoreg.services.results import ErrorKind
from tokoreg.services.validation import prepare_field
from tokoreg.services.web_flow import WebFlow

from conftest import IDENTITY, PHONE


@pytest.mark.integration
def test_single_channel_chat(db_session, transport):
    started = registration.start_registration(db_session, transport, PHONE, Channel.chat)
    assert started.is_new

    assert registration.submit_field(db_session, transport, PHONE, "Toko Sembako Makmur").next_field == "owner_name"
    assert registration.submit_field(db_session, transport, PHONE, "Budi Santoso").next_field == "pin_hash"
    result = registration.submit_field(db_session, transport, PHONE, "947382")

    assert result.completion.success
    assert result.completion.credential
    account = db_session.query(Account).one()
    assert account.registration_completed_at is not None
    assert account.store_name == "Toko Sembako Makmur"


@pytest.mark.integration
def test_expired_session_rejects_fields(db_session, transport):
    with freeze_time("2026-03-02 08:00:00") as frozen:
        started = registration.start_registration(db_session, transport, PHONE, Channel.chat)
        frozen.tick(timedelta(minutes=31))
        result = registration.submit_field(db_session, transport, PHONE, "Toko Sembako Makmur")

    assert not result.accepted
    assert result.error_kind == ErrorKind.expired
    assert sessions.get_session(db_session, started.session_id).collected_fields == {}


@pytest.mark.integration
def test_hybrid_chat_to_web(db_session, transport):
    registration.start_registration(db_session, transport, PHONE, Channel.chat)
    registration.submit_field(db_session, transport, PHONE, "Toko Sembako Makmur")

    artifact = registration.initiate_handoff(db_session, transport, PHONE, "to_web")
    assert transport.outbox[-1] == (IDENTITY, msg.CONTINUE_ON_WEB.format(url=artifact.url, minutes=5))
    verified = registration.submit_otp(db_session, transport, PHONE, artifact.code)
    assert verified.valid
    assert verified.session_id == artifact.session_id

    form = WebFlow(db_session, transport).submit_form(
        verified.session_id, PHONE, owner_name="Budi Santoso", pin="947382",
    )
    assert form.completion.success

    row = sessions.get_session(db_session, artifact.session_id)
    assert row.origin_channel == Channel.both.value
    assert row.status == SessionStatus.completed.value
    assert db_session.query(Account).count() == 1
    assert db_session.query(Account).one().store_name == "Toko Sembako Makmur"


@pytest.mark.integration
def test_duplicate_prevention(db_session, transport):
    registration.start_registration(db_session, transport, PHONE, Channel.chat)
    for value in ("Toko Sembako Makmur", "Budi Santoso", "947382"):
        registration.submit_field(db_session, transport, PHONE, value)

    pin_hash, _ = prepare_field("pin_hash", "583920")
    again = completion.complete_with_direct_data(db_session, IDENTITY, "Warung Berkah", "Siti Aminah", pin_hash)
    assert not again.success
    assert again.already_registered

    account = db_session.query(Account).one()
    assert (account.store_name, account.owner_name) == ("Toko Sembako Makmur", "Budi Santoso")

    status = registration.get_registration_status(db_session, PHONE)
    assert status.is_registered
