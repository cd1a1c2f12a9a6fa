"""Completion coordinator: exactly one Account per identity, whichever path gets there first."""
from datetime import timedelta

import pytest
from freezegun import freeze_time

from tokoreg.models.account import Account
from tokoreg.models.registration_session import Channel, RegistrationStep, SessionStatus
from tokoreg.services import completion, sessions
from tokoreg.services.auth import authenticate_pin, decode_token
from tokoreg.services.results import ErrorKind

from conftest import IDENTITY


def _ready_session(db, fields, channel=Channel.chat):
    handle = sessions.get_or_create_session(db, IDENTITY, channel)
    sessions.update_fields(db, handle.session_id, fields)
    return handle.session_id


@pytest.mark.integration
class TestCompleteFromSession:
    def test_success_materializes_account_and_credential(self, db_session, complete_fields):
        session_id = _ready_session(db_session, complete_fields)

        outcome = completion.complete_from_session(db_session, session_id)
        assert outcome.success
        account = outcome.account
        assert account.identity == IDENTITY
        assert account.store_name == "Warung Berkah"
        assert account.owner_name == "Siti Aminah"
        assert account.is_active and account.onboarding_complete
        assert account.registration_completed_at is not None
        assert account.registration_method == Channel.chat.value

        claims = decode_token(outcome.credential)
        assert claims["sub"] == str(account.id)
        assert claims["identity"] == IDENTITY

        row = sessions.get_session(db_session, session_id)
        assert row.status == SessionStatus.completed.value
        assert row.current_step == RegistrationStep.completed.value

    def test_credential_matches_pin_login(self, db_session, complete_fields):
        session_id = _ready_session(db_session, complete_fields)
        outcome = completion.complete_from_session(db_session, session_id)
        assert authenticate_pin(db_session, IDENTITY, "112233").id == outcome.account.id
        assert authenticate_pin(db_session, IDENTITY, "583920") is None

    def test_repeated_calls_yield_one_winner(self, db_session, complete_fields):
        session_id = _ready_session(db_session, complete_fields)
        outcomes = [completion.complete_from_session(db_session, session_id) for _ in range(5)]
        assert sum(1 for o in outcomes if o.success) == 1
        assert all(o.error_kind == ErrorKind.already_completed for o in outcomes[1:])
        assert all(o.already_registered for o in outcomes[1:])
        assert db_session.query(Account).count() == 1

    def test_incomplete_lists_missing_fields(self, db_session):
        session_id = _ready_session(db_session, {"store_name": "Warung Berkah"})
        outcome = completion.complete_from_session(db_session, session_id)
        assert outcome.error_kind == ErrorKind.incomplete
        assert outcome.missing == ["owner_name", "pin_hash"]
        assert "owner name" in outcome.message
        assert sessions.get_session(db_session, session_id).status == SessionStatus.pending.value
        assert db_session.query(Account).count() == 0

    def test_expired_session(self, db_session, complete_fields):
        with freeze_time("2026-03-02 08:00:00") as frozen:
            session_id = _ready_session(db_session, complete_fields)
            frozen.tick(timedelta(minutes=31))
            outcome = completion.complete_from_session(db_session, session_id)
        assert outcome.error_kind == ErrorKind.expired
        assert db_session.query(Account).count() == 0

    def test_unknown_session(self, db_session):
        assert completion.complete_from_session(db_session, "no-such-session").error_kind == ErrorKind.not_found


@pytest.mark.integration
def test_completion_race_has_one_winner(db_session, session_factory, complete_fields, mocker):
    """Another instance completes the session between our read and our conditional flip."""
    session_id = _ready_session(db_session, complete_fields)
    original = sessions.missing_fields
    state = {"raced": False}

    def racing_missing_fields(fields):
        if not state["raced"]:
            state["raced"] = True
            other = session_factory()
            try:
                assert sessions.complete_session(other, session_id).success
            finally:
                other.close()
        return original(fields)

    mocker.patch("tokoreg.services.sessions.missing_fields", side_effect=racing_missing_fields)
    result = sessions.complete_session(db_session, session_id)

    assert not result.success
    assert result.error_kind == ErrorKind.already_completed
    assert db_session.query(Account).count() == 1


@pytest.mark.integration
class TestDirectData:
    def test_direct_completion(self, db_session, pin_hash):
        outcome = completion.complete_with_direct_data(
            db_session, IDENTITY, "Warung Berkah", "Siti Aminah", pin_hash,
        )
        assert outcome.success
        assert outcome.account.registration_method == "web"
        assert decode_token(outcome.credential)["sub"] == str(outcome.account.id)

    def test_direct_then_session_is_duplicate(self, db_session, complete_fields, pin_hash):
        session_id = _ready_session(db_session, complete_fields, Channel.web)
        assert completion.complete_with_direct_data(
            db_session, IDENTITY, "Warung Berkah", "Siti Aminah", pin_hash,
        ).success

        outcome = completion.complete_from_session(db_session, session_id)
        assert outcome.error_kind == ErrorKind.duplicate_account
        assert outcome.already_registered
        # Refused completion leaves the session untouched
        assert sessions.get_session(db_session, session_id).status == SessionStatus.pending.value
        assert db_session.query(Account).count() == 1

    def test_session_then_direct_is_duplicate(self, db_session, complete_fields, pin_hash):
        session_id = _ready_session(db_session, complete_fields)
        assert completion.complete_from_session(db_session, session_id).success
        outcome = completion.complete_with_direct_data(
            db_session, IDENTITY, "Toko Lain", "Budi Santoso", pin_hash,
        )
        assert outcome.error_kind == ErrorKind.duplicate_account
        account = db_session.query(Account).one()
        assert account.store_name == "Warung Berkah"

    def test_missing_direct_fields(self, db_session):
        outcome = completion.complete_with_direct_data(db_session, IDENTITY, "Warung Berkah", "", None)
        assert outcome.error_kind == ErrorKind.incomplete
        assert outcome.missing == ["owner_name", "pin_hash"]
