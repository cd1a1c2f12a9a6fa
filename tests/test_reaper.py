"""Reaper and archival jobs."""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from tokoreg.database import utc_now
from tokoreg.models.one_time_code import CodePurpose, CodeStatus, OneTimeCode
from tokoreg.models.pending_registration import PendingRegistration
from tokoreg.models.registration_session import Channel, RegistrationSession, SessionStatus
from tokoreg.services import one_time_codes, reaper, registration, sessions

from conftest import IDENTITY, OTHER_IDENTITY, PHONE


@pytest.fixture(autouse=True)
def fresh_stats(monkeypatch):
    monkeypatch.setattr(reaper, "stats", reaper.ReaperStats())


@pytest.mark.integration
class TestSweep:
    def test_expires_overdue_rows_only(self, db_session, complete_fields):
        stale = sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
        one_time_codes.generate(db_session, IDENTITY, CodePurpose.web_verification, stale.session_id)
        registration.create_whatsapp_link(db_session, PHONE)

        done = sessions.get_or_create_session(db_session, OTHER_IDENTITY, Channel.web)
        sessions.update_fields(db_session, done.session_id, complete_fields)
        assert sessions.complete_session(db_session, done.session_id).success

        result = reaper.sweep(db_session, now=utc_now() + timedelta(minutes=31))
        assert (result.sessions_expired, result.codes_expired, result.stubs_deleted) == (1, 1, 1)

        assert sessions.get_session(db_session, stale.session_id).status == SessionStatus.expired.value
        assert sessions.get_session(db_session, done.session_id).status == SessionStatus.completed.value
        assert db_session.query(OneTimeCode).one().status == CodeStatus.expired.value
        assert db_session.query(PendingRegistration).count() == 0

    def test_live_rows_untouched(self, db_session):
        handle = sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
        result = reaper.sweep(db_session)
        assert result.sessions_expired == 0
        assert sessions.get_session(db_session, handle.session_id).status == SessionStatus.pending.value


@pytest.mark.integration
class TestJob:
    def test_run_records_stats(self, db_session, session_factory):
        result = reaper.run_registration_reaper_job(session_factory)
        assert result is not None
        assert reaper.stats.runs == 1
        assert reaper.stats.last_run_at is not None

    def test_overlapping_trigger_is_skipped(self, db_session, session_factory):
        assert reaper._lock.acquire(blocking=False)
        try:
            assert reaper.run_registration_reaper_job(session_factory) is None
        finally:
            reaper._lock.release()
        assert reaper.stats.skipped == 1
        assert reaper.stats.runs == 0

    def test_failure_is_counted_and_releases_lock(self, db_session, session_factory, mocker):
        mocker.patch.object(reaper, "sweep", side_effect=OperationalError("UPDATE", {}, Exception("down")))
        assert reaper.run_registration_reaper_job(session_factory) is None
        assert reaper.stats.failures == 1
        assert reaper.stats.last_error == "OperationalError"

        mocker.stopall()
        assert reaper.run_registration_reaper_job(session_factory) is not None
        assert reaper.stats.last_error is None


@pytest.mark.integration
def test_archival_purges_old_rows(db_session, session_factory, complete_fields):
    handle = sessions.get_or_create_session(db_session, IDENTITY, Channel.chat)
    sessions.update_fields(db_session, handle.session_id, complete_fields)
    sessions.complete_session(db_session, handle.session_id)
    one_time_codes.generate(db_session, IDENTITY, CodePurpose.web_verification)
    one_time_codes.expire_stale_codes(db_session, utc_now() + timedelta(minutes=6))

    long_ago = utc_now() - timedelta(days=40)
    db_session.query(RegistrationSession).update({RegistrationSession.updated_at: long_ago})
    db_session.query(OneTimeCode).update({OneTimeCode.created_at: long_ago})
    db_session.commit()

    assert reaper.run_registration_archival_job(session_factory) == {"codes_purged": 1, "sessions_purged": 1}
    assert db_session.query(RegistrationSession).count() == 0
