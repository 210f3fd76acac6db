"""
Reminder planning, job state machine, dispatch and delivery tracking.
"""

import time
import pytest
from datetime import datetime, timedelta

from clinicops.core.error_handling import (
    AuthorizationError, NotFoundError, StateError, TransportFailure, ValidationError
)
from clinicops.models.appointment import Appointment
from clinicops.models.reminder_models import (
    InAppNotification, ReminderChannel, ReminderJob, ReminderKind, ReminderLog
)
from clinicops.services.appointment_scheduler import AppointmentRequest
from clinicops.services.reminder_analytics import ReminderAnalyticsAggregator, compute_rates, rate
from clinicops.services.reminder_dispatcher import ReminderDispatcher
from clinicops.services.reminder_job_store import ReminderJobStore
from clinicops.services.reminder_planner import ReminderPlanner
from clinicops.services.reminder_settings import ReminderPreferences, ReminderSettingsStore

from conftest import ADMIN, DOCTOR, NOW, PATIENT, OTHER_PATIENT, RECEPTIONIST

TEN_AM = datetime(2025, 6, 10, 10, 0)
FIRST_DUE = datetime(2025, 6, 9, 10, 0)


def job_for(db, appointment_id, channel, kind="24h"):
    return db.query(ReminderJob).filter(
        ReminderJob.appointment_id == appointment_id,
        ReminderJob.channel == channel,
        ReminderJob.reminder_kind == kind,
    ).order_by(ReminderJob.created_at.desc()).first()


class TestReminderPlanner:
    """Offsets, channels and past reminders"""

    def test_default_plan(self, clock):
        """Default preferences give 24h and 2h reminders on email and push"""
        specs = ReminderPlanner(clock).plan(TEN_AM, ReminderPreferences())
        assert [(s.kind, s.channel) for s in specs] == [
            (ReminderKind.FIRST, ReminderChannel.EMAIL),
            (ReminderKind.FIRST, ReminderChannel.PUSH),
            (ReminderKind.SECOND, ReminderChannel.EMAIL),
            (ReminderKind.SECOND, ReminderChannel.PUSH),
        ]

    def test_past_offset_scheduled_now(self, clock):
        """A reminder whose offset already passed is due immediately"""
        start = NOW + timedelta(hours=3)
        specs = ReminderPlanner(clock).plan(start, ReminderPreferences(enabled_channels=(ReminderChannel.SMS,)))
        assert [s.scheduled_for for s in specs] == [NOW, NOW + timedelta(hours=1)]

    def test_inactive_preferences(self, clock):
        """Opted-out recipients get no plan"""
        assert ReminderPlanner(clock).plan(TEN_AM, ReminderPreferences(is_active=False)) == []

    def test_started_appointment(self, clock):
        """Nothing is planned for an appointment that already started"""
        assert ReminderPlanner(clock).plan(NOW, ReminderPreferences()) == []

    def test_second_reminder_disabled(self, clock):
        """Each reminder kind can be switched off"""
        specs = ReminderPlanner(clock).plan(TEN_AM, ReminderPreferences(second_enabled=False))
        assert {s.kind for s in specs} == {ReminderKind.FIRST}


class TestReminderSettings:
    """ReminderSettingsStore"""

    def test_defaults_created_once(self, users, clock):
        """get_or_create returns the same defaults row"""
        store = ReminderSettingsStore(users, clock)
        first = store.get_or_create("pat-1")
        assert first.email_enabled and first.push_enabled and not first.sms_enabled
        assert first.preferred_channels == ["email", "push"]
        assert store.get_or_create("pat-1").id == first.id

    def test_hours_clamped(self, users, clock):
        """Offsets are clamped to 1-168 and 1-24 hours"""
        setting = ReminderSettingsStore(users, clock).update(
            "pat-1", {"first_reminder_hours": 500, "second_reminder_hours": 0}
        )
        assert setting.first_reminder_hours == 168
        assert setting.second_reminder_hours == 1

    def test_unknown_channels_dropped(self, users, clock):
        """Preferred channels keep only known values"""
        setting = ReminderSettingsStore(users, clock).update(
            "pat-1", {"preferred_channels": ["sms", "pigeon", "sms", "email"]}
        )
        assert setting.preferred_channels == ["sms", "email"]

    def test_unknown_field_rejected(self, users, clock):
        """Unknown setting names are a validation error"""
        with pytest.raises(ValidationError):
            ReminderSettingsStore(users, clock).update("pat-1", {"carrier_pigeon": True})

    def test_preferences_follow_preferred_order(self, users, clock):
        """Enabled channels are ordered by preference"""
        store = ReminderSettingsStore(users, clock)
        store.update("pat-1", {"sms_enabled": True, "preferred_channels": ["sms", "push"]})
        assert store.preferences_for("pat-1").enabled_channels == (
            ReminderChannel.SMS, ReminderChannel.PUSH, ReminderChannel.EMAIL
        )


class TestReminderJobStore:
    """Conditional transitions of reminder jobs"""

    def test_duplicate_live_job_rejected(self, book, db_session, clock):
        """Only one live job per appointment, channel and kind"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError) as exc:
            ReminderJobStore(db_session, clock).create_job(
                appointment.id, "pat-1", ReminderChannel.EMAIL, ReminderKind.FIRST, FIRST_DUE
            )
        assert exc.value.code == "duplicate_reminder"

    def test_claim_only_once(self, book, db_session, clock):
        """A due job can be claimed exactly once"""
        appointment = book(TEN_AM)
        job = job_for(db_session, appointment.id, "email")
        store = ReminderJobStore(db_session, clock)
        assert not store.claim(job.id)
        clock.set(FIRST_DUE)
        assert store.claim(job.id)
        assert not store.claim(job.id)
        assert store.get(job.id).attempts == 1

    def test_can_retry_exhausted(self):
        """A failed job at its attempt limit is terminal"""
        job = ReminderJob(status="failed", attempts=3, max_attempts=3, is_cancelled=False)
        assert not job.can_retry()
        assert job.is_terminal
        job.attempts = 2
        assert job.can_retry()

    def test_sweep_expires_overdue_jobs(self, book, db_session, clock):
        """Jobs more than an hour past their time are expired"""
        appointment = book(TEN_AM)
        clock.set(FIRST_DUE + timedelta(minutes=90))
        store = ReminderJobStore(db_session, clock)
        assert store.sweep_expired() == 2
        assert store.sweep_expired() == 0
        expired = job_for(db_session, appointment.id, "email")
        assert expired.status == "expired"
        assert expired.active_key is None
        assert job_for(db_session, appointment.id, "email", "2h").status == "pending"

    def test_cancel_and_reschedule_pending_only(self, book, db_session, clock):
        """Single-job changes are limited to pending jobs"""
        appointment = book(TEN_AM)
        store = ReminderJobStore(db_session, clock)
        email = job_for(db_session, appointment.id, "email")
        push = job_for(db_session, appointment.id, "push")

        moved = store.reschedule_job(email.id, datetime(2025, 6, 9, 18, 0))
        assert moved.scheduled_for == datetime(2025, 6, 9, 18, 0)

        cancelled = store.cancel_job(push.id, "Not wanted")
        assert cancelled.status == "cancelled"
        with pytest.raises(StateError):
            store.cancel_job(push.id, "Again")
        with pytest.raises(StateError):
            store.reschedule_job(push.id, datetime(2025, 6, 9, 18, 0))

    def test_unknown_job(self, users, clock):
        """Unknown job ids raise NotFoundError"""
        with pytest.raises(NotFoundError):
            ReminderJobStore(users, clock).get("missing")

    def test_cleanup_removes_old_terminal_jobs(self, book, scheduler, db_session, clock):
        """Terminal jobs past retention are deleted; live ones stay"""
        cancelled = book(TEN_AM)
        live = book(datetime(2025, 9, 10, 10, 0))
        scheduler.cancel(cancelled.id, "Moved away", RECEPTIONIST)

        clock.set(NOW + timedelta(days=91))
        result = ReminderJobStore(db_session, clock).cleanup(90)
        assert result == {"jobs_deleted": 4, "logs_deleted": 0}
        assert len(ReminderJobStore(db_session, clock).jobs_for_appointment(live.id)) == 4

    def test_statistics(self, book, db_session, clock):
        """Per-appointment statistics count jobs by status and channel"""
        appointment = book(TEN_AM)
        stats = ReminderJobStore(db_session, clock).statistics(appointment.id)
        assert stats["total"] == 4
        assert stats["by_status"]["pending"] == 4
        assert stats["by_channel"] == {"email": 2, "push": 2}


class TestReminderDispatcher:
    """Claiming, sending, retrying and cancelling at dispatch"""

    def test_due_jobs_sent(self, book, reminders, transports, db_session, clock):
        """Due jobs are delivered once and logged as sent"""
        appointment = book(TEN_AM)
        clock.set(FIRST_DUE)
        summary = reminders.dispatch_due()
        assert summary.count("sent") == 2
        transports.email.send.assert_called_once()
        assert transports.email.send.call_args[0][0] == "jane@example.com"
        transports.push.send.assert_called_once()

        logs = db_session.query(ReminderLog).filter(ReminderLog.appointment_id == appointment.id).all()
        assert {log.delivery_status for log in logs} == {"sent"}
        assert job_for(db_session, appointment.id, "email").status == "sent"

        row = ReminderAnalyticsAggregator(db_session, clock).get_row("doc-1", FIRST_DUE.date())
        assert row.reminders_sent == 2
        assert row.email_sent == 1
        assert row.push_sent == 1

    def test_two_dispatchers_send_once(self, book, session_factory, transports, db_session, clock):
        """Racing dispatchers for the same job result in one delivery"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id
        clock.set(FIRST_DUE)

        first, second = session_factory(), session_factory()
        try:
            results = [
                ReminderDispatcher(first, transports, clock=clock).dispatch_job(job_id),
                ReminderDispatcher(second, transports, clock=clock).dispatch_job(job_id),
            ]
        finally:
            first.close()
            second.close()

        assert [r.outcome for r in results] == ["sent", "skipped"]
        transports.email.send.assert_called_once()

    def test_existing_dispatch_key_skips(self, book, reminders, transports, db_session, clock):
        """An attempt already recorded for this job is not sent again"""
        appointment = book(TEN_AM)
        job = job_for(db_session, appointment.id, "email")
        db_session.add(ReminderLog(
            job_id=job.id, appointment_id=appointment.id, user_id="pat-1", channel="email",
            reminder_kind="24h", dispatch_key=f"{job.id}:1", tracking_token="already-sent",
        ))
        db_session.commit()

        clock.set(FIRST_DUE)
        result = reminders.dispatcher.dispatch_job(job.id)
        assert result.outcome == "skipped"
        transports.email.send.assert_not_called()

    def test_retry_backoff_then_exhaustion(self, book, reminders, transports, db_session, clock):
        """Failures back off 60s then 300s and the third failure is final"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id
        transports.email.send.side_effect = TransportFailure("email", "SES unavailable")
        store = ReminderJobStore(db_session, clock)
        dispatcher = reminders.dispatcher

        clock.set(FIRST_DUE)
        assert dispatcher.dispatch_job(job_id).outcome == "retry_scheduled"
        job = store.get(job_id)
        assert job.status == "failed"
        assert job.next_attempt_at == FIRST_DUE + timedelta(seconds=60)

        assert store.release_retries() == 0
        clock.advance(seconds=60)
        assert store.release_retries() == 1
        assert dispatcher.dispatch_job(job_id).outcome == "retry_scheduled"
        assert store.get(job_id).next_attempt_at == clock.now() + timedelta(seconds=300)

        clock.advance(seconds=300)
        store.release_retries()
        result = dispatcher.dispatch_job(job_id)
        assert result.outcome == "failed"
        assert result.error == "SES unavailable"

        job = store.get(job_id)
        assert job.attempts == 3
        assert job.active_key is None
        assert job.is_terminal
        keys = {log.dispatch_key for log in db_session.query(ReminderLog).filter(ReminderLog.job_id == job_id)}
        assert keys == {f"{job_id}:1", f"{job_id}:2", f"{job_id}:3"}

    def test_transport_timeout(self, book, users, transports, db_session, clock):
        """A hanging transport counts as a failed attempt"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id
        transports.email.send.side_effect = lambda *args, **kwargs: time.sleep(1)

        clock.set(FIRST_DUE)
        result = ReminderDispatcher(db_session, transports, clock=clock, timeout=0.1).dispatch_job(job_id)
        assert result.outcome == "retry_scheduled"
        assert "timed out" in result.error

    def test_cancelled_appointment_not_reminded(self, book, scheduler, reminders, transports, clock):
        """Cancelling an appointment leaves nothing to dispatch"""
        appointment = book(TEN_AM)
        scheduler.cancel(appointment.id, "No longer needed", RECEPTIONIST)
        clock.set(FIRST_DUE)
        summary = reminders.dispatch_due()
        assert summary.results == []
        transports.email.send.assert_not_called()

    def test_cancel_during_failed_send(self, book, scheduler, session_factory, transports, db_session, clock):
        """A job cancelled while its send is in flight stays cancelled when the transport fails"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id

        def cancel_then_fail(*args, **kwargs):
            scheduler.cancel(appointment.id, "Patient travelling", RECEPTIONIST)
            raise TransportFailure("email", "SES unavailable")

        transports.email.send.side_effect = cancel_then_fail
        clock.set(FIRST_DUE)
        dispatch_db = session_factory()
        try:
            result = ReminderDispatcher(dispatch_db, transports, clock=clock).dispatch_job(job_id)
        finally:
            dispatch_db.close()

        assert result.outcome == "failed"
        job = ReminderJobStore(db_session, clock).get(job_id)
        db_session.refresh(job)
        assert job.status == "cancelled"
        assert job.is_cancelled
        assert job.next_attempt_at is None
        assert job.sent_at is None
        ReminderJobStore(db_session, clock).release_retries()
        db_session.refresh(job)
        assert job.status == "cancelled"

    def test_cancel_during_successful_send(self, book, scheduler, session_factory, transports, db_session, clock):
        """A delivery that completes after cancellation never marks the job sent"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id

        def cancel_then_send(*args, **kwargs):
            scheduler.cancel(appointment.id, "Patient travelling", RECEPTIONIST)
            return "ses-message-1"

        transports.email.send.side_effect = cancel_then_send
        clock.set(FIRST_DUE)
        dispatch_db = session_factory()
        try:
            ReminderDispatcher(dispatch_db, transports, clock=clock).dispatch_job(job_id)
        finally:
            dispatch_db.close()

        job = ReminderJobStore(db_session, clock).get(job_id)
        db_session.refresh(job)
        assert job.status == "cancelled"
        assert job.sent_at is None
        assert job.active_key is None

    def test_invalid_appointment_cancelled_at_dispatch(self, book, reminders, transports, db_session, clock):
        """A job whose appointment ended meanwhile is cancelled when claimed"""
        appointment = book(TEN_AM)
        job_id = job_for(db_session, appointment.id, "email").id
        db_session.query(Appointment).filter(Appointment.id == appointment.id).update(
            {Appointment.status: "cancelled_by_clinic"}, synchronize_session=False
        )
        db_session.commit()

        clock.set(FIRST_DUE)
        result = reminders.dispatcher.dispatch_job(job_id)
        assert result.outcome == "cancelled"
        assert ReminderJobStore(db_session, clock).get(job_id).status == "cancelled"
        transports.email.send.assert_not_called()

    def test_in_app_delivered(self, users, scheduler, reminders, session_factory, db_session, clock):
        """In-app reminders are stored for the portal and count as delivered"""
        reminders.update_settings("pat-1", {
            "in_app_enabled": True, "email_enabled": False, "push_enabled": False,
        }, PATIENT)
        appointment = scheduler.create(AppointmentRequest(
            patient_id="pat-1", doctor_id="doc-1", start_time=TEN_AM
        ), RECEPTIONIST)

        clock.set(FIRST_DUE)
        assert reminders.dispatch_due().count("sent") == 1
        log = db_session.query(ReminderLog).filter(ReminderLog.appointment_id == appointment.id).one()
        assert log.channel == "in_app"
        assert log.delivery_status == "delivered"

        check = session_factory()
        try:
            notification = check.query(InAppNotification).filter(InAppNotification.user_id == "pat-1").one()
            assert notification.title == "Appointment Tomorrow"
            assert notification.payload["appointment_id"] == appointment.id
        finally:
            check.close()


class TestReminderAnalytics:
    """Rate arithmetic"""

    def test_rates(self):
        """Rates are fractions rounded to two decimals"""
        rates = compute_rates({
            "reminders_sent": 4, "reminders_delivered": 3, "reminders_opened": 2, "reminders_clicked": 0,
            "appointments_kept": 2, "appointments_no_show": 1,
        })
        assert rates == {"delivery_rate": 0.75, "open_rate": 0.67, "click_rate": 0.0, "attendance_rate": 0.67}

    def test_zero_denominator(self):
        """No data gives zero instead of an error"""
        assert rate(5, 0) == 0.0
        assert compute_rates({})["delivery_rate"] == 0.0

    def test_unknown_outcome(self, users, clock):
        """Only known outcomes are counted"""
        with pytest.raises(ValidationError):
            ReminderAnalyticsAggregator(users, clock).record_outcome("doc-1", "vanished")

    def test_summary_per_doctor(self, book, scheduler, reminders, clock):
        """Summaries total counters over the period and recompute rates"""
        appointment = book(TEN_AM)
        scheduler.cancel(appointment.id, "Moved", RECEPTIONIST)
        kept = book(datetime(2025, 6, 11, 10, 0))
        scheduler.complete(kept.id, DOCTOR)

        summary = reminders.get_analytics(ADMIN)
        assert summary["totals"]["appointments_cancelled"] == 1
        assert summary["totals"]["appointments_kept"] == 1
        assert summary["rates"]["attendance_rate"] == 0.5
        assert summary["period"]["days"] == 30

    def test_doctor_scoped_to_self(self, reminders):
        """Doctors see only their own analytics"""
        assert reminders.get_analytics(DOCTOR)["doctor_id"] == "doc-1"
        with pytest.raises(AuthorizationError):
            reminders.get_analytics(DOCTOR, doctor_id="doc-2")


class TestReminderService:
    """Operations exposed through the API"""

    def test_send_immediate_reports_each_channel(self, book, reminders, transports):
        """Each channel succeeds or fails on its own"""
        appointment = book(TEN_AM)
        transports.sms.send.side_effect = TransportFailure("sms", "Twilio unavailable")
        results = reminders.send_immediate(appointment.id, ["email", "sms"], RECEPTIONIST, message="See you soon")
        assert [(r.channel, r.success) for r in results] == [("email", True), ("sms", False)]
        assert results[1].error == "Twilio unavailable"
        assert "See you soon" in transports.email.send.call_args[0][2]

    def test_send_immediate_unknown_channel(self, book, reminders):
        """Unknown channels are rejected before anything is sent"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError):
            reminders.send_immediate(appointment.id, ["fax"], RECEPTIONIST)

    def test_send_immediate_for_cancelled(self, book, scheduler, reminders):
        """Inactive appointments get no manual reminders"""
        appointment = book(TEN_AM)
        scheduler.cancel(appointment.id, "Moved", RECEPTIONIST)
        with pytest.raises(ValidationError) as exc:
            reminders.send_immediate(appointment.id, ["email"], RECEPTIONIST)
        assert exc.value.code == "appointment_inactive"

    def test_send_test(self, users, reminders, transports):
        """Test notifications go straight to the transport"""
        results = reminders.send_test("pat-1", ["email", "push"], PATIENT)
        assert all(r.success for r in results)
        assert transports.email.send.call_args[0][0] == "jane@example.com"

    def test_custom_reminder_validation(self, book, reminders, clock):
        """Custom reminders must fall between now and the appointment"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError) as exc:
            reminders.schedule_custom_reminder(appointment.id, "sms", NOW - timedelta(hours=1), RECEPTIONIST)
        assert exc.value.code == "reminder_in_past"
        with pytest.raises(ValidationError) as exc:
            reminders.schedule_custom_reminder(appointment.id, "sms", TEN_AM, RECEPTIONIST)
        assert exc.value.code == "reminder_after_start"

        job = reminders.schedule_custom_reminder(
            appointment.id, "sms", datetime(2025, 6, 5, 9, 0), RECEPTIONIST, message="Fasting required"
        )
        assert job.reminder_kind == "custom"
        assert job.job_payload == {"message": "Fasting required"}

    def test_opt_out_cancels_pending(self, book, reminders, db_session):
        """Opting out cancels pending jobs and stops future plans"""
        first = book(TEN_AM)
        result = reminders.opt_out("pat-1", PATIENT)
        assert result["cancelled_jobs"] == 4
        assert ReminderJobStore(db_session).active_jobs_for_appointment(first.id) == []

        second = book(datetime(2025, 6, 12, 10, 0))
        assert ReminderJobStore(db_session).jobs_for_appointment(second.id) == []

    def test_other_patient_cannot_change_settings(self, users, reminders):
        """Settings belong to their user"""
        with pytest.raises(AuthorizationError):
            reminders.update_settings("pat-1", {"sms_enabled": True}, OTHER_PATIENT)

    def test_tracking_events(self, book, reminders, db_session, clock):
        """Opens imply delivery and are counted once"""
        appointment = book(TEN_AM)
        clock.set(FIRST_DUE)
        reminders.dispatch_due()
        log = db_session.query(ReminderLog).filter(
            ReminderLog.appointment_id == appointment.id, ReminderLog.channel == "email"
        ).one()

        opened = reminders.record_opened(log.tracking_token)
        assert opened.delivery_status == "delivered"
        assert opened.opened_at == FIRST_DUE
        reminders.record_opened(log.tracking_token)
        reminders.record_clicked(log.tracking_token)

        row = ReminderAnalyticsAggregator(db_session, clock).get_row("doc-1", FIRST_DUE.date())
        assert row.reminders_delivered == 1
        assert row.reminders_opened == 1
        assert row.reminders_clicked == 1

    def test_unknown_tracking_token(self, users, reminders):
        """Unknown tokens are not found"""
        with pytest.raises(NotFoundError):
            reminders.record_delivered("nope")

    def test_acknowledge_by_recipient_only(self, book, reminders, db_session, clock):
        """Only the reminded patient can acknowledge"""
        appointment = book(TEN_AM)
        clock.set(FIRST_DUE)
        reminders.dispatch_due()
        log = db_session.query(ReminderLog).filter(ReminderLog.appointment_id == appointment.id).first()

        with pytest.raises(AuthorizationError):
            reminders.acknowledge(log.id, RECEPTIONIST)
        assert reminders.acknowledge(log.id, PATIENT).acknowledged_at == FIRST_DUE

    def test_status_overview(self, book, reminders):
        """Status lists jobs, logs and statistics"""
        appointment = book(TEN_AM)
        status = reminders.get_status(appointment.id, PATIENT)
        assert len(status["jobs"]) == 4
        assert status["logs"] == []
        assert status["statistics"]["total"] == 4


def live_plan(db, appointment_id):
    return sorted(
        (job.reminder_kind, job.channel)
        for job in ReminderJobStore(db).active_jobs_for_appointment(appointment_id)
    )


class TestAppointmentReminderControls:
    """Per-appointment opt-out and preferences, upcoming reminders and bulk operations"""

    def test_opt_out_of_one_reminder(self, book, scheduler, reminders, db_session, audit):
        """Opting out of the 24h email leaves the rest and survives a reschedule"""
        appointment = book(TEN_AM)
        result = reminders.opt_out_appointment(appointment.id, PATIENT, "24h", ["email"])
        assert result["cancelled_count"] == 1
        assert live_plan(db_session, appointment.id) == [("24h", "push"), ("2h", "email"), ("2h", "push")]
        assert audit.record.call_args[0][0].action == "reminder_opt_out"

        scheduler.reschedule(appointment.id, datetime(2025, 6, 11, 10, 0), RECEPTIONIST)
        assert live_plan(db_session, appointment.id) == [("24h", "push"), ("2h", "email"), ("2h", "push")]

    def test_opt_out_of_everything(self, book, reminders, db_session):
        """The default opt-out covers every kind and channel, custom reminders included"""
        appointment = book(TEN_AM)
        reminders.schedule_custom_reminder(appointment.id, "sms", datetime(2025, 6, 5, 9, 0), PATIENT)
        result = reminders.opt_out_appointment(appointment.id, PATIENT)
        assert result["cancelled_count"] == 5
        assert result["channels"] == ["email", "sms", "push", "in_app"]
        assert live_plan(db_session, appointment.id) == []

    def test_opt_out_validation(self, book, reminders):
        """Only the patient may opt out, with a known type and channels"""
        appointment = book(TEN_AM)
        with pytest.raises(AuthorizationError):
            reminders.opt_out_appointment(appointment.id, RECEPTIONIST)
        with pytest.raises(AuthorizationError):
            reminders.opt_out_appointment(appointment.id, OTHER_PATIENT)
        with pytest.raises(ValidationError) as exc:
            reminders.opt_out_appointment(appointment.id, PATIENT, "weekly")
        assert exc.value.code == "invalid_reminder_type"
        with pytest.raises(ValidationError) as exc:
            reminders.opt_out_appointment(appointment.id, PATIENT, "2h", ["fax"])
        assert exc.value.code == "invalid_channel"

    def test_preferences_replan_automatic_reminders(self, book, reminders, db_session):
        """New channels and offsets replace the automatic plan and keep custom reminders"""
        appointment = book(TEN_AM)
        custom = reminders.schedule_custom_reminder(appointment.id, "email", datetime(2025, 6, 5, 9, 0), PATIENT)

        result = reminders.update_appointment_preferences(
            appointment.id, {"channels": ["sms"], "first_reminder_hours": 48}, PATIENT
        )
        assert result["preferences"] == {"channels": ["sms"], "first_reminder_hours": 48}
        assert sorted((j.reminder_kind, j.channel, j.scheduled_for) for j in result["jobs"]) == [
            ("24h", "sms", datetime(2025, 6, 8, 10, 0)),
            ("2h", "sms", datetime(2025, 6, 10, 8, 0)),
        ]
        assert live_plan(db_session, appointment.id) == [("24h", "sms"), ("2h", "sms"), ("custom", "email")]
        assert ReminderJobStore(db_session).get(custom.id).status == "pending"

    def test_preferences_disable_second_reminder(self, book, reminders, db_session):
        """Turning off the 2h reminder drops it from the plan"""
        appointment = book(TEN_AM)
        reminders.update_appointment_preferences(appointment.id, {"reminder_2h_enabled": False}, RECEPTIONIST)
        assert live_plan(db_session, appointment.id) == [("24h", "email"), ("24h", "push")]

    def test_preferences_validation(self, book, reminders):
        """Unknown fields and other patients are rejected"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError) as exc:
            reminders.update_appointment_preferences(appointment.id, {"timezone": "UTC"}, PATIENT)
        assert exc.value.code == "unknown_setting"
        with pytest.raises(AuthorizationError):
            reminders.update_appointment_preferences(appointment.id, {"channels": ["sms"]}, OTHER_PATIENT)

    def test_upcoming_reminders(self, book, reminders, clock):
        """Only the caller's future pending reminders are listed, soonest first"""
        book(TEN_AM)
        book(datetime(2025, 6, 11, 10, 0), patient_id="pat-2")

        upcoming = reminders.upcoming_reminders(PATIENT)
        assert [(j.reminder_kind, j.channel) for j in upcoming] == [
            ("24h", "email"), ("24h", "push"), ("2h", "email"), ("2h", "push")
        ]
        assert len(reminders.upcoming_reminders(PATIENT, limit=1)) == 1

        clock.set(FIRST_DUE + timedelta(minutes=1))
        assert [j.reminder_kind for j in reminders.upcoming_reminders(PATIENT)] == ["2h", "2h"]

    def test_bulk_cancel_reports_each_appointment(self, book, reminders, db_session):
        """Failures on one appointment do not stop the others"""
        first = book(TEN_AM)
        second = book(datetime(2025, 6, 11, 10, 0), patient_id="pat-2")

        result = reminders.bulk_operation("cancel", [first.id, 999, second.id], ADMIN).to_dict()
        assert result["total_processed"] == 3
        assert result["success_count"] == 2
        assert result["failed_count"] == 1
        assert result["results"][1] == {"appointment_id": 999, "status": "failed", "error": "Appointment not found"}
        assert result["results"][0]["result"] == {"cancelled": 4}
        assert live_plan(db_session, second.id) == []

        result = reminders.bulk_operation("reschedule", [first.id], ADMIN).to_dict()
        assert result["results"][0]["result"] == {"cancelled": 0, "scheduled": 4}

    def test_bulk_test_send(self, book, reminders, transports):
        """Bulk test sends a manual reminder on the requested channels"""
        appointment = book(TEN_AM)
        result = reminders.bulk_operation("test", [appointment.id], ADMIN, ["email"]).to_dict()
        assert result["results"][0]["result"]["channels"][0]["success"] is True
        assert "Bulk test reminder" in transports.email.send.call_args[0][2]

    def test_bulk_admin_only(self, users, reminders):
        """Bulk operations need an administrator and a known operation"""
        with pytest.raises(AuthorizationError):
            reminders.bulk_operation("cancel", [1], RECEPTIONIST)
        with pytest.raises(ValidationError) as exc:
            reminders.bulk_operation("purge", [1], ADMIN)
        assert exc.value.code == "invalid_operation"
