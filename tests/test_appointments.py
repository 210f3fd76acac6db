"""
Appointment lifecycle: booking, reschedule, cancellation, completion,
patient booking rules and concurrent creation.
"""

import threading
import time as time_module
import pytest
from datetime import date, datetime, time, timedelta
from unittest.mock import MagicMock

from clinicops.core.error_handling import (
    AuthorizationError, ConflictError, ConflictKind, NotFoundError, StateError, ValidationError
)
from clinicops.models.appointment import Appointment, AppointmentStatus
from clinicops.models.reminder_models import ReminderJob
from clinicops.services.appointment_scheduler import (
    AppointmentRequest, AppointmentScheduler, RecurringRequest, RecurringResult
)
from clinicops.services.audit_logger import AuditAction
from clinicops.services.booking_lock import _lock_for, doctor_serialization
from clinicops.services.patient_booking import PatientBookingPolicy
from clinicops.services.reminder_analytics import ReminderAnalyticsAggregator
from clinicops.services.reminder_job_store import ReminderJobStore
from clinicops.services.reminder_service import ReminderService

from conftest import ADMIN, DOCTOR, OTHER_DOCTOR, PATIENT, OTHER_PATIENT, RECEPTIONIST

TEN_AM = datetime(2025, 6, 10, 10, 0)


def active_jobs(db, appointment_id):
    return ReminderJobStore(db).active_jobs_for_appointment(appointment_id)


class TestCreate:
    """AppointmentScheduler.create"""

    def test_booking_schedules_reminders(self, book, db_session):
        """Booking at 10:00 plans 24h and 2h reminders on email and push"""
        appointment = book(TEN_AM)
        assert appointment.status == AppointmentStatus.SCHEDULED.value
        assert appointment.end_time == TEN_AM + timedelta(minutes=30)
        assert appointment.appointment_type == "consultation"
        assert appointment.reason == "General consultation"
        assert appointment.booked_by == "rec-1"

        jobs = active_jobs(db_session, appointment.id)
        planned = sorted((j.reminder_kind, j.channel, j.scheduled_for) for j in jobs)
        assert planned == [
            ("24h", "email", datetime(2025, 6, 9, 10, 0)),
            ("24h", "push", datetime(2025, 6, 9, 10, 0)),
            ("2h", "email", datetime(2025, 6, 10, 8, 0)),
            ("2h", "push", datetime(2025, 6, 10, 8, 0)),
        ]
        assert all(j.user_id == "pat-1" and j.status == "pending" for j in jobs)

    def test_overlapping_booking_rejected(self, book):
        """A second booking at 10:15 overlaps and is DOCTOR_BUSY"""
        book(TEN_AM)
        with pytest.raises(ConflictError) as exc:
            book(datetime(2025, 6, 10, 10, 15), patient_id="pat-2")
        assert exc.value.kind == ConflictKind.DOCTOR_BUSY

    def test_booking_inside_block_rejected(self, book, users, clock, audit):
        """A booking inside a time block is BLOCKED"""
        from clinicops.services.block_registry import BlockRegistry, BlockRequest
        BlockRegistry(users, clock=clock, audit=audit).create_block(BlockRequest(
            doctor_id="doc-1", start_time=datetime(2025, 6, 10, 9, 0), end_time=datetime(2025, 6, 10, 12, 0),
            reason="Conference",
        ), DOCTOR)
        with pytest.raises(ConflictError) as exc:
            book(TEN_AM)
        assert exc.value.kind == ConflictKind.BLOCKED

    def test_past_start_rejected(self, book, clock):
        """Start times before now minus the grace window are rejected"""
        with pytest.raises(ValidationError) as exc:
            book(clock.now() - timedelta(minutes=10))
        assert exc.value.code == "start_in_past"

    def test_grace_window(self, book, clock):
        """A start a few minutes ago is still accepted"""
        appointment = book(clock.now() - timedelta(minutes=3))
        assert appointment.id is not None

    def test_unknown_patient(self, book):
        """Patients must exist and be patients"""
        with pytest.raises(ValidationError):
            book(TEN_AM, patient_id="doc-2")

    def test_doctor_books_only_own_schedule(self, book):
        """A doctor cannot book into another doctor's calendar"""
        with pytest.raises(AuthorizationError):
            book(TEN_AM, doctor_id="doc-2", actor=DOCTOR)

    def test_audit_event_recorded(self, book, audit):
        """Creation is audited with an appointment subject"""
        appointment = book(TEN_AM)
        event = audit.record.call_args[0][0]
        assert event.action == AuditAction.APPOINTMENT_CREATED
        assert event.subject.id == str(appointment.id)
        assert event.after["status"] == "scheduled"

    def test_failed_booking_leaves_nothing(self, book, db_session):
        """A rejected booking writes neither an appointment nor reminder jobs"""
        book(TEN_AM)
        with pytest.raises(ConflictError):
            book(datetime(2025, 6, 10, 10, 15), patient_id="pat-2")
        assert db_session.query(Appointment).count() == 1
        assert db_session.query(ReminderJob).count() == 4


class TestConcurrentCreate:
    """Two requests for the same slot racing each other"""

    def test_only_one_booking_survives(self, users, session_factory, clock, transports):
        """Concurrent creates for one doctor and time produce exactly one appointment"""
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(patient_id):
            db = session_factory()
            try:
                reminders = ReminderService(db, clock=clock, transports=transports, audit=MagicMock())
                scheduler = AppointmentScheduler(db, clock=clock, reminders=reminders, audit=MagicMock())
                barrier.wait()
                scheduler.create(AppointmentRequest(
                    patient_id=patient_id, doctor_id="doc-1", start_time=TEN_AM
                ), RECEPTIONIST)
                outcomes.append("booked")
            except ConflictError as e:
                outcomes.append(e.kind)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt, args=(p,)) for p in ("pat-1", "pat-2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == [ConflictKind.DOCTOR_BUSY, "booked"]
        check = session_factory()
        try:
            assert check.query(Appointment).filter(Appointment.doctor_id == "doc-1").count() == 1
        finally:
            check.close()

    def test_patient_rules_hold_under_concurrency(self, users, session_factory, clock, transports, monkeypatch):
        """Two same-day patient bookings with one doctor cannot both pass the daily limit"""
        original_check = PatientBookingPolicy.check_booking

        def slow_check(self, *args, **kwargs):
            original_check(self, *args, **kwargs)
            time_module.sleep(0.2)

        monkeypatch.setattr(PatientBookingPolicy, "check_booking", slow_check)
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(start):
            db = session_factory()
            try:
                reminders = ReminderService(db, clock=clock, transports=transports, audit=MagicMock())
                scheduler = AppointmentScheduler(db, clock=clock, reminders=reminders, audit=MagicMock())
                barrier.wait()
                scheduler.create(AppointmentRequest(
                    patient_id="pat-1", doctor_id="doc-1", start_time=start
                ), PATIENT)
                outcomes.append("booked")
            except ValidationError as e:
                outcomes.append(e.code)
            finally:
                db.close()

        starts = (TEN_AM, datetime(2025, 6, 10, 14, 0))
        threads = [threading.Thread(target=attempt, args=(s,)) for s in starts]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == ["booked", "same_day_appointment"]
        check = session_factory()
        try:
            assert check.query(Appointment).filter(Appointment.patient_id == "pat-1").count() == 1
        finally:
            check.close()


class TestScheduleLock:
    """Per-doctor serialization"""

    def test_lock_timeout_is_not_reported_as_busy(self, users):
        """A contended schedule lock reports SCHEDULE_LOCKED, not a taken slot"""
        lock = _lock_for("doc-1")
        lock.acquire()
        try:
            with pytest.raises(ConflictError) as exc:
                with doctor_serialization(users, "doc-1", timeout=0.05):
                    pass
        finally:
            lock.release()
        assert exc.value.kind == ConflictKind.SCHEDULE_LOCKED
        assert exc.value.code == "SCHEDULE_LOCKED"

    def test_lock_released_after_error(self, users):
        """An exception inside the block frees the doctor's schedule"""
        with pytest.raises(RuntimeError):
            with doctor_serialization(users, "doc-1"):
                raise RuntimeError("boom")
        assert _lock_for("doc-1").acquire(timeout=0.05)
        _lock_for("doc-1").release()


class TestReschedule:
    """Moving an appointment"""

    def test_reschedule_replaces_reminder_plan(self, book, scheduler, db_session):
        """Old jobs are cancelled and one new plan exists for the new time"""
        appointment = book(TEN_AM)
        old_ids = {j.id for j in active_jobs(db_session, appointment.id)}

        moved = scheduler.reschedule(appointment.id, datetime(2025, 6, 12, 14, 0), RECEPTIONIST)
        assert moved.status == AppointmentStatus.RESCHEDULED.value
        assert moved.reschedule_count == 1
        assert moved.end_time == datetime(2025, 6, 12, 14, 30)

        jobs = active_jobs(db_session, appointment.id)
        assert len(jobs) == 4
        assert not old_ids & {j.id for j in jobs}
        assert {j.scheduled_for for j in jobs} == {datetime(2025, 6, 11, 14, 0), datetime(2025, 6, 12, 12, 0)}

        old = db_session.query(ReminderJob).filter(ReminderJob.id.in_(old_ids)).all()
        assert all(j.status == "cancelled" and j.cancellation_reason == "rescheduled" for j in old)

    def test_reschedule_into_conflict(self, book, scheduler):
        """Rescheduling onto another booking fails and leaves the appointment unchanged"""
        first = book(TEN_AM)
        book(datetime(2025, 6, 10, 11, 0), patient_id="pat-2")
        with pytest.raises(ConflictError):
            scheduler.reschedule(first.id, datetime(2025, 6, 10, 11, 0), RECEPTIONIST)
        reloaded = scheduler.get(first.id)
        assert reloaded.start_time == TEN_AM
        assert reloaded.status == AppointmentStatus.SCHEDULED.value

    def test_rescheduled_appointment_can_be_confirmed(self, book, scheduler):
        """rescheduled behaves like scheduled for later operations"""
        appointment = book(TEN_AM)
        scheduler.reschedule(appointment.id, datetime(2025, 6, 11, 10, 0), RECEPTIONIST)
        confirmed = scheduler.confirm(appointment.id, DOCTOR)
        assert confirmed.status == AppointmentStatus.CONFIRMED.value

    def test_update_changing_time_reschedules(self, book, scheduler, db_session):
        """An update with a new start keeps the duration and re-plans reminders"""
        appointment = book(TEN_AM, end=datetime(2025, 6, 10, 11, 0))
        updated = scheduler.update(appointment.id, {"start_time": datetime(2025, 6, 10, 15, 0)}, RECEPTIONIST)
        assert updated.end_time == datetime(2025, 6, 10, 16, 0)
        assert updated.status == AppointmentStatus.RESCHEDULED.value
        assert {j.scheduled_for for j in active_jobs(db_session, appointment.id)} == {
            datetime(2025, 6, 9, 15, 0), datetime(2025, 6, 10, 13, 0)
        }

    def test_update_notes_only(self, book, scheduler, audit):
        """A notes-only update keeps the status and is audited as an update"""
        appointment = book(TEN_AM)
        updated = scheduler.update(appointment.id, {"patient_notes": "Bring x-rays"}, RECEPTIONIST)
        assert updated.patient_notes == "Bring x-rays"
        assert updated.status == AppointmentStatus.SCHEDULED.value
        assert audit.record.call_args[0][0].action == AuditAction.APPOINTMENT_UPDATED

    def test_update_unknown_field(self, book, scheduler):
        """Only whitelisted fields can be updated"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError):
            scheduler.update(appointment.id, {"status": "completed"}, RECEPTIONIST)

    def test_reschedule_counts_in_analytics(self, book, scheduler, db_session, clock):
        """Reschedules feed the daily outcome counters"""
        appointment = book(TEN_AM)
        scheduler.reschedule(appointment.id, datetime(2025, 6, 11, 10, 0), RECEPTIONIST)
        row = ReminderAnalyticsAggregator(db_session, clock).get_row("doc-1", clock.now().date())
        assert row.appointments_rescheduled == 1


class TestCancel:
    """Cancellation rules and reminder cascade"""

    def test_cancel_cascades_to_reminders(self, book, scheduler, db_session):
        """Every outstanding job is cancelled with the appointment"""
        appointment = book(TEN_AM)
        cancelled = scheduler.cancel(appointment.id, "Feeling better", RECEPTIONIST)
        assert cancelled.status == AppointmentStatus.CANCELLED_BY_CLINIC.value
        assert cancelled.cancellation_reason == "Feeling better"
        assert cancelled.cancelled_by == "rec-1"
        assert active_jobs(db_session, appointment.id) == []
        jobs = ReminderJobStore(db_session).jobs_for_appointment(appointment.id)
        assert all(j.is_cancelled and j.status == "cancelled" for j in jobs)

    def test_patient_cancellation_status(self, book, scheduler):
        """Patients cancelling their own appointment yield cancelled_by_patient"""
        appointment = book(TEN_AM)
        cancelled = scheduler.cancel(appointment.id, "Travelling", PATIENT)
        assert cancelled.status == AppointmentStatus.CANCELLED_BY_PATIENT.value

    def test_cancel_within_two_hours_rejected(self, book, scheduler, clock):
        """Less than two hours before start the appointment cannot be cancelled"""
        appointment = book(TEN_AM)
        clock.set(datetime(2025, 6, 10, 8, 30))
        with pytest.raises(StateError) as exc:
            scheduler.cancel(appointment.id, "Late", RECEPTIONIST)
        assert exc.value.code == "not_cancellable"

    def test_force_cancel_ignores_notice(self, book, scheduler, clock):
        """Doctors can force-cancel inside the notice period"""
        appointment = book(TEN_AM)
        clock.set(datetime(2025, 6, 10, 9, 30))
        cancelled = scheduler.force_cancel(appointment.id, "Emergency surgery", DOCTOR)
        assert cancelled.status == AppointmentStatus.CANCELLED_BY_CLINIC.value

    def test_cancel_twice_rejected(self, book, scheduler):
        """A cancelled appointment cannot be cancelled again"""
        appointment = book(TEN_AM)
        scheduler.cancel(appointment.id, "First", RECEPTIONIST)
        with pytest.raises(StateError):
            scheduler.cancel(appointment.id, "Second", RECEPTIONIST)

    def test_reason_required(self, book, scheduler):
        """Cancellation needs a reason"""
        appointment = book(TEN_AM)
        with pytest.raises(ValidationError):
            scheduler.cancel(appointment.id, "  ", RECEPTIONIST)

    def test_other_doctor_cannot_cancel(self, book, scheduler):
        """Ownership applies to cancellation"""
        appointment = book(TEN_AM)
        with pytest.raises(AuthorizationError):
            scheduler.cancel(appointment.id, "Not mine", OTHER_DOCTOR)

    def test_can_be_cancelled(self, book, scheduler, clock):
        """can_be_cancelled reflects status and notice"""
        appointment = book(TEN_AM)
        assert scheduler.can_be_cancelled(appointment)
        clock.set(datetime(2025, 6, 10, 8, 1))
        assert not scheduler.can_be_cancelled(appointment)


class TestLifecycle:
    """Confirm, complete, no-show and removal"""

    def test_confirm_only_from_unconfirmed(self, book, scheduler):
        """Confirming twice is a state error"""
        appointment = book(TEN_AM)
        confirmed = scheduler.confirm(appointment.id, RECEPTIONIST)
        assert confirmed.confirmed_at is not None
        with pytest.raises(StateError):
            scheduler.confirm(appointment.id, RECEPTIONIST)

    def test_complete_records_notes_and_outcome(self, book, scheduler, db_session, clock):
        """Completion stores notes, cancels reminders and counts as kept"""
        appointment = book(TEN_AM)
        scheduler.confirm(appointment.id, DOCTOR)
        completed = scheduler.complete(appointment.id, DOCTOR, notes="All good")
        assert completed.status == AppointmentStatus.COMPLETED.value
        assert completed.doctor_notes == "All good"
        assert active_jobs(db_session, appointment.id) == []
        row = ReminderAnalyticsAggregator(db_session, clock).get_row("doc-1", clock.now().date())
        assert row.appointments_kept == 1

    def test_confirm_completed_rejected(self, book, scheduler):
        """Completed appointments are terminal"""
        appointment = book(TEN_AM)
        scheduler.complete(appointment.id, DOCTOR)
        with pytest.raises(StateError):
            scheduler.confirm(appointment.id, DOCTOR)

    def test_no_show_requires_elapsed_start(self, book, scheduler, clock):
        """Future appointments cannot be marked as no-show"""
        appointment = book(TEN_AM)
        with pytest.raises(StateError) as exc:
            scheduler.mark_no_show(appointment.id, DOCTOR)
        assert exc.value.code == "not_started"

        clock.set(datetime(2025, 6, 10, 10, 45))
        marked = scheduler.mark_no_show(appointment.id, DOCTOR)
        assert marked.status == AppointmentStatus.NO_SHOW.value

    def test_no_show_not_for_confirmed(self, book, scheduler, clock):
        """Confirmed appointments are not no-show candidates"""
        appointment = book(TEN_AM)
        scheduler.confirm(appointment.id, DOCTOR)
        clock.set(datetime(2025, 6, 10, 10, 45))
        with pytest.raises(StateError):
            scheduler.mark_no_show(appointment.id, DOCTOR)

    def test_remove_soft_deletes(self, book, scheduler, db_session):
        """Removed appointments disappear from reads and free the slot"""
        appointment = book(TEN_AM)
        scheduler.remove(appointment.id, ADMIN)
        with pytest.raises(NotFoundError):
            scheduler.get(appointment.id)
        assert active_jobs(db_session, appointment.id) == []
        assert book(TEN_AM, patient_id="pat-2").id != appointment.id

    def test_patient_cannot_view_others(self, book, scheduler):
        """Reads are ownership-checked"""
        appointment = book(TEN_AM)
        assert scheduler.get(appointment.id, PATIENT).id == appointment.id
        with pytest.raises(AuthorizationError):
            scheduler.get(appointment.id, OTHER_PATIENT)


class TestPatientRules:
    """Extra rules for patient-initiated changes"""

    def book_as_patient(self, scheduler, start, doctor_id="doc-1"):
        return scheduler.create(
            AppointmentRequest(patient_id="pat-1", doctor_id=doctor_id, start_time=start), PATIENT
        )

    def test_minimum_notice(self, scheduler, clock):
        """Patients book at least two hours ahead"""
        with pytest.raises(ValidationError) as exc:
            self.book_as_patient(scheduler, clock.now() + timedelta(hours=1))
        assert exc.value.code == "insufficient_notice"

    def test_one_per_day(self, scheduler):
        """A second same-day booking with the same doctor is rejected"""
        self.book_as_patient(scheduler, TEN_AM)
        with pytest.raises(ValidationError) as exc:
            self.book_as_patient(scheduler, datetime(2025, 6, 10, 15, 0))
        assert exc.value.code == "same_day_appointment"

    def test_doctor_cap(self, scheduler):
        """The doctor-configured cap limits upcoming bookings"""
        self.book_as_patient(scheduler, datetime(2025, 6, 10, 10, 0), doctor_id="doc-2")
        self.book_as_patient(scheduler, datetime(2025, 6, 11, 10, 0), doctor_id="doc-2")
        with pytest.raises(ValidationError) as exc:
            self.book_as_patient(scheduler, datetime(2025, 6, 12, 10, 0), doctor_id="doc-2")
        assert exc.value.code == "too_many_appointments"

    def test_default_cap(self, scheduler):
        """Without a doctor setting the cap is five"""
        for day in range(2, 7):
            self.book_as_patient(scheduler, datetime(2025, 6, day, 10, 0))
        with pytest.raises(ValidationError) as exc:
            self.book_as_patient(scheduler, datetime(2025, 6, 9, 10, 0))
        assert exc.value.code == "too_many_appointments"

    def test_staff_not_subject_to_rules(self, book):
        """Receptionists may book two same-day appointments"""
        book(TEN_AM)
        assert book(datetime(2025, 6, 10, 15, 0)).id

    def test_cancellation_notice(self, scheduler, clock):
        """Patients cancel at least 24 hours ahead"""
        appointment = self.book_as_patient(scheduler, TEN_AM)
        clock.set(datetime(2025, 6, 9, 12, 0))
        with pytest.raises(ValidationError) as exc:
            scheduler.cancel(appointment.id, "Busy", PATIENT)
        assert exc.value.code == "insufficient_notice"

    def test_cancellation_limit(self, scheduler):
        """A fourth cancellation within 30 days is blocked"""
        for day in (3, 4, 5):
            appointment = self.book_as_patient(scheduler, datetime(2025, 6, day, 10, 0))
            scheduler.cancel(appointment.id, "Busy", PATIENT)
        appointment = self.book_as_patient(scheduler, datetime(2025, 6, 6, 10, 0))
        with pytest.raises(ValidationError) as exc:
            scheduler.cancel(appointment.id, "Busy again", PATIENT)
        assert exc.value.code == "cancellation_limit_reached"

    def test_single_reschedule(self, scheduler):
        """Patients reschedule each appointment once"""
        appointment = self.book_as_patient(scheduler, TEN_AM)
        scheduler.reschedule(appointment.id, datetime(2025, 6, 11, 10, 0), PATIENT)
        with pytest.raises(ValidationError) as exc:
            scheduler.reschedule(appointment.id, datetime(2025, 6, 12, 10, 0), PATIENT)
        assert exc.value.code == "reschedule_limit_reached"


class TestRecurring:
    """Series booking"""

    def test_weekly_series(self, scheduler):
        """Four weekly sessions on Tuesdays are all booked"""
        result = scheduler.create_recurring(RecurringRequest(
            patient_id="pat-1", doctor_id="doc-1", start_date=datetime(2025, 6, 10),
            frequency="weekly", total_sessions=4,
        ), RECEPTIONIST)
        assert result.total_created == 4
        assert result.success_rate == 1.0
        assert [a.start_time for a in result.appointments][0] == datetime(2025, 6, 10, 9, 0)
        assert len({a.series_id for a in result.appointments}) == 1
        assert result.appointments[1].doctor_notes == "Recurring appointment - Session 2 of 4"

    def test_weekend_sessions_skipped(self, scheduler):
        """Weekly sessions starting on a Saturday are skipped with an error"""
        with pytest.raises(ValidationError) as exc:
            scheduler.create_recurring(RecurringRequest(
                patient_id="pat-1", doctor_id="doc-1", start_date=datetime(2025, 6, 7),
                frequency="weekly", total_sessions=2, session_time=time(11, 0),
            ), RECEPTIONIST)
        assert exc.value.code == "recurring_failed"
        assert len(exc.value.details["errors"]) == 2

    def test_partial_series(self, book, scheduler):
        """Conflicting sessions are reported and the rest booked"""
        book(datetime(2025, 6, 11, 9, 0), patient_id="pat-2")
        result = scheduler.create_recurring(RecurringRequest(
            patient_id="pat-1", doctor_id="doc-1", start_date=datetime(2025, 6, 10, 9, 0),
            frequency="daily", total_sessions=3,
        ), RECEPTIONIST)
        assert result.total_created == 2
        assert result.success_rate == 0.67
        assert len(result.errors) == 1
        assert "2025-06-11" in result.errors[0]

    def test_invalid_frequency(self, scheduler):
        """Only daily, weekly and monthly series exist"""
        with pytest.raises(ValidationError):
            scheduler.create_recurring(RecurringRequest(
                patient_id="pat-1", doctor_id="doc-1", start_date=datetime(2025, 6, 10),
                frequency="yearly", total_sessions=2,
            ), RECEPTIONIST)

    def test_empty_result_rate(self):
        """An empty result has a zero success rate"""
        assert RecurringResult().success_rate == 0.0


class TestStats:
    """Per-actor statistics"""

    def test_doctor_stats(self, book, scheduler):
        """Totals and rates over the doctor's appointments"""
        first = book(TEN_AM)
        book(datetime(2025, 6, 11, 10, 0))
        scheduler.cancel(first.id, "Conflict", RECEPTIONIST)
        stats = scheduler.stats(DOCTOR)
        assert stats["total_appointments"] == 2
        assert stats["cancelled_appointments"] == 1
        assert stats["upcoming_appointments"] == 1
        assert stats["cancellation_rate"] == 0.5

    def test_staff_has_no_stats(self, scheduler):
        """Statistics are for doctors and patients"""
        with pytest.raises(ValidationError):
            scheduler.stats(RECEPTIONIST)

    def test_empty_stats(self, scheduler):
        """No appointments gives zero rates"""
        stats = scheduler.stats(PATIENT)
        assert stats["total_appointments"] == 0
        assert stats["completion_rate"] == 0.0
