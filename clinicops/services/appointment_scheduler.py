"""
Appointment lifecycle.

    scheduled -> confirmed -> completed
    scheduled | rescheduled | confirmed -> cancelled_by_patient | cancelled_by_clinic
    scheduled | rescheduled | confirmed -> rescheduled (time changed)
    scheduled | rescheduled (start passed) -> no_show

"rescheduled" behaves exactly like "scheduled" for every later operation.

Each mutating operation runs its checks, the write, the reminder re-plan
and the analytics increments inside one transaction while holding the
doctor's schedule lock. Audit events are recorded after the commit.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import ClinicOpsError, NotFoundError, StateError, ValidationError
from clinicops.models.appointment import (
    Appointment, AppointmentStatus, ACTIVE_STATUSES, CANCELLED_STATUSES, UNCONFIRMED_STATUSES
)
from clinicops.services.audit_logger import (
    AuditAction, AuditEvent, AuditLogger, EntityKind, RelatedEntity, audit_logger
)
from clinicops.services.conflict_guard import ConflictGuard
from clinicops.services.directory import UserDirectory
from clinicops.services.patient_booking import PatientBookingPolicy
from clinicops.services.permissions import Action, Actor, ActorRole, authorize
from clinicops.services.reminder_analytics import ReminderAnalyticsAggregator
from clinicops.services.reminder_service import ReminderService
from clinicops.services.block_registry import BlockRegistry, add_months

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_TYPE = "consultation"
DEFAULT_REASON = "General consultation"
RECURRING_FREQUENCIES = ("daily", "weekly", "monthly")


@dataclass
class AppointmentRequest:
    patient_id: str
    doctor_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    appointment_type: str = DEFAULT_APPOINTMENT_TYPE
    reason: Optional[str] = None
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None
    series_id: Optional[str] = None


@dataclass
class RecurringRequest:
    patient_id: str
    doctor_id: str
    start_date: datetime
    frequency: str
    total_sessions: int
    duration_minutes: int = 30
    session_time: Optional[time] = None
    appointment_type: str = "follow-up"
    reason: Optional[str] = None


@dataclass
class RecurringResult:
    appointments: List[Appointment] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_requested: int = 0
    series_id: Optional[str] = None

    @property
    def total_created(self) -> int:
        return len(self.appointments)

    @property
    def success_rate(self) -> float:
        if not self.total_requested:
            return 0.0
        return round(self.total_created / self.total_requested, 2)


class AppointmentScheduler:
    UPDATABLE_FIELDS = ("start_time", "end_time", "appointment_type", "reason", "patient_notes", "doctor_notes")

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        directory: Optional[UserDirectory] = None,
        guard: Optional[ConflictGuard] = None,
        reminders: Optional[ReminderService] = None,
        analytics: Optional[ReminderAnalyticsAggregator] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.directory = directory or UserDirectory(db)
        self.audit = audit or audit_logger
        self.guard = guard or ConflictGuard(db, BlockRegistry(db, self.clock, self.directory, self.audit))
        self.reminders = reminders or ReminderService(db, clock=self.clock, directory=self.directory, audit=self.audit)
        self.analytics = analytics or ReminderAnalyticsAggregator(db, self.clock)
        self.policy = PatientBookingPolicy(db, self.clock, self.directory)

    # Reads

    def get(self, appointment_id: int, actor: Optional[Actor] = None) -> Appointment:
        appointment = self.db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.deleted_at.is_(None),
        ).first()
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if actor is not None:
            authorize(actor, Action.VIEW_APPOINTMENT, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        return appointment

    def can_be_cancelled(self, appointment: Appointment) -> bool:
        return (
            appointment.is_active
            and appointment.start_time > self.clock.now() + timedelta(hours=settings.CANCELLATION_MIN_HOURS)
        )

    # Booking

    def create(self, request: AppointmentRequest, actor: Actor) -> Appointment:
        authorize(actor, Action.BOOK_APPOINTMENT, doctor_id=request.doctor_id, patient_id=request.patient_id)
        self.directory.require(request.patient_id, ActorRole.PATIENT)
        self.directory.require(request.doctor_id, ActorRole.DOCTOR)

        start, end = self._interval(request.start_time, request.end_time)
        self._ensure_not_past(start)

        with self.guard.serialize(request.doctor_id):
            if actor.is_patient:
                self.policy.check_booking(request.patient_id, request.doctor_id, start)
            self.guard.ensure_available(request.doctor_id, start, end)
            appointment = Appointment(
                patient_id=request.patient_id,
                doctor_id=request.doctor_id,
                start_time=start,
                end_time=end,
                status=AppointmentStatus.SCHEDULED.value,
                appointment_type=request.appointment_type or DEFAULT_APPOINTMENT_TYPE,
                reason=request.reason or DEFAULT_REASON,
                patient_notes=request.patient_notes,
                doctor_notes=request.doctor_notes,
                series_id=request.series_id,
                booked_by=actor.user_id,
                last_updated_by=actor.user_id,
                reschedule_count=0,
            )
            self.db.add(appointment)
            self.db.flush()
            self.reminders.schedule_for_appointment(appointment)
            self.db.commit()

        self.db.refresh(appointment)
        logger.info(f"Appointment {appointment.id} booked with doctor {appointment.doctor_id} at {start.isoformat()}")
        self._audit(AuditAction.APPOINTMENT_CREATED, appointment, actor, after=appointment.snapshot())
        return appointment

    def create_recurring(self, request: RecurringRequest, actor: Actor) -> RecurringResult:
        """
        Book a series of sessions one by one.

        A session that fails (conflict, block, validation) is reported in
        errors and the series continues. Weekly series skip weekend dates.
        """
        authorize(actor, Action.BOOK_APPOINTMENT, doctor_id=request.doctor_id, patient_id=request.patient_id)
        if request.frequency not in RECURRING_FREQUENCIES:
            raise ValidationError(
                f"Invalid frequency. Must be: {', '.join(RECURRING_FREQUENCIES)}", code="invalid_frequency"
            )
        if request.total_sessions < 1:
            raise ValidationError("total_sessions must be at least 1", code="invalid_sessions")
        if request.duration_minutes < 1:
            raise ValidationError("duration_minutes must be at least 1", code="invalid_duration")
        self.directory.require(request.patient_id, ActorRole.PATIENT)
        self.directory.require(request.doctor_id, ActorRole.DOCTOR)

        result = RecurringResult(total_requested=request.total_sessions, series_id=str(uuid.uuid4()))
        first = request.start_date
        if request.session_time is not None:
            first = datetime.combine(first.date(), request.session_time)
        elif first.time() == time(0, 0):
            first = datetime.combine(first.date(), time(9, 0))

        for index in range(request.total_sessions):
            start = self._advance(first, request.frequency, index)
            session = index + 1
            if request.frequency == "weekly" and start.weekday() >= 5:
                result.errors.append(f"Session {session} on {start:%Y-%m-%d} skipped: falls on a weekend")
                continue
            try:
                appointment = self.create(
                    AppointmentRequest(
                        patient_id=request.patient_id,
                        doctor_id=request.doctor_id,
                        start_time=start,
                        end_time=start + timedelta(minutes=request.duration_minutes),
                        appointment_type=request.appointment_type,
                        reason=request.reason,
                        doctor_notes=f"Recurring appointment - Session {session} of {request.total_sessions}",
                        series_id=result.series_id,
                    ),
                    actor,
                )
                result.appointments.append(appointment)
            except ClinicOpsError as e:
                result.errors.append(f"Session {session} on {start:%Y-%m-%d %H:%M}: {e.message}")

        if not result.appointments:
            raise ValidationError(
                "Failed to create any appointments: " + "; ".join(result.errors),
                code="recurring_failed",
                details={"errors": result.errors},
            )
        logger.info(
            f"Recurring series {result.series_id}: {result.total_created}/{result.total_requested} sessions booked"
        )
        return result

    # Changes

    def update(self, appointment_id: int, changes: Dict[str, Any], actor: Actor) -> Appointment:
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}", code="invalid_field")

        appointment = self.get(appointment_id)
        authorize(actor, Action.UPDATE_APPOINTMENT, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)

        with self.guard.serialize(appointment.doctor_id):
            self.db.refresh(appointment)
            self._require_status(appointment, ACTIVE_STATUSES, "updated")
            before = appointment.snapshot()

            new_start = changes.get("start_time", appointment.start_time)
            new_end = changes.get("end_time")
            if "start_time" in changes and new_end is None:
                new_end = new_start + timedelta(minutes=appointment.duration_minutes)
            new_end = new_end or appointment.end_time
            time_changed = new_start != appointment.start_time or new_end != appointment.end_time

            if time_changed:
                self._move(appointment, new_start, new_end, actor)
            for name in ("appointment_type", "reason", "patient_notes", "doctor_notes"):
                if name in changes:
                    setattr(appointment, name, changes[name])
            appointment.last_updated_by = actor.user_id
            self.db.commit()

        self.db.refresh(appointment)
        action = AuditAction.APPOINTMENT_RESCHEDULED if time_changed else AuditAction.APPOINTMENT_UPDATED
        self._audit(action, appointment, actor, before=before, after=appointment.snapshot())
        return appointment

    def reschedule(
        self,
        appointment_id: int,
        new_start: datetime,
        actor: Actor,
        new_end: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        appointment = self.get(appointment_id)
        authorize(
            actor, Action.RESCHEDULE_APPOINTMENT, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id
        )

        with self.guard.serialize(appointment.doctor_id):
            self.db.refresh(appointment)
            self._require_status(appointment, ACTIVE_STATUSES, "rescheduled")
            before = appointment.snapshot()
            if new_end is None:
                new_end = new_start + timedelta(minutes=appointment.duration_minutes)
            if actor.is_patient:
                self.policy.check_reschedule(appointment, new_start)

            self._move(appointment, new_start, new_end, actor)
            if reason:
                appointment.doctor_notes = reason
            appointment.last_updated_by = actor.user_id
            self.db.commit()

        self.db.refresh(appointment)
        self._audit(AuditAction.APPOINTMENT_RESCHEDULED, appointment, actor, before=before, after=appointment.snapshot())
        return appointment

    def cancel(self, appointment_id: int, reason: str, actor: Actor) -> Appointment:
        return self._cancel(appointment_id, reason, actor, force=False)

    def force_cancel(self, appointment_id: int, reason: str, actor: Actor) -> Appointment:
        """Cancel without the notice period, e.g. a doctor emergency."""
        return self._cancel(appointment_id, reason, actor, force=True)

    def confirm(self, appointment_id: int, actor: Actor) -> Appointment:
        def apply(appointment: Appointment) -> None:
            self._require_status(appointment, UNCONFIRMED_STATUSES, "confirmed")
            appointment.status = AppointmentStatus.CONFIRMED.value
            appointment.confirmed_at = self.clock.now()

        return self._transition(
            appointment_id, actor, Action.CONFIRM_APPOINTMENT, AuditAction.APPOINTMENT_CONFIRMED, apply
        )

    def complete(self, appointment_id: int, actor: Actor, notes: Optional[str] = None) -> Appointment:
        def apply(appointment: Appointment) -> None:
            self._require_status(appointment, ACTIVE_STATUSES, "completed")
            appointment.status = AppointmentStatus.COMPLETED.value
            appointment.completed_at = self.clock.now()
            if notes:
                appointment.doctor_notes = notes
            self.reminders.cancel_for_appointment(appointment.id, "Appointment completed")
            self.analytics.record_outcome(appointment.doctor_id, "completed")

        return self._transition(
            appointment_id, actor, Action.COMPLETE_APPOINTMENT, AuditAction.APPOINTMENT_COMPLETED, apply
        )

    def mark_no_show(self, appointment_id: int, actor: Actor) -> Appointment:
        def apply(appointment: Appointment) -> None:
            self._require_status(appointment, UNCONFIRMED_STATUSES, "marked as no-show")
            if appointment.start_time > self.clock.now():
                raise StateError("Cannot mark future appointments as no-show", code="not_started")
            appointment.status = AppointmentStatus.NO_SHOW.value
            self.reminders.cancel_for_appointment(appointment.id, "Appointment marked as no-show")
            self.analytics.record_outcome(appointment.doctor_id, "no_show")

        return self._transition(appointment_id, actor, Action.MARK_NO_SHOW, AuditAction.APPOINTMENT_NO_SHOW, apply)

    def remove(self, appointment_id: int, actor: Actor) -> Appointment:
        def apply(appointment: Appointment) -> None:
            appointment.deleted_at = self.clock.now()
            self.reminders.cancel_for_appointment(appointment.id, "Appointment removed")

        return self._transition(
            appointment_id, actor, Action.REMOVE_APPOINTMENT, AuditAction.APPOINTMENT_REMOVED, apply
        )

    # Statistics

    def stats(self, actor: Actor) -> Dict[str, Any]:
        """Status totals and rates over the actor's own appointments."""
        if actor.role == ActorRole.DOCTOR:
            owner = Appointment.doctor_id
        elif actor.role == ActorRole.PATIENT:
            owner = Appointment.patient_id
        else:
            raise ValidationError("Statistics are available to doctors and patients", code="invalid_role")

        rows = self.db.query(Appointment.status, func.count(Appointment.id)).filter(
            owner == actor.user_id,
            Appointment.deleted_at.is_(None),
        ).group_by(Appointment.status).all()
        by_status = {status: count for status, count in rows}

        total = sum(by_status.values())
        completed = by_status.get(AppointmentStatus.COMPLETED.value, 0)
        cancelled = sum(by_status.get(status, 0) for status in CANCELLED_STATUSES)
        no_show = by_status.get(AppointmentStatus.NO_SHOW.value, 0)
        upcoming = self.db.query(func.count(Appointment.id)).filter(
            owner == actor.user_id,
            Appointment.deleted_at.is_(None),
            Appointment.start_time > self.clock.now(),
            Appointment.status.in_(ACTIVE_STATUSES),
        ).scalar() or 0

        def ratio(value: int) -> float:
            return round(value / total, 2) if total else 0.0

        return {
            "total_appointments": total,
            "by_status": by_status,
            "completed_appointments": completed,
            "cancelled_appointments": cancelled,
            "no_show_appointments": no_show,
            "upcoming_appointments": upcoming,
            "completion_rate": ratio(completed),
            "cancellation_rate": ratio(cancelled),
            "no_show_rate": ratio(no_show),
        }

    # Internals

    def _cancel(self, appointment_id: int, reason: str, actor: Actor, force: bool) -> Appointment:
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", code="missing_reason")
        action = Action.FORCE_CANCEL_APPOINTMENT if force else Action.CANCEL_APPOINTMENT

        def apply(appointment: Appointment) -> None:
            self._require_status(appointment, ACTIVE_STATUSES, "cancelled")
            if not force and not self.can_be_cancelled(appointment):
                raise StateError(
                    f"Appointments can only be cancelled more than {settings.CANCELLATION_MIN_HOURS} hours "
                    f"before they start",
                    code="not_cancellable",
                )
            if actor.is_patient and not force:
                self.policy.check_cancellation(appointment)

            appointment.status = (
                AppointmentStatus.CANCELLED_BY_PATIENT.value if actor.is_patient
                else AppointmentStatus.CANCELLED_BY_CLINIC.value
            )
            appointment.cancellation_reason = reason.strip()
            appointment.cancelled_at = self.clock.now()
            appointment.cancelled_by = actor.user_id
            self.reminders.cancel_for_appointment(appointment.id, "Appointment cancelled")
            self.analytics.record_outcome(appointment.doctor_id, "cancelled")

        return self._transition(appointment_id, actor, action, AuditAction.APPOINTMENT_CANCELLED, apply)

    def _transition(self, appointment_id: int, actor: Actor, action: Action, audit_action: str, apply) -> Appointment:
        appointment = self.get(appointment_id)
        authorize(actor, action, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)

        with self.guard.serialize(appointment.doctor_id):
            self.db.refresh(appointment)
            before = appointment.snapshot()
            apply(appointment)
            appointment.last_updated_by = actor.user_id
            self.db.commit()

        self.db.refresh(appointment)
        self._audit(audit_action, appointment, actor, before=before, after=appointment.snapshot())
        return appointment

    def _move(self, appointment: Appointment, new_start: datetime, new_end: datetime, actor: Actor) -> None:
        """Change the time of an appointment; caller holds the doctor lock."""
        start, end = self._interval(new_start, new_end)
        self._ensure_not_past(start)
        self.guard.ensure_available(appointment.doctor_id, start, end, exclude_appointment_id=appointment.id)

        appointment.start_time = start
        appointment.end_time = end
        appointment.status = AppointmentStatus.RESCHEDULED.value
        appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
        appointment.rescheduled_at = self.clock.now()
        self.db.flush()

        self.reminders.schedule_for_appointment(appointment, reason="rescheduled")
        self.analytics.record_outcome(appointment.doctor_id, "rescheduled")
        logger.info(f"Appointment {appointment.id} moved to {start.isoformat()} by {actor.user_id}")

    def _interval(self, start: Optional[datetime], end: Optional[datetime]):
        if start is None:
            raise ValidationError("Appointment start time is required", code="missing_start")
        if end is None:
            end = start + timedelta(minutes=settings.DEFAULT_APPOINTMENT_MINUTES)
        if start >= end:
            raise ValidationError("Appointment end must be after its start", code="invalid_interval")
        return start, end

    def _ensure_not_past(self, start: datetime) -> None:
        if start < self.clock.now() - timedelta(minutes=settings.PAST_START_GRACE_MINUTES):
            raise ValidationError("Appointment start time cannot be in the past", code="start_in_past")

    @staticmethod
    def _require_status(appointment: Appointment, allowed, verb: str) -> None:
        if appointment.status not in allowed:
            raise StateError(
                f"A {appointment.status} appointment cannot be {verb}",
                code="invalid_state",
                details={"status": appointment.status},
            )

    @staticmethod
    def _advance(first: datetime, frequency: str, index: int) -> datetime:
        if frequency == "daily":
            return first + timedelta(days=index)
        if frequency == "weekly":
            return first + timedelta(weeks=index)
        return add_months(first, index)

    def _audit(self, action: str, appointment: Appointment, actor: Actor,
               before: Optional[Dict[str, Any]] = None, after: Optional[Dict[str, Any]] = None) -> None:
        self.audit.record(AuditEvent(
            action=action,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.APPOINTMENT, str(appointment.id)),
            before=before,
            after=after,
            related=[
                RelatedEntity(EntityKind.USER, appointment.patient_id),
                RelatedEntity(EntityKind.USER, appointment.doctor_id),
            ],
        ))
