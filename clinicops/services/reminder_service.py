"""
Reminder operations exposed to the booking flow and the API.

schedule_for_appointment() and cancel_for_appointment() run inside the
caller's transaction; the remaining operations commit themselves.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import (
    AuthorizationError, ClinicOpsError, NotFoundError, TransportFailure, ValidationError
)
from clinicops.models.appointment import Appointment
from clinicops.models.reminder_models import (
    DeliveryStatus, ReminderChannel, ReminderJob, ReminderKind, ReminderLog, ReminderSetting
)
from clinicops.services.audit_logger import (
    AuditAction, AuditEvent, AuditLogger, EntityKind, RelatedEntity, audit_logger
)
from clinicops.services.directory import UserDirectory
from clinicops.services.permissions import Action, Actor, ActorRole, authorize
from clinicops.services.reminder_analytics import ReminderAnalyticsAggregator
from clinicops.services.reminder_content import TEST_MESSAGE, ReminderRenderer
from clinicops.services.reminder_dispatcher import DispatchSummary, ReminderDispatcher
from clinicops.services.reminder_job_store import ReminderJobStore
from clinicops.services.reminder_planner import ReminderPlanner
from clinicops.services.reminder_settings import ReminderPreferences, ReminderSettingsStore
from clinicops.services.transports import ChannelTransports

logger = logging.getLogger(__name__)

AUTOMATIC_KINDS = (ReminderKind.FIRST, ReminderKind.SECOND)

OPT_OUT_KINDS = {
    ReminderKind.FIRST.value: (ReminderKind.FIRST,),
    ReminderKind.SECOND.value: (ReminderKind.SECOND,),
    ReminderKind.CUSTOM.value: (ReminderKind.CUSTOM,),
    "all": (ReminderKind.FIRST, ReminderKind.SECOND, ReminderKind.CUSTOM),
}

APPOINTMENT_PREFERENCE_FIELDS = (
    "channels", "first_reminder_hours", "second_reminder_hours", "reminder_24h_enabled", "reminder_2h_enabled",
)

BULK_OPERATIONS = ("schedule", "cancel", "reschedule", "test")
BULK_TEST_MESSAGE = "Bulk test reminder"


@dataclass
class ChannelResult:
    channel: str
    success: bool
    job_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel, "success": self.success, "job_id": self.job_id, "error": self.error}


@dataclass
class BulkResult:
    operation: str
    results: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r["status"] == "success")

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.success_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total_processed": len(self.results),
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "results": self.results,
        }


def _channels(values) -> List[ReminderChannel]:
    result = []
    for value in values or []:
        try:
            channel = ReminderChannel(value)
        except ValueError:
            raise ValidationError(f"Unknown reminder channel: {value}", code="invalid_channel")
        if channel not in result:
            result.append(channel)
    if not result:
        raise ValidationError("At least one channel is required", code="invalid_channel")
    return result


class ReminderService:
    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        transports: Optional[ChannelTransports] = None,
        directory: Optional[UserDirectory] = None,
        audit: Optional[AuditLogger] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.directory = directory or UserDirectory(db)
        self.audit = audit or audit_logger
        self.store = ReminderJobStore(db, self.clock)
        self.planner = ReminderPlanner(self.clock)
        self.settings_store = ReminderSettingsStore(db, self.clock)
        self.analytics = ReminderAnalyticsAggregator(db, self.clock)
        self._transports = transports
        self._session_factory = session_factory
        self._dispatcher: Optional[ReminderDispatcher] = None

    @property
    def dispatcher(self) -> ReminderDispatcher:
        if self._dispatcher is None:
            transports = self._transports
            if transports is None:
                from clinicops.database import SessionLocal
                transports = ChannelTransports.from_settings(self._session_factory or SessionLocal)
            self._dispatcher = ReminderDispatcher(
                self.db, transports, clock=self.clock, directory=self.directory, analytics=self.analytics
            )
        return self._dispatcher

    # Booking-flow hooks (no commit)

    def schedule_for_appointment(
        self,
        appointment: Appointment,
        reason: str = "rescheduled",
        kinds: Optional[List[ReminderKind]] = None,
    ) -> List[ReminderJob]:
        """Replace the automatic reminder plan of an appointment."""
        self.store.cancel_for_appointment(appointment.id, reason, kinds=kinds)
        specs = self.planner.plan(appointment.start_time, self.appointment_preferences(appointment))
        jobs = self.store.create_jobs(appointment, appointment.patient_id, specs)
        logger.info(f"Planned {len(jobs)} reminder job(s) for appointment {appointment.id}")
        return jobs

    def cancel_for_appointment(self, appointment_id: int, reason: str) -> int:
        return self.store.cancel_for_appointment(appointment_id, reason)

    def appointment_preferences(self, appointment: Appointment) -> ReminderPreferences:
        """The patient's settings with this appointment's overrides applied."""
        preferences = self.settings_store.preferences_for(appointment.patient_id)
        return preferences.with_overrides(appointment.reminder_preferences)

    # API operations

    def schedule_reminders(self, appointment_id: int, actor: Actor) -> List[ReminderJob]:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        self._require_upcoming(appointment)
        jobs = self.schedule_for_appointment(appointment)
        self.db.commit()
        return jobs

    def cancel_reminders(self, appointment_id: int, actor: Actor, reason: str = "Cancelled by request") -> int:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        count = self.store.cancel_for_appointment(appointment.id, reason)
        self.db.commit()
        return count

    def send_immediate(
        self,
        appointment_id: int,
        channels: List[str],
        actor: Actor,
        message: Optional[str] = None,
    ) -> List[ChannelResult]:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.SEND_REMINDER, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        self._require_upcoming(appointment)

        results = []
        for channel in _channels(channels):
            try:
                job = self.store.create_job(
                    appointment.id, appointment.patient_id, channel, ReminderKind.MANUAL,
                    self.clock.now(), payload={"message": message} if message else None,
                )
                self.db.commit()
            except ValidationError as e:
                self.db.rollback()
                results.append(ChannelResult(channel=channel.value, success=False, error=e.message))
                continue

            outcome = self.dispatcher.dispatch_job(job.id)
            results.append(ChannelResult(
                channel=channel.value,
                success=outcome.outcome == "sent",
                job_id=job.id,
                error=outcome.error,
            ))
        return results

    def send_test(self, user_id: str, channels: List[str], actor: Actor) -> List[ChannelResult]:
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=user_id, patient_id=user_id)
        recipient = self.directory.get(user_id)
        if recipient is None:
            raise NotFoundError("User not found")

        start = self.clock.now() + timedelta(days=1)
        sample = Appointment(
            id=0,
            patient_id=user_id,
            doctor_id=user_id,
            start_time=start,
            end_time=start + timedelta(minutes=settings.DEFAULT_APPOINTMENT_MINUTES),
        )
        preferences = self.settings_store.preferences_for(user_id)
        renderer = ReminderRenderer()

        results = []
        for channel in _channels(channels):
            content = renderer.render(
                channel, ReminderKind.MANUAL.value, sample, recipient.name, settings.CLINIC_NAME,
                tz_name=preferences.timezone, custom_message=TEST_MESSAGE,
            )
            try:
                self.dispatcher.deliver(channel, recipient, content)
                results.append(ChannelResult(channel=channel.value, success=True))
            except TransportFailure as e:
                results.append(ChannelResult(channel=channel.value, success=False, error=e.message))
        return results

    def schedule_custom_reminder(
        self,
        appointment_id: int,
        channel: str,
        scheduled_for: datetime,
        actor: Actor,
        message: Optional[str] = None,
    ) -> ReminderJob:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        self._require_upcoming(appointment)
        if scheduled_for <= self.clock.now():
            raise ValidationError("Reminder time must be in the future", code="reminder_in_past")
        if scheduled_for >= appointment.start_time:
            raise ValidationError("Reminder time must be before the appointment", code="reminder_after_start")

        job = self.store.create_job(
            appointment.id, appointment.patient_id, ReminderChannel(channel), ReminderKind.CUSTOM,
            scheduled_for, payload={"message": message} if message else None,
        )
        self.db.commit()
        self.db.refresh(job)
        return job

    def cancel_reminder(self, job_id: str, actor: Actor) -> ReminderJob:
        self._authorize_job(job_id, actor)
        return self.store.cancel_job(job_id, "Cancelled by request")

    def reschedule_reminder(self, job_id: str, scheduled_for: datetime, actor: Actor) -> ReminderJob:
        job = self._authorize_job(job_id, actor)
        appointment = self._appointment(job.appointment_id)
        if scheduled_for <= self.clock.now():
            raise ValidationError("Reminder time must be in the future", code="reminder_in_past")
        if scheduled_for >= appointment.start_time:
            raise ValidationError("Reminder time must be before the appointment", code="reminder_after_start")
        return self.store.reschedule_job(job_id, scheduled_for)

    def get_status(self, appointment_id: int, actor: Actor) -> Dict[str, Any]:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.VIEW_APPOINTMENT, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        logs = self.db.query(ReminderLog).filter(
            ReminderLog.appointment_id == appointment.id
        ).order_by(ReminderLog.created_at.desc()).all()

        delivery: Dict[str, Dict[str, int]] = {}
        for log in logs:
            per_channel = delivery.setdefault(log.channel, {})
            per_channel[log.delivery_status] = per_channel.get(log.delivery_status, 0) + 1

        return {
            "appointment_id": appointment.id,
            "jobs": self.store.jobs_for_appointment(appointment.id),
            "logs": logs,
            "statistics": self.store.statistics(appointment.id),
            "delivery_by_channel": delivery,
        }

    def get_settings(self, user_id: str, actor: Actor) -> ReminderSetting:
        user_type = self._user_type(user_id, actor)
        return self.settings_store.get_or_create(user_id, user_type)

    def update_settings(self, user_id: str, changes: Dict[str, Any], actor: Actor) -> ReminderSetting:
        user_type = self._user_type(user_id, actor)
        before = self.settings_store.get_or_create(user_id, user_type)
        snapshot = {k: getattr(before, k) for k in changes if hasattr(before, k)}
        setting = self.settings_store.update(user_id, changes, user_type)
        self.audit.record(AuditEvent(
            action=AuditAction.REMINDER_SETTINGS_UPDATED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.REMINDER_SETTING, setting.id),
            before=snapshot,
            after={k: getattr(setting, k) for k in snapshot},
            related=[RelatedEntity(EntityKind.USER, user_id)],
        ))
        return setting

    def opt_out(self, user_id: str, actor: Actor, reason: str = "User opted out") -> Dict[str, Any]:
        user_type = self._user_type(user_id, actor)
        setting = self.settings_store.opt_out(user_id, user_type)
        cancelled = self.store.cancel_for_user(user_id, reason)
        self.db.commit()
        logger.info(f"User {user_id} opted out of reminders, {cancelled} pending job(s) cancelled")
        self.audit.record(AuditEvent(
            action=AuditAction.REMINDER_OPT_OUT,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.REMINDER_SETTING, setting.id),
            after={"cancelled_jobs": cancelled, "reason": reason},
        ))
        return {"user_id": user_id, "cancelled_jobs": cancelled, "opted_out_at": setting.opted_out_at}

    def opt_out_appointment(
        self,
        appointment_id: int,
        actor: Actor,
        reminder_type: str = "all",
        channels: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Stop some reminders of one appointment.

        Matching live jobs are cancelled. Opted-out automatic reminders are
        remembered on the appointment so a later re-plan (reschedule,
        preference change) does not bring them back.
        """
        appointment = self._appointment(appointment_id)
        if appointment.patient_id != actor.user_id:
            raise AuthorizationError(
                "You can only opt out of your own appointment reminders", code="ownership_mismatch"
            )
        kinds = OPT_OUT_KINDS.get(reminder_type)
        if kinds is None:
            raise ValidationError(
                f"Invalid reminder type. Must be: {', '.join(OPT_OUT_KINDS)}", code="invalid_reminder_type"
            )
        selected = _channels(channels) if channels is not None else list(ReminderChannel)

        cancelled = self.store.cancel_for_appointment(
            appointment.id, "Opted out by patient", kinds=kinds, channels=selected
        )
        overrides = dict(appointment.reminder_preferences or {})
        excluded = set(overrides.get("opted_out") or [])
        excluded.update(
            f"{kind.value}:{channel.value}" for kind in kinds if kind in AUTOMATIC_KINDS for channel in selected
        )
        overrides["opted_out"] = sorted(excluded)
        appointment.reminder_preferences = overrides
        self.db.commit()

        logger.info(f"Patient {actor.user_id} opted out of {reminder_type} reminders for appointment {appointment.id}")
        self.audit.record(AuditEvent(
            action=AuditAction.REMINDER_OPT_OUT,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.APPOINTMENT, str(appointment.id)),
            after={"reminder_type": reminder_type, "channels": [c.value for c in selected], "cancelled_jobs": cancelled},
        ))
        return {
            "appointment_id": appointment.id,
            "reminder_type": reminder_type,
            "channels": [c.value for c in selected],
            "cancelled_count": cancelled,
        }

    def update_appointment_preferences(
        self, appointment_id: int, changes: Dict[str, Any], actor: Actor
    ) -> Dict[str, Any]:
        appointment = self._appointment(appointment_id)
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)

        overrides = dict(appointment.reminder_preferences or {})
        before = dict(overrides)
        for name, value in changes.items():
            if value is None:
                continue
            if name not in APPOINTMENT_PREFERENCE_FIELDS:
                raise ValidationError(f"Unknown reminder preference: {name}", code="unknown_setting")
            if name == "channels":
                value = [c.value for c in _channels(value)]
            elif name in ("first_reminder_hours", "second_reminder_hours"):
                value = int(value)
            else:
                value = bool(value)
            overrides[name] = value
        appointment.reminder_preferences = overrides

        jobs: List[ReminderJob] = []
        if appointment.is_active and appointment.start_time > self.clock.now():
            jobs = self.schedule_for_appointment(
                appointment, "Reminder preferences updated", kinds=list(AUTOMATIC_KINDS)
            )
        self.db.commit()

        logger.info(f"Reminder preferences updated for appointment {appointment.id}, {len(jobs)} job(s) planned")
        self.audit.record(AuditEvent(
            action=AuditAction.REMINDER_PREFERENCES_UPDATED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.APPOINTMENT, str(appointment.id)),
            before=before,
            after=overrides,
        ))
        return {"appointment_id": appointment.id, "preferences": overrides, "jobs": jobs}

    def upcoming_reminders(self, actor: Actor, limit: int = 10) -> List[ReminderJob]:
        return self.store.upcoming_for_user(actor.user_id, max(1, min(limit, 100)))

    def bulk_operation(
        self,
        operation: str,
        appointment_ids: List[int],
        actor: Actor,
        channels: Optional[List[str]] = None,
    ) -> BulkResult:
        """Apply one reminder operation to many appointments, reporting each outcome."""
        authorize(actor, Action.BULK_REMINDERS)
        if operation not in BULK_OPERATIONS:
            raise ValidationError(
                f"Invalid operation. Must be: {', '.join(BULK_OPERATIONS)}", code="invalid_operation"
            )

        result = BulkResult(operation=operation)
        for appointment_id in appointment_ids:
            try:
                if operation == "schedule":
                    outcome = {"scheduled": len(self.schedule_reminders(appointment_id, actor))}
                elif operation == "cancel":
                    outcome = {"cancelled": self.cancel_reminders(appointment_id, actor, "Bulk cancellation")}
                elif operation == "reschedule":
                    cancelled = self.cancel_reminders(appointment_id, actor, "Bulk reschedule")
                    outcome = {
                        "cancelled": cancelled,
                        "scheduled": len(self.schedule_reminders(appointment_id, actor)),
                    }
                else:
                    sends = self.send_immediate(appointment_id, channels or ["email"], actor, BULK_TEST_MESSAGE)
                    outcome = {"channels": [s.to_dict() for s in sends]}
            except ClinicOpsError as e:
                self.db.rollback()
                result.results.append({"appointment_id": appointment_id, "status": "failed", "error": e.message})
                continue
            result.results.append({"appointment_id": appointment_id, "status": "success", "result": outcome})

        logger.info(
            f"Bulk reminder {operation}: {result.success_count} successful, {result.failed_count} failed"
        )
        self.audit.record(AuditEvent(
            action=AuditAction.REMINDER_BULK_OPERATION,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.USER, actor.user_id),
            after={"operation": operation, "success_count": result.success_count, "failed_count": result.failed_count},
            related=[RelatedEntity(EntityKind.APPOINTMENT, str(i)) for i in appointment_ids],
        ))
        return result

    def get_analytics(
        self,
        actor: Actor,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        doctor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if actor.role == ActorRole.DOCTOR and doctor_id is None:
            doctor_id = actor.user_id
        authorize(actor, Action.VIEW_ANALYTICS, doctor_id=doctor_id)
        if start_date is None or end_date is None:
            default_start, default_end = self.analytics.default_range()
            start_date = start_date or default_start
            end_date = end_date or default_end
        return self.analytics.summary(start_date, end_date, doctor_id)

    # Delivery events reported by providers and tracking links

    def record_delivered(self, tracking_token: str) -> ReminderLog:
        log = self._log_by_token(tracking_token)
        if log.delivery_status == DeliveryStatus.SENT.value:
            self._mark_delivered(log)
            self.db.commit()
        return log

    def record_opened(self, tracking_token: str) -> ReminderLog:
        log = self._log_by_token(tracking_token)
        if log.opened_at is None:
            self._mark_opened(log)
            self.db.commit()
        return log

    def record_clicked(self, tracking_token: str) -> ReminderLog:
        log = self._log_by_token(tracking_token)
        if log.clicked_at is None:
            if log.opened_at is None:
                self._mark_opened(log)
            log.clicked_at = self.clock.now()
            self.analytics.record_dispatch(log.doctor_id, log.channel, "clicked")
            self.db.commit()
        return log

    def record_bounced(self, tracking_token: str, error: Optional[str] = None) -> ReminderLog:
        log = self._log_by_token(tracking_token)
        if log.delivery_status in (DeliveryStatus.SENT.value, DeliveryStatus.PENDING.value):
            log.delivery_status = DeliveryStatus.BOUNCED.value
            log.failed_at = self.clock.now()
            log.error_message = error or "Message bounced"
            self.analytics.record_dispatch(log.doctor_id, log.channel, "failed")
            self.db.commit()
        return log

    def acknowledge(self, log_id: str, actor: Actor) -> ReminderLog:
        log = self.db.query(ReminderLog).filter(ReminderLog.id == log_id).first()
        if log is None:
            raise NotFoundError("Reminder not found")
        if log.user_id != actor.user_id:
            raise AuthorizationError("Only the recipient can acknowledge a reminder", code="ownership_mismatch")
        if log.acknowledged_at is None:
            log.acknowledged_at = self.clock.now()
            self.db.commit()
        return log

    # Maintenance

    def dispatch_due(self, limit: Optional[int] = None) -> DispatchSummary:
        return self.dispatcher.dispatch_due(limit)

    def sweep_expired(self) -> int:
        return self.store.sweep_expired()

    def cleanup_old_data(self, days: Optional[int] = None) -> Dict[str, int]:
        return self.store.cleanup(days or settings.REMINDER_DATA_RETENTION_DAYS)

    # Helpers

    def _mark_delivered(self, log: ReminderLog) -> None:
        log.delivery_status = DeliveryStatus.DELIVERED.value
        log.delivered_at = self.clock.now()
        self.analytics.record_dispatch(log.doctor_id, log.channel, "delivered")

    def _mark_opened(self, log: ReminderLog) -> None:
        if log.delivery_status == DeliveryStatus.SENT.value:
            self._mark_delivered(log)
        log.opened_at = self.clock.now()
        self.analytics.record_dispatch(log.doctor_id, log.channel, "opened")

    def _log_by_token(self, tracking_token: str) -> ReminderLog:
        log = self.db.query(ReminderLog).filter(ReminderLog.tracking_token == tracking_token).first()
        if log is None:
            raise NotFoundError("Reminder not found")
        return log

    def _appointment(self, appointment_id: int) -> Appointment:
        appointment = self.db.query(Appointment).filter(
            Appointment.id == appointment_id,
            Appointment.deleted_at.is_(None),
        ).first()
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    def _require_upcoming(self, appointment: Appointment) -> None:
        if not appointment.is_active:
            raise ValidationError(
                f"Reminders are not available for {appointment.status} appointments", code="appointment_inactive"
            )
        if appointment.start_time <= self.clock.now():
            raise ValidationError("Appointment has already started", code="appointment_started")

    def _authorize_job(self, job_id: str, actor: Actor) -> ReminderJob:
        job = self.store.get(job_id)
        appointment = self._appointment(job.appointment_id)
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=appointment.doctor_id, patient_id=appointment.patient_id)
        return job

    def _user_type(self, user_id: str, actor: Actor) -> str:
        authorize(actor, Action.MANAGE_REMINDERS, doctor_id=user_id, patient_id=user_id)
        entry = self.directory.get(user_id)
        if entry is None:
            raise NotFoundError("User not found")
        return entry.role.value
