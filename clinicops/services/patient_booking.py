"""
Extra rules applied when a patient books, cancels or reschedules on
their own behalf. Staff and doctors are not subject to them.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import ValidationError
from clinicops.models.appointment import Appointment, AppointmentStatus, ACTIVE_STATUSES
from clinicops.services.directory import PatientDirectory, UserDirectory

logger = logging.getLogger(__name__)


class PatientBookingPolicy:
    def __init__(self, db: Session, clock: Optional[Clock] = None, directory: Optional[UserDirectory] = None):
        self.db = db
        self.clock = clock or system_clock
        self.directory = directory or UserDirectory(db)
        self.patients = PatientDirectory(db)

    def max_upcoming(self, doctor_id: str) -> int:
        return self.directory.max_patient_appointments(doctor_id) or settings.DEFAULT_MAX_PATIENT_APPOINTMENTS

    def check_booking(
        self,
        patient_id: str,
        doctor_id: str,
        start_time: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> None:
        if self.patients.get_patient(patient_id) is None:
            raise ValidationError("Patient not found", code="invalid_patient")

        now = self.clock.now()
        if start_time < now + timedelta(hours=settings.PATIENT_MIN_ADVANCE_HOURS):
            raise ValidationError(
                f"Appointments must be booked at least {settings.PATIENT_MIN_ADVANCE_HOURS} hours in advance",
                code="insufficient_notice",
            )

        limit = self.max_upcoming(doctor_id)
        upcoming = self._patient_query(patient_id, doctor_id, exclude_appointment_id).filter(
            Appointment.start_time > now,
            Appointment.status.in_(ACTIVE_STATUSES),
        ).count()
        if upcoming >= limit:
            raise ValidationError(
                f"You cannot have more than {limit} upcoming appointments with this doctor",
                code="too_many_appointments",
            )

        day_start = datetime.combine(start_time.date(), datetime.min.time())
        same_day = self._patient_query(patient_id, doctor_id, exclude_appointment_id).filter(
            Appointment.start_time >= day_start,
            Appointment.start_time < day_start + timedelta(days=1),
            Appointment.status.in_(ACTIVE_STATUSES),
        ).first()
        if same_day is not None:
            raise ValidationError(
                "You already have an appointment with this doctor on this date",
                code="same_day_appointment",
            )

    def check_cancellation(self, appointment: Appointment) -> None:
        now = self.clock.now()
        if appointment.start_time < now + timedelta(hours=settings.PATIENT_CANCELLATION_NOTICE_HOURS):
            raise ValidationError(
                f"Appointments must be cancelled at least "
                f"{settings.PATIENT_CANCELLATION_NOTICE_HOURS} hours in advance",
                code="insufficient_notice",
            )

        since = now - timedelta(days=settings.PATIENT_CANCELLATION_WINDOW_DAYS)
        recent = self.db.query(func.count(Appointment.id)).filter(
            Appointment.patient_id == appointment.patient_id,
            Appointment.status == AppointmentStatus.CANCELLED_BY_PATIENT.value,
            Appointment.cancelled_at >= since,
        ).scalar() or 0
        if recent >= settings.PATIENT_CANCELLATION_LIMIT:
            logger.info(f"Patient {appointment.patient_id} reached the cancellation limit ({recent})")
            raise ValidationError(
                "You have cancelled too many appointments recently. Please contact the clinic.",
                code="cancellation_limit_reached",
            )

    def check_reschedule(self, appointment: Appointment, new_start: datetime) -> None:
        if (appointment.reschedule_count or 0) > 0:
            raise ValidationError(
                "Appointments can only be rescheduled once. Please contact the clinic for further changes.",
                code="reschedule_limit_reached",
            )
        self.check_booking(
            appointment.patient_id, appointment.doctor_id, new_start, exclude_appointment_id=appointment.id
        )

    def _patient_query(self, patient_id: str, doctor_id: str, exclude_appointment_id: Optional[int]):
        query = self.db.query(Appointment).filter(
            Appointment.patient_id == patient_id,
            Appointment.doctor_id == doctor_id,
            Appointment.deleted_at.is_(None),
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return query
