import enum

from sqlalchemy import Column, String, DateTime, Text, Integer, ForeignKey, Index, JSON
from sqlalchemy.sql import func
from clinicops.database import Base


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED_BY_PATIENT = "cancelled_by_patient"
    CANCELLED_BY_CLINIC = "cancelled_by_clinic"
    NO_SHOW = "no_show"


# "rescheduled" marks a time change and otherwise behaves like "scheduled"
UNCONFIRMED_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.RESCHEDULED.value)
ACTIVE_STATUSES = UNCONFIRMED_STATUSES + (AppointmentStatus.CONFIRMED.value,)
CANCELLED_STATUSES = (
    AppointmentStatus.CANCELLED_BY_PATIENT.value,
    AppointmentStatus.CANCELLED_BY_CLINIC.value,
)
TERMINAL_STATUSES = CANCELLED_STATUSES + (
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.NO_SHOW.value,
)


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    status = Column(String(32), default=AppointmentStatus.SCHEDULED.value, nullable=False)
    appointment_type = Column(String(50), default="consultation", nullable=False)
    reason = Column(Text, nullable=True)

    patient_notes = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    reschedule_count = Column(Integer, default=0, nullable=False)
    rescheduled_at = Column(DateTime, nullable=True)

    series_id = Column(String, nullable=True, index=True)

    # Overrides of the patient's reminder settings for this appointment only
    reminder_preferences = Column(JSON, nullable=True)

    booked_by = Column(String, nullable=True)
    last_updated_by = Column(String, nullable=True)

    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_appointments_doctor_start", "doctor_id", "start_time"),
        Index("ix_appointments_patient_start", "patient_id", "start_time"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES and self.deleted_at is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def snapshot(self) -> dict:
        """Plain-value copy of the fields audit events care about."""
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status,
            "appointment_type": self.appointment_type,
            "reason": self.reason,
            "cancellation_reason": self.cancellation_reason,
            "reschedule_count": self.reschedule_count,
        }
