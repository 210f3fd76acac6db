"""
Reminder delivery models.

ReminderJob carries the per-channel delivery state machine, ReminderLog
records every dispatch attempt, ReminderSetting holds the recipient's
preferences and ReminderAnalytics the per-day, per-doctor counters.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Date, Float,
    ForeignKey, JSON, Index, UniqueConstraint
)
from clinicops.database import Base


class ReminderChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class ReminderKind(str, enum.Enum):
    FIRST = "24h"
    SECOND = "2h"
    MANUAL = "manual"
    CUSTOM = "custom"


class ReminderJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


NON_TERMINAL_JOB_STATUSES = (
    ReminderJobStatus.PENDING.value,
    ReminderJobStatus.PROCESSING.value,
    ReminderJobStatus.FAILED.value,
)


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"
    CANCELLED = "cancelled"


class TriggerType(str, enum.Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ReminderJob(Base):
    """
    A channel-specific reminder scheduled for one appointment.

    active_key holds "<appointment>:<channel>:<kind>" while the job can
    still be delivered and is cleared on every terminal transition, so the
    unique constraint allows one live job per tuple.
    """
    __tablename__ = "reminder_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    channel = Column(String(16), nullable=False)
    reminder_kind = Column(String(16), nullable=False)
    status = Column(String(16), default=ReminderJobStatus.PENDING.value, nullable=False)

    scheduled_for = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_attempted_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    is_cancelled = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    job_payload = Column(JSON, nullable=True)
    active_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_reminder_jobs_status_scheduled", "status", "scheduled_for"),
    )

    @staticmethod
    def grouping_key(appointment_id: int, channel: str, reminder_kind: str) -> str:
        return f"{appointment_id}:{channel}:{reminder_kind}"

    @property
    def is_terminal(self) -> bool:
        if self.is_cancelled:
            return True
        if self.status in (ReminderJobStatus.SENT.value, ReminderJobStatus.EXPIRED.value,
                           ReminderJobStatus.CANCELLED.value):
            return True
        return self.status == ReminderJobStatus.FAILED.value and not self.can_retry()

    def can_retry(self) -> bool:
        return (
            self.status == ReminderJobStatus.FAILED.value
            and self.attempts < self.max_attempts
            and not self.is_cancelled
        )


class ReminderLog(Base):
    """Delivery record of one dispatch attempt."""
    __tablename__ = "reminder_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, ForeignKey("reminder_jobs.id"), nullable=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(String, nullable=True)

    channel = Column(String(16), nullable=False)
    reminder_kind = Column(String(16), nullable=False)
    trigger_type = Column(String(16), default=TriggerType.AUTOMATIC.value, nullable=False)
    delivery_status = Column(String(16), default=DeliveryStatus.PENDING.value, nullable=False)

    dispatch_key = Column(String(255), nullable=True, unique=True)
    tracking_token = Column(String(64), nullable=False, unique=True)

    scheduled_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)

    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    content = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_reminder_logs_appointment", "appointment_id"),
        Index("ix_reminder_logs_user_sent", "user_id", "sent_at"),
    )


class ReminderSetting(Base):
    """Reminder preferences of one user; created with defaults on first need."""
    __tablename__ = "reminder_settings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    user_type = Column(String(16), default="patient", nullable=False)

    email_enabled = Column(Boolean, default=True, nullable=False)
    sms_enabled = Column(Boolean, default=False, nullable=False)
    push_enabled = Column(Boolean, default=True, nullable=False)
    in_app_enabled = Column(Boolean, default=False, nullable=False)

    first_reminder_hours = Column(Integer, default=24, nullable=False)
    second_reminder_hours = Column(Integer, default=2, nullable=False)
    reminder_24h_enabled = Column(Boolean, default=True, nullable=False)
    reminder_2h_enabled = Column(Boolean, default=True, nullable=False)

    preferred_channels = Column(JSON, default=lambda: ["email", "push"])
    timezone = Column(String(64), default="UTC", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    opted_out_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "user_type", name="uq_reminder_settings_user"),
    )


class ReminderAnalytics(Base):
    """Daily reminder and appointment-outcome counters per doctor."""
    __tablename__ = "reminder_analytics"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    date = Column(Date, nullable=False)
    doctor_id = Column(String, ForeignKey("users.id"), nullable=False)

    reminders_sent = Column(Integer, default=0, nullable=False)
    reminders_delivered = Column(Integer, default=0, nullable=False)
    reminders_failed = Column(Integer, default=0, nullable=False)
    reminders_opened = Column(Integer, default=0, nullable=False)
    reminders_clicked = Column(Integer, default=0, nullable=False)

    email_sent = Column(Integer, default=0, nullable=False)
    sms_sent = Column(Integer, default=0, nullable=False)
    push_sent = Column(Integer, default=0, nullable=False)
    in_app_sent = Column(Integer, default=0, nullable=False)

    appointments_kept = Column(Integer, default=0, nullable=False)
    appointments_cancelled = Column(Integer, default=0, nullable=False)
    appointments_no_show = Column(Integer, default=0, nullable=False)
    appointments_rescheduled = Column(Integer, default=0, nullable=False)

    delivery_rate = Column(Float, default=0.0, nullable=False)
    open_rate = Column(Float, default=0.0, nullable=False)
    click_rate = Column(Float, default=0.0, nullable=False)
    attendance_rate = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("date", "doctor_id", name="uq_reminder_analytics_day_doctor"),
    )


class InAppNotification(Base):
    """Notification shown inside the patient portal."""
    __tablename__ = "in_app_notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    priority = Column(String(16), default="normal", nullable=False)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
