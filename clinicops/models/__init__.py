from clinicops.models.user import User, DoctorProfile
from clinicops.models.appointment import Appointment, AppointmentStatus
from clinicops.models.time_block import TimeBlock, BlockType, RecurrencePattern
from clinicops.models.reminder_models import (
    ReminderJob,
    ReminderLog,
    ReminderSetting,
    ReminderAnalytics,
    InAppNotification,
    ReminderChannel,
    ReminderKind,
    ReminderJobStatus,
    DeliveryStatus,
    TriggerType,
)

__all__ = [
    "User",
    "DoctorProfile",
    "Appointment",
    "AppointmentStatus",
    "TimeBlock",
    "BlockType",
    "RecurrencePattern",
    "ReminderJob",
    "ReminderLog",
    "ReminderSetting",
    "ReminderAnalytics",
    "InAppNotification",
    "ReminderChannel",
    "ReminderKind",
    "ReminderJobStatus",
    "DeliveryStatus",
    "TriggerType",
]
