"""
Pydantic schemas for the reminders API.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from clinicops.models.reminder_models import ReminderChannel


class SendReminderRequest(BaseModel):
    channels: List[ReminderChannel] = Field(..., min_length=1)
    message: Optional[str] = Field(None, max_length=1000)


class TestReminderRequest(BaseModel):
    user_id: Optional[str] = None
    channels: List[ReminderChannel] = Field(..., min_length=1)


class CustomReminderRequest(BaseModel):
    channel: ReminderChannel
    scheduled_for: datetime
    message: Optional[str] = Field(None, max_length=1000)


class RescheduleReminderRequest(BaseModel):
    scheduled_for: datetime


class OptOutRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class BounceReport(BaseModel):
    error: Optional[str] = None


class ReminderSettingsUpdate(BaseModel):
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None
    first_reminder_hours: Optional[int] = None
    second_reminder_hours: Optional[int] = None
    reminder_24h_enabled: Optional[bool] = None
    reminder_2h_enabled: Optional[bool] = None
    preferred_channels: Optional[List[str]] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None


class ReminderSettingsResponse(BaseModel):
    user_id: str
    user_type: str
    email_enabled: bool
    sms_enabled: bool
    push_enabled: bool
    in_app_enabled: bool
    first_reminder_hours: int
    second_reminder_hours: int
    reminder_24h_enabled: bool
    reminder_2h_enabled: bool
    preferred_channels: Optional[List[str]] = None
    timezone: str
    is_active: bool
    opted_out_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReminderJobResponse(BaseModel):
    id: str
    appointment_id: int
    user_id: str
    channel: str
    reminder_kind: str
    status: str
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    last_attempted_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    is_cancelled: bool
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    class Config:
        from_attributes = True


class ReminderLogResponse(BaseModel):
    id: str
    job_id: Optional[str] = None
    appointment_id: int
    user_id: str
    channel: str
    reminder_kind: str
    trigger_type: str
    delivery_status: str
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int

    class Config:
        from_attributes = True


class ReminderStatusResponse(BaseModel):
    appointment_id: int
    jobs: List[ReminderJobResponse]
    logs: List[ReminderLogResponse]
    statistics: Dict[str, Any]
    delivery_by_channel: Dict[str, Dict[str, int]]


class ChannelResultResponse(BaseModel):
    channel: str
    success: bool
    job_id: Optional[str] = None
    error: Optional[str] = None


class AppointmentOptOutRequest(BaseModel):
    reminder_type: str = Field("all", description="24h, 2h, custom or all")
    channels: Optional[List[ReminderChannel]] = None


class AppointmentReminderPreferencesUpdate(BaseModel):
    channels: Optional[List[ReminderChannel]] = None
    first_reminder_hours: Optional[int] = None
    second_reminder_hours: Optional[int] = None
    reminder_24h_enabled: Optional[bool] = None
    reminder_2h_enabled: Optional[bool] = None


class AppointmentReminderPreferencesResponse(BaseModel):
    appointment_id: int
    preferences: Dict[str, Any]
    jobs: List[ReminderJobResponse]


class UpcomingRemindersResponse(BaseModel):
    reminders: List[ReminderJobResponse]
    total_upcoming: int


class BulkReminderRequest(BaseModel):
    operation: str = Field(..., description="schedule, cancel, reschedule or test")
    appointment_ids: List[int] = Field(..., min_length=1, max_length=100)
    channels: Optional[List[ReminderChannel]] = None
