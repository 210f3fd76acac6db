"""
Request and response models for the appointments API.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, time
from enum import Enum


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AppointmentCreate(BaseModel):
    patient_id: str
    doctor_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    appointment_type: str = "consultation"
    reason: Optional[str] = Field(None, max_length=1000)
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None

    @model_validator(mode="after")
    def check_interval(self):
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AppointmentUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    appointment_type: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=1000)
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_start_time: datetime
    new_end_time: Optional[datetime] = None
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CompleteRequest(BaseModel):
    notes: Optional[str] = None


class RecurringAppointmentCreate(BaseModel):
    patient_id: str
    doctor_id: str
    start_date: datetime
    frequency: RecurringFrequency
    total_sessions: int = Field(..., ge=1, le=52)
    duration_minutes: int = Field(30, ge=5, le=480)
    session_time: Optional[time] = None
    appointment_type: str = "follow-up"
    reason: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    patient_id: str
    doctor_id: str
    start_time: datetime
    end_time: datetime
    status: str
    appointment_type: str
    reason: Optional[str] = None
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reschedule_count: int = 0
    rescheduled_at: Optional[datetime] = None
    series_id: Optional[str] = None
    booked_by: Optional[str] = None
    last_updated_by: Optional[str] = None

    class Config:
        from_attributes = True


class RecurringAppointmentResponse(BaseModel):
    series_id: Optional[str]
    appointments: List[AppointmentResponse]
    total_created: int
    total_requested: int
    errors: List[str]
    success_rate: float


class AppointmentStatsResponse(BaseModel):
    total_appointments: int
    by_status: Dict[str, int]
    completed_appointments: int
    cancelled_appointments: int
    no_show_appointments: int
    upcoming_appointments: int
    completion_rate: float
    cancellation_rate: float
    no_show_rate: float


class AvailabilityResponse(BaseModel):
    doctor_id: str
    date: str
    day_name: str
    is_working_day: bool
    working_hours: Optional[Dict[str, str]] = None
    available_slots: List[Dict[str, Any]]
    total_available: int
    booked_count: int
    blocked_count: int
