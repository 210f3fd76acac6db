"""
Reminder API: scheduling, manual sends, preferences, delivery tracking,
analytics and maintenance.
"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from clinicops.core.clock import Clock
from clinicops.database import get_db
from clinicops.dependencies import get_clock, get_current_actor, get_transports
from clinicops.schemas.reminder_schemas import (
    AppointmentOptOutRequest, AppointmentReminderPreferencesResponse, AppointmentReminderPreferencesUpdate,
    BounceReport, BulkReminderRequest, ChannelResultResponse, CustomReminderRequest, OptOutRequest,
    ReminderJobResponse, ReminderLogResponse, ReminderSettingsResponse, ReminderSettingsUpdate,
    ReminderStatusResponse, RescheduleReminderRequest, SendReminderRequest, TestReminderRequest,
    UpcomingRemindersResponse
)
from clinicops.services.permissions import Action, Actor, authorize
from clinicops.services.reminder_service import ReminderService
from clinicops.services.transports import ChannelTransports

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reminders", tags=["reminders"])

# 1x1 transparent GIF returned by the open-tracking pixel
TRACKING_PIXEL = (
    b"GIF89a\x01\x00\x01\x00\x80\x00\x00\x00\x00\x00\xff\xff\xff!\xf9\x04\x01\x00\x00\x00\x00"
    b",\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02D\x01\x00;"
)


def get_reminder_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    transports: ChannelTransports = Depends(get_transports),
) -> ReminderService:
    return ReminderService(db, clock=clock, transports=transports)


@router.post("/appointments/{appointment_id}/schedule", response_model=List[ReminderJobResponse])
def schedule_reminders(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.schedule_reminders(appointment_id, actor)


@router.post("/appointments/{appointment_id}/cancel")
def cancel_reminders(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    cancelled = service.cancel_reminders(appointment_id, actor)
    return {"success": True, "cancelled": cancelled}


@router.post("/appointments/{appointment_id}/send", response_model=List[ChannelResultResponse])
def send_immediate_reminder(
    appointment_id: int,
    data: SendReminderRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    results = service.send_immediate(appointment_id, [c.value for c in data.channels], actor, data.message)
    return [r.to_dict() for r in results]


@router.post("/appointments/{appointment_id}/custom", response_model=ReminderJobResponse, status_code=201)
def schedule_custom_reminder(
    appointment_id: int,
    data: CustomReminderRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.schedule_custom_reminder(
        appointment_id, data.channel.value, data.scheduled_for, actor, data.message
    )


@router.get("/appointments/{appointment_id}/status", response_model=ReminderStatusResponse)
def get_reminder_status(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    status = service.get_status(appointment_id, actor)
    status["jobs"] = [ReminderJobResponse.model_validate(job) for job in status["jobs"]]
    status["logs"] = [ReminderLogResponse.model_validate(log) for log in status["logs"]]
    return status


@router.post("/appointments/{appointment_id}/opt-out")
def opt_out_of_appointment_reminders(
    appointment_id: int,
    data: AppointmentOptOutRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    channels = [c.value for c in data.channels] if data.channels is not None else None
    return service.opt_out_appointment(appointment_id, actor, data.reminder_type, channels)


@router.put("/appointments/{appointment_id}/preferences", response_model=AppointmentReminderPreferencesResponse)
def update_appointment_reminder_preferences(
    appointment_id: int,
    data: AppointmentReminderPreferencesUpdate,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    changes = data.model_dump(exclude_unset=True)
    if changes.get("channels") is not None:
        changes["channels"] = [c.value for c in data.channels]
    result = service.update_appointment_preferences(appointment_id, changes, actor)
    result["jobs"] = [ReminderJobResponse.model_validate(job) for job in result["jobs"]]
    return result


@router.get("/upcoming", response_model=UpcomingRemindersResponse)
def get_upcoming_reminders(
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    jobs = service.upcoming_reminders(actor, limit)
    return {"reminders": [ReminderJobResponse.model_validate(job) for job in jobs], "total_upcoming": len(jobs)}


@router.post("/bulk")
def bulk_reminder_operation(
    data: BulkReminderRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    channels = [c.value for c in data.channels] if data.channels else None
    result = service.bulk_operation(data.operation, data.appointment_ids, actor, channels)
    return result.to_dict()


@router.post("/test", response_model=List[ChannelResultResponse])
def send_test_reminder(
    data: TestReminderRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    results = service.send_test(data.user_id or actor.user_id, [c.value for c in data.channels], actor)
    return [r.to_dict() for r in results]


@router.get("/settings", response_model=ReminderSettingsResponse)
def get_reminder_settings(
    user_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.get_settings(user_id or actor.user_id, actor)


@router.put("/settings", response_model=ReminderSettingsResponse)
def update_reminder_settings(
    data: ReminderSettingsUpdate,
    user_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.update_settings(user_id or actor.user_id, data.model_dump(exclude_unset=True), actor)


@router.post("/opt-out")
def opt_out(
    data: OptOutRequest = OptOutRequest(),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.opt_out(actor.user_id, actor, data.reason or "User opted out")


@router.delete("/jobs/{job_id}", response_model=ReminderJobResponse)
def cancel_reminder_job(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.cancel_reminder(job_id, actor)


@router.post("/jobs/{job_id}/reschedule", response_model=ReminderJobResponse)
def reschedule_reminder_job(
    job_id: str,
    data: RescheduleReminderRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.reschedule_reminder(job_id, data.scheduled_for, actor)


@router.post("/logs/{log_id}/acknowledge")
def acknowledge_reminder(
    log_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    log = service.acknowledge(log_id, actor)
    return {"success": True, "id": log.id, "acknowledged_at": log.acknowledged_at}


@router.get("/analytics")
def get_reminder_analytics(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    doctor_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    return service.get_analytics(actor, start_date, end_date, doctor_id)


@router.post("/maintenance/sweep")
def run_sweep(
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    authorize(actor, Action.RUN_MAINTENANCE)
    expired = service.sweep_expired()
    summary = service.dispatch_due()
    return {"expired": expired, "dispatch": summary.to_dict()}


@router.post("/maintenance/cleanup")
def run_cleanup(
    days: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_current_actor),
    service: ReminderService = Depends(get_reminder_service),
):
    authorize(actor, Action.RUN_MAINTENANCE)
    return service.cleanup_old_data(days)


@router.get("/track/{token}/open")
def track_open(token: str, service: ReminderService = Depends(get_reminder_service)):
    service.record_opened(token)
    return Response(content=TRACKING_PIXEL, media_type="image/gif")


@router.get("/track/{token}/click")
def track_click(token: str, service: ReminderService = Depends(get_reminder_service)):
    log = service.record_clicked(token)
    return {"success": True, "appointment_id": log.appointment_id}


@router.post("/track/{token}/delivered")
def track_delivered(token: str, service: ReminderService = Depends(get_reminder_service)):
    log = service.record_delivered(token)
    return {"success": True, "delivery_status": log.delivery_status}


@router.post("/track/{token}/bounced")
def track_bounced(
    token: str,
    data: BounceReport = BounceReport(),
    service: ReminderService = Depends(get_reminder_service),
):
    log = service.record_bounced(token, data.error)
    return {"success": True, "delivery_status": log.delivery_status}
