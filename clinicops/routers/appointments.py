import logging
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinicops.core.clock import Clock
from clinicops.database import get_db
from clinicops.dependencies import get_clock, get_current_actor, get_transports
from clinicops.schemas.appointment_schemas import (
    AppointmentCreate, AppointmentResponse, AppointmentStatsResponse, AppointmentUpdate,
    AvailabilityResponse, CancelRequest, CompleteRequest, RecurringAppointmentCreate,
    RecurringAppointmentResponse, RescheduleRequest
)
from clinicops.services.appointment_scheduler import AppointmentRequest, AppointmentScheduler, RecurringRequest
from clinicops.services.availability_calculator import AvailabilityCalculator
from clinicops.services.permissions import Actor
from clinicops.services.reminder_service import ReminderService
from clinicops.services.transports import ChannelTransports

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/appointments", tags=["appointments"])


def get_scheduler(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    transports: ChannelTransports = Depends(get_transports),
) -> AppointmentScheduler:
    reminders = ReminderService(db, clock=clock, transports=transports)
    return AppointmentScheduler(db, clock=clock, reminders=reminders)


@router.post("/", response_model=AppointmentResponse, status_code=201)
def create_appointment(
    data: AppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.create(AppointmentRequest(**data.model_dump()), actor)


@router.post("/recurring", response_model=RecurringAppointmentResponse, status_code=201)
def create_recurring_appointments(
    data: RecurringAppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    result = scheduler.create_recurring(
        RecurringRequest(
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            start_date=data.start_date,
            frequency=data.frequency.value,
            total_sessions=data.total_sessions,
            duration_minutes=data.duration_minutes,
            session_time=data.session_time,
            appointment_type=data.appointment_type,
            reason=data.reason,
        ),
        actor,
    )
    return RecurringAppointmentResponse(
        series_id=result.series_id,
        appointments=[AppointmentResponse.model_validate(a) for a in result.appointments],
        total_created=result.total_created,
        total_requested=result.total_requested,
        errors=result.errors,
        success_rate=result.success_rate,
    )


@router.get("/availability/{doctor_id}", response_model=AvailabilityResponse)
def get_availability(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    slot_minutes: int = Query(30, ge=5, le=240),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return AvailabilityCalculator(db).slots_for_date(doctor_id, day, slot_minutes).to_dict()


@router.get("/stats/me", response_model=AppointmentStatsResponse)
def get_my_stats(
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.stats(actor)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.get(appointment_id, actor)


@router.patch("/{appointment_id}", response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.update(appointment_id, data.model_dump(exclude_unset=True), actor)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.reschedule(
        appointment_id, data.new_start_time, actor, new_end=data.new_end_time, reason=data.reason
    )


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.cancel(appointment_id, data.reason, actor)


@router.post("/{appointment_id}/force-cancel", response_model=AppointmentResponse)
def force_cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.force_cancel(appointment_id, data.reason, actor)


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.confirm(appointment_id, actor)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    data: CompleteRequest = CompleteRequest(),
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.complete(appointment_id, actor, notes=data.notes)


@router.post("/{appointment_id}/no-show", response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    return scheduler.mark_no_show(appointment_id, actor)


@router.delete("/{appointment_id}")
def remove_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
):
    appointment = scheduler.remove(appointment_id, actor)
    return {"success": True, "id": appointment.id, "deleted_at": appointment.deleted_at}
