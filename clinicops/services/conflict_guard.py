"""
Booking admissibility checks.

check_conflict() must run inside serialize() for the same doctor, in the
same transaction as the write it protects.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from clinicops.core.error_handling import ConflictError, ConflictKind, ValidationError
from clinicops.models.appointment import Appointment, CANCELLED_STATUSES
from clinicops.services.block_registry import BlockRegistry
from clinicops.services.booking_lock import doctor_serialization

logger = logging.getLogger(__name__)


def intervals_overlap(a: datetime, b: datetime, c: datetime, d: datetime) -> bool:
    """Half-open intervals [a, b) and [c, d) overlap."""
    return a < d and c < b


@dataclass(frozen=True)
class Conflict:
    kind: str
    message: str
    appointment_id: Optional[int] = None
    block_id: Optional[int] = None

    def to_error(self) -> ConflictError:
        details = {}
        if self.appointment_id is not None:
            details["appointment_id"] = self.appointment_id
        if self.block_id is not None:
            details["block_id"] = self.block_id
        return ConflictError(self.kind, self.message, details=details)


class ConflictGuard:
    def __init__(self, db: Session, blocks: Optional[BlockRegistry] = None):
        self.db = db
        self.blocks = blocks or BlockRegistry(db)

    def serialize(self, doctor_id: str):
        return doctor_serialization(self.db, doctor_id)

    def overlapping_appointments(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> List[Appointment]:
        query = self.db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.deleted_at.is_(None),
            Appointment.status.notin_(CANCELLED_STATUSES),
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return query.order_by(Appointment.start_time).all()

    def check_conflict(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> Optional[Conflict]:
        if start >= end:
            raise ValidationError("Appointment end must be after its start", code="invalid_interval")

        busy = self.overlapping_appointments(doctor_id, start, end, exclude_appointment_id)
        if busy:
            return Conflict(
                kind=ConflictKind.DOCTOR_BUSY,
                message="Doctor is not available at this time",
                appointment_id=busy[0].id,
            )

        blocked = self.blocks.blocks_overlapping(doctor_id, start, end)
        if blocked:
            return Conflict(
                kind=ConflictKind.BLOCKED,
                message="Doctor has blocked this time slot",
                block_id=blocked[0].id,
            )
        return None

    def ensure_available(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> None:
        conflict = self.check_conflict(doctor_id, start, end, exclude_appointment_id)
        if conflict is not None:
            logger.info(f"Booking rejected for doctor {doctor_id} at {start.isoformat()}: {conflict.kind}")
            raise conflict.to_error()
