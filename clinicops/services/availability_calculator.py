import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.error_handling import ValidationError
from clinicops.services.conflict_guard import ConflictGuard, intervals_overlap
from clinicops.services.directory import UserDirectory
from clinicops.services.permissions import ActorRole
from clinicops.services.working_hours import DayWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start.strftime("%H:%M"),
            "end_time": self.end.strftime("%H:%M"),
            "start_datetime": self.start.isoformat(),
            "end_datetime": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


@dataclass
class AvailabilityResult:
    doctor_id: str
    date: date
    is_working_day: bool
    working_hours: Optional[DayWindow] = None
    slots: List[Slot] = field(default_factory=list)
    booked_count: int = 0
    blocked_count: int = 0

    @property
    def total_available(self) -> int:
        return len(self.slots)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date.isoformat(),
            "day_name": self.date.strftime("%A"),
            "is_working_day": self.is_working_day,
            "working_hours": {
                "start": self.working_hours.start.strftime("%H:%M"),
                "end": self.working_hours.end.strftime("%H:%M"),
            } if self.working_hours else None,
            "available_slots": [slot.to_dict() for slot in self.slots],
            "total_available": self.total_available,
            "booked_count": self.booked_count,
            "blocked_count": self.blocked_count,
        }


class AvailabilityCalculator:
    """Free appointment slots of a doctor on a given day."""

    def __init__(
        self,
        db: Session,
        directory: Optional[UserDirectory] = None,
        guard: Optional[ConflictGuard] = None,
    ):
        self.db = db
        self.directory = directory or UserDirectory(db)
        self.guard = guard or ConflictGuard(db)

    def slots_for_date(self, doctor_id: str, day: date, slot_minutes: int = 30) -> AvailabilityResult:
        if slot_minutes <= 0:
            raise ValidationError("Slot duration must be positive", code="invalid_duration")
        self.directory.require(doctor_id, ActorRole.DOCTOR)

        window = self.directory.working_hours(doctor_id).for_date(day)
        if window is None:
            return AvailabilityResult(doctor_id=doctor_id, date=day, is_working_day=False)

        day_start = datetime.combine(day, time.min)
        day_end = day_start + timedelta(days=1)
        appointments = self.guard.overlapping_appointments(doctor_id, day_start, day_end)
        blocks = self.guard.blocks.blocks_overlapping(doctor_id, day_start, day_end)

        lunch_start, lunch_end = settings.lunch_window
        lunch_start = datetime.combine(day, lunch_start)
        lunch_end = datetime.combine(day, lunch_end)

        busy = [(a.start_time, a.end_time) for a in appointments]
        busy.extend((b.start_time, b.end_time) for b in blocks)

        step = timedelta(minutes=slot_minutes)
        cursor = datetime.combine(day, window.start)
        work_end = datetime.combine(day, window.end)
        slots = []

        while cursor + step <= work_end:
            slot_end = cursor + step
            if intervals_overlap(cursor, slot_end, lunch_start, lunch_end):
                cursor = lunch_end
                continue
            if not any(intervals_overlap(cursor, slot_end, s, e) for s, e in busy):
                slots.append(Slot(start=cursor, end=slot_end))
            cursor = slot_end

        return AvailabilityResult(
            doctor_id=doctor_id,
            date=day,
            is_working_day=True,
            working_hours=window,
            slots=slots,
            booked_count=len(appointments),
            blocked_count=len(blocks),
        )
