"""
Doctor time blocks (vacation, meetings, training...).

Recurring requests are expanded at creation time into concrete rows that
share a recurrence id, so conflict checks and availability only ever
read plain intervals.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import NotFoundError, StateError, ValidationError
from clinicops.models.time_block import TimeBlock, BlockType, RecurrencePattern
from clinicops.services.audit_logger import (
    AuditAction, AuditEvent, AuditLogger, EntityKind, RelatedEntity, audit_logger
)
from clinicops.services.booking_lock import doctor_serialization
from clinicops.services.directory import UserDirectory
from clinicops.services.permissions import Action, Actor, ActorRole, authorize

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def expand_occurrences(
    start: datetime,
    end: datetime,
    pattern: RecurrencePattern,
    until: date,
) -> List[Tuple[datetime, datetime]]:
    """
    Concrete (start, end) pairs of a recurring block.

    Occurrences are generated from the first start while their date is on
    or before until; every occurrence keeps the original duration.
    """
    duration = end - start
    if pattern == RecurrencePattern.NONE:
        return [(start, end)]

    occurrences = []
    index = 0
    while True:
        if pattern == RecurrencePattern.DAILY:
            current = start + timedelta(days=index)
        elif pattern == RecurrencePattern.WEEKLY:
            current = start + timedelta(weeks=index)
        else:
            current = add_months(start, index)
        if current.date() > until:
            break
        occurrences.append((current, current + duration))
        index += 1
    return occurrences


@dataclass
class BlockRequest:
    doctor_id: str
    start_time: datetime
    end_time: datetime
    reason: str
    block_type: BlockType = BlockType.PERSONAL
    notes: Optional[str] = None
    recurring_pattern: RecurrencePattern = RecurrencePattern.NONE
    recurring_end_date: Optional[date] = None


class BlockRegistry:
    EDITABLE_FIELDS = ("start_time", "end_time", "reason", "block_type", "notes")

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        directory: Optional[UserDirectory] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.db = db
        self.clock = clock or system_clock
        self.directory = directory or UserDirectory(db)
        self.audit = audit or audit_logger

    def create_block(self, request: BlockRequest, actor: Actor) -> List[TimeBlock]:
        authorize(actor, Action.MANAGE_BLOCKS, doctor_id=request.doctor_id)
        self.directory.require(request.doctor_id, ActorRole.DOCTOR)
        self._validate_interval(request.start_time, request.end_time)
        if not request.reason or not request.reason.strip():
            raise ValidationError("A reason is required for a time block", code="missing_reason")

        pattern = RecurrencePattern(request.recurring_pattern)
        until = None
        recurrence_id = None
        if pattern != RecurrencePattern.NONE:
            horizon = add_months(request.start_time, settings.BLOCK_RECURRENCE_MAX_MONTHS).date()
            until = request.recurring_end_date or horizon
            if until < request.start_time.date():
                raise ValidationError("Recurrence end date is before the block start", code="invalid_recurrence")
            if until > horizon:
                logger.info(f"Recurring block for doctor {request.doctor_id} capped at {horizon}")
                until = horizon
            recurrence_id = str(uuid.uuid4())

        occurrences = expand_occurrences(request.start_time, request.end_time, pattern, until)

        with doctor_serialization(self.db, request.doctor_id):
            blocks = []
            for start, end in occurrences:
                block = TimeBlock(
                    doctor_id=request.doctor_id,
                    start_time=start,
                    end_time=end,
                    reason=request.reason.strip(),
                    block_type=BlockType(request.block_type).value,
                    notes=request.notes,
                    is_recurring=recurrence_id is not None,
                    recurring_pattern=pattern.value,
                    recurring_end_date=until,
                    recurrence_id=recurrence_id,
                    created_by=actor.user_id,
                )
                self.db.add(block)
                blocks.append(block)
            self.db.commit()

        for block in blocks:
            self.db.refresh(block)

        logger.info(
            f"Created {len(blocks)} time block(s) for doctor {request.doctor_id} "
            f"({pattern.value}, {request.block_type})"
        )
        self.audit.record(AuditEvent(
            action=AuditAction.BLOCK_CREATED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.TIME_BLOCK, str(blocks[0].id)),
            after={"occurrences": len(blocks), "recurrence_id": recurrence_id},
            related=[RelatedEntity(EntityKind.USER, request.doctor_id)],
        ))
        return blocks

    def update_block(self, block_id: int, changes: Dict[str, Any], actor: Actor) -> TimeBlock:
        block = self.get_block(block_id)
        authorize(actor, Action.MANAGE_BLOCKS, doctor_id=block.doctor_id)
        if not block.can_be_modified(self.clock.now()):
            raise StateError("Cannot modify a time block that has already started", code="block_started")

        unknown = set(changes) - set(self.EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be changed: {', '.join(sorted(unknown))}")

        before = self._snapshot(block)
        start = changes.get("start_time", block.start_time)
        end = changes.get("end_time", block.end_time)
        self._validate_interval(start, end)

        with doctor_serialization(self.db, block.doctor_id):
            for field_name, value in changes.items():
                if field_name == "block_type":
                    value = BlockType(value).value
                setattr(block, field_name, value)
            self.db.commit()
        self.db.refresh(block)

        self.audit.record(AuditEvent(
            action=AuditAction.BLOCK_UPDATED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.TIME_BLOCK, str(block.id)),
            before=before,
            after=self._snapshot(block),
        ))
        return block

    def delete_block(self, block_id: int, actor: Actor) -> TimeBlock:
        block = self.get_block(block_id)
        authorize(actor, Action.MANAGE_BLOCKS, doctor_id=block.doctor_id)
        if not block.can_be_deleted(self.clock.now()):
            raise StateError("Cannot delete a time block that has already started", code="block_started")

        block.deleted_at = self.clock.now()
        self.db.commit()

        self.audit.record(AuditEvent(
            action=AuditAction.BLOCK_DELETED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.TIME_BLOCK, str(block.id)),
            before=self._snapshot(block),
        ))
        return block

    def delete_series(self, recurrence_id: str, actor: Actor) -> int:
        """Soft-delete every occurrence of a series that may still be deleted."""
        blocks = self.db.query(TimeBlock).filter(
            TimeBlock.recurrence_id == recurrence_id,
            TimeBlock.deleted_at.is_(None),
        ).all()
        if not blocks:
            raise NotFoundError("Recurring block series not found")
        authorize(actor, Action.MANAGE_BLOCKS, doctor_id=blocks[0].doctor_id)

        now = self.clock.now()
        removed = 0
        for block in blocks:
            if block.can_be_deleted(now):
                block.deleted_at = now
                removed += 1
        self.db.commit()

        logger.info(f"Removed {removed}/{len(blocks)} occurrences of series {recurrence_id}")
        self.audit.record(AuditEvent(
            action=AuditAction.BLOCK_DELETED,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            subject=RelatedEntity(EntityKind.TIME_BLOCK, recurrence_id),
            after={"removed": removed, "kept": len(blocks) - removed},
        ))
        return removed

    def get_block(self, block_id: int) -> TimeBlock:
        block = self.db.query(TimeBlock).filter(
            TimeBlock.id == block_id,
            TimeBlock.deleted_at.is_(None),
        ).first()
        if block is None:
            raise NotFoundError("Time block not found")
        return block

    def blocks_overlapping(self, doctor_id: str, start: datetime, end: datetime) -> List[TimeBlock]:
        return self.db.query(TimeBlock).filter(
            TimeBlock.doctor_id == doctor_id,
            TimeBlock.deleted_at.is_(None),
            TimeBlock.start_time < end,
            TimeBlock.end_time > start,
        ).order_by(TimeBlock.start_time).all()

    def blocks_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TimeBlock]:
        query = self.db.query(TimeBlock).filter(
            TimeBlock.doctor_id == doctor_id,
            TimeBlock.deleted_at.is_(None),
        )
        if start is not None:
            query = query.filter(TimeBlock.end_time > start)
        if end is not None:
            query = query.filter(TimeBlock.start_time < end)
        return query.order_by(TimeBlock.start_time).all()

    def _validate_interval(self, start: datetime, end: datetime) -> None:
        if start is None or end is None:
            raise ValidationError("Block start and end are required")
        if start >= end:
            raise ValidationError("Block end must be after its start", code="invalid_interval")
        grace = timedelta(minutes=settings.PAST_START_GRACE_MINUTES)
        if start < self.clock.now() - grace:
            raise ValidationError("Cannot block time in the past", code="start_in_past")

    @staticmethod
    def _snapshot(block: TimeBlock) -> Dict[str, Any]:
        return {
            "id": block.id,
            "doctor_id": block.doctor_id,
            "start_time": block.start_time.isoformat(),
            "end_time": block.end_time.isoformat(),
            "reason": block.reason,
            "block_type": block.block_type,
            "recurrence_id": block.recurrence_id,
        }
