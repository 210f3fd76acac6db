import enum
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Date, Text, Integer, Boolean, ForeignKey, Index
from sqlalchemy.sql import func
from clinicops.database import Base


class BlockType(str, enum.Enum):
    VACATION = "vacation"
    SICK_LEAVE = "sick_leave"
    MEETING = "meeting"
    TRAINING = "training"
    PERSONAL = "personal"
    MAINTENANCE = "maintenance"
    EMERGENCY = "emergency"


class RecurrencePattern(str, enum.Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TimeBlock(Base):
    """
    One concrete unavailability interval of a doctor.

    Recurring blocks are stored expanded: every occurrence is its own row
    and all rows of a series share recurrence_id.
    """
    __tablename__ = "time_blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    doctor_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    reason = Column(String(255), nullable=False)
    block_type = Column(String(32), default=BlockType.PERSONAL.value, nullable=False)
    notes = Column(Text, nullable=True)

    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_pattern = Column(String(16), default=RecurrencePattern.NONE.value, nullable=False)
    recurring_end_date = Column(Date, nullable=True)
    recurrence_id = Column(String, nullable=True, index=True)

    created_by = Column(String, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_time_blocks_doctor_start", "doctor_id", "start_time"),
    )

    def can_be_modified(self, now: datetime) -> bool:
        return self.start_time > now

    def can_be_deleted(self, now: datetime) -> bool:
        return self.start_time > now or self.block_type == BlockType.EMERGENCY.value

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and start < self.end_time
