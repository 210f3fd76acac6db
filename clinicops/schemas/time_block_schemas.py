from pydantic import BaseModel, Field, model_validator
from typing import Optional
from datetime import date, datetime

from clinicops.models.time_block import BlockType, RecurrencePattern


class TimeBlockCreate(BaseModel):
    doctor_id: str
    start_time: datetime
    end_time: datetime
    reason: str = Field(..., min_length=1, max_length=255)
    block_type: BlockType = BlockType.PERSONAL
    notes: Optional[str] = None
    recurring_pattern: RecurrencePattern = RecurrencePattern.NONE
    recurring_end_date: Optional[date] = None

    @model_validator(mode="after")
    def check_interval(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class TimeBlockUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    reason: Optional[str] = Field(None, min_length=1, max_length=255)
    block_type: Optional[BlockType] = None
    notes: Optional[str] = None


class TimeBlockResponse(BaseModel):
    id: int
    doctor_id: str
    start_time: datetime
    end_time: datetime
    reason: str
    block_type: str
    notes: Optional[str] = None
    is_recurring: bool
    recurring_pattern: str
    recurring_end_date: Optional[date] = None
    recurrence_id: Optional[str] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True
