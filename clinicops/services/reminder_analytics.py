"""
Daily reminder analytics per doctor.

Counters are only ever incremented in SQL (col = col + 1), so concurrent
dispatch workers and booking requests can update the same row. Rates are
recomputed from the row after every increment.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import ValidationError
from clinicops.models.reminder_models import ReminderAnalytics, ReminderChannel

logger = logging.getLogger(__name__)

DISPATCH_COUNTERS = {
    "sent": "reminders_sent",
    "delivered": "reminders_delivered",
    "failed": "reminders_failed",
    "opened": "reminders_opened",
    "clicked": "reminders_clicked",
}

CHANNEL_COUNTERS = {
    ReminderChannel.EMAIL.value: "email_sent",
    ReminderChannel.SMS.value: "sms_sent",
    ReminderChannel.PUSH.value: "push_sent",
    ReminderChannel.IN_APP.value: "in_app_sent",
}

OUTCOME_COUNTERS = {
    "kept": "appointments_kept",
    "completed": "appointments_kept",
    "cancelled": "appointments_cancelled",
    "no_show": "appointments_no_show",
    "rescheduled": "appointments_rescheduled",
}

COUNTER_COLUMNS = sorted(
    set(DISPATCH_COUNTERS.values()) | set(CHANNEL_COUNTERS.values()) | set(OUTCOME_COUNTERS.values())
)


def rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, 2)


def compute_rates(counters: Dict[str, int]) -> Dict[str, float]:
    kept = counters.get("appointments_kept", 0)
    outcomes = (
        kept
        + counters.get("appointments_cancelled", 0)
        + counters.get("appointments_no_show", 0)
        + counters.get("appointments_rescheduled", 0)
    )
    return {
        "delivery_rate": rate(counters.get("reminders_delivered", 0), counters.get("reminders_sent", 0)),
        "open_rate": rate(counters.get("reminders_opened", 0), counters.get("reminders_delivered", 0)),
        "click_rate": rate(counters.get("reminders_clicked", 0), counters.get("reminders_opened", 0)),
        "attendance_rate": rate(kept, outcomes),
    }


class ReminderAnalyticsAggregator:
    """Increments flush into the caller's transaction; the caller commits."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or system_clock

    def record_dispatch(self, doctor_id: str, channel: str, status: str, day: Optional[date] = None) -> None:
        column = DISPATCH_COUNTERS.get(status)
        if column is None:
            raise ValidationError(f"Unknown dispatch outcome: {status}")
        columns = [column]
        if status == "sent" and channel in CHANNEL_COUNTERS:
            columns.append(CHANNEL_COUNTERS[channel])
        self._increment(doctor_id, day or self.clock.now().date(), columns)

    def record_outcome(self, doctor_id: str, outcome: str, day: Optional[date] = None) -> None:
        column = OUTCOME_COUNTERS.get(outcome)
        if column is None:
            raise ValidationError(f"Unknown appointment outcome: {outcome}")
        self._increment(doctor_id, day or self.clock.now().date(), [column])

    def get_row(self, doctor_id: str, day: date) -> Optional[ReminderAnalytics]:
        return self.db.query(ReminderAnalytics).filter(
            ReminderAnalytics.doctor_id == doctor_id,
            ReminderAnalytics.date == day,
        ).first()

    def _increment(self, doctor_id: str, day: date, columns: List[str]) -> None:
        self._ensure_row(doctor_id, day)
        now = self.clock.now()
        values = {getattr(ReminderAnalytics, c): getattr(ReminderAnalytics, c) + 1 for c in columns}
        values[ReminderAnalytics.updated_at] = now
        self.db.query(ReminderAnalytics).filter(
            ReminderAnalytics.doctor_id == doctor_id,
            ReminderAnalytics.date == day,
        ).update(values, synchronize_session=False)

        row = self.db.query(ReminderAnalytics).filter(
            ReminderAnalytics.doctor_id == doctor_id,
            ReminderAnalytics.date == day,
        ).populate_existing().with_for_update().one()
        for name, value in compute_rates({c: getattr(row, c) for c in COUNTER_COLUMNS}).items():
            setattr(row, name, value)
        self.db.flush()

    def _ensure_row(self, doctor_id: str, day: date) -> None:
        now = self.clock.now()
        values = dict(id=str(uuid.uuid4()), date=day, doctor_id=doctor_id, created_at=now, updated_at=now)
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            statement = pg_insert(ReminderAnalytics).values(**values)
        elif dialect == "sqlite":
            statement = sqlite_insert(ReminderAnalytics).values(**values)
        else:
            if self.get_row(doctor_id, day) is None:
                self.db.add(ReminderAnalytics(**values))
                self.db.flush()
            return
        self.db.execute(statement.on_conflict_do_nothing(index_elements=["date", "doctor_id"]))

    def summary(self, start_date: date, end_date: date, doctor_id: Optional[str] = None) -> Dict[str, Any]:
        if end_date < start_date:
            raise ValidationError("End date must not be before start date")

        query = self.db.query(ReminderAnalytics).filter(
            ReminderAnalytics.date >= start_date,
            ReminderAnalytics.date <= end_date,
        )
        if doctor_id:
            query = query.filter(ReminderAnalytics.doctor_id == doctor_id)
        rows = query.order_by(ReminderAnalytics.date).all()

        totals = {column: 0 for column in COUNTER_COLUMNS}
        daily: Dict[date, Dict[str, int]] = {}
        for row in rows:
            day_totals = daily.setdefault(row.date, {column: 0 for column in COUNTER_COLUMNS})
            for column in COUNTER_COLUMNS:
                value = getattr(row, column) or 0
                totals[column] += value
                day_totals[column] += value

        return {
            "period": {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "days": (end_date - start_date).days + 1,
            },
            "doctor_id": doctor_id,
            "totals": totals,
            "rates": compute_rates(totals),
            "channel_breakdown": {
                channel: totals[column] for channel, column in CHANNEL_COUNTERS.items()
            },
            "daily_breakdown": [
                {
                    "date": day.isoformat(),
                    "sent": counters["reminders_sent"],
                    "delivered": counters["reminders_delivered"],
                    "failed": counters["reminders_failed"],
                    **compute_rates(counters),
                }
                for day, counters in sorted(daily.items())
            ],
        }

    def default_range(self, days: int = 30):
        end_date = self.clock.now().date()
        return end_date - timedelta(days=days - 1), end_date
