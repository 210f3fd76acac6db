from dataclasses import dataclass, field
from datetime import date, time
from typing import Any, Dict, Optional

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class DayWindow:
    start: time
    end: time


@dataclass(frozen=True)
class WorkingHours:
    """Weekly working windows keyed by weekday index (Monday is 0)."""

    days: Dict[int, DayWindow] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "WorkingHours":
        days = {}
        for index, name in enumerate(WEEKDAYS):
            entry = (data or {}).get(name)
            if not isinstance(entry, dict):
                continue
            start, end = _parse(entry.get("start")), _parse(entry.get("end"))
            if start is None or end is None or start >= end:
                continue
            days[index] = DayWindow(start=start, end=end)
        return cls(days=days)

    def to_json(self) -> Dict[str, Optional[Dict[str, str]]]:
        result = {}
        for index, name in enumerate(WEEKDAYS):
            window = self.days.get(index)
            result[name] = (
                {"start": window.start.strftime("%H:%M"), "end": window.end.strftime("%H:%M")}
                if window else None
            )
        return result

    def for_date(self, day: date) -> Optional[DayWindow]:
        return self.days.get(day.weekday())


def _parse(value: Optional[str]) -> Optional[time]:
    if not value or not isinstance(value, str):
        return None
    try:
        hours, minutes = value.split(":")[:2]
        return time(int(hours), int(minutes))
    except ValueError:
        return None
