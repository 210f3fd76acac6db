from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from clinicops.core.clock import Clock, system_clock
from clinicops.models.reminder_models import ReminderChannel, ReminderKind
from clinicops.services.reminder_settings import ReminderPreferences


@dataclass(frozen=True)
class ReminderJobSpec:
    channel: ReminderChannel
    kind: ReminderKind
    scheduled_for: datetime


class ReminderPlanner:
    """
    Turns an appointment start and the recipient's preferences into the
    automatic reminder jobs to create.

    A reminder whose offset already lies in the past is scheduled for now
    so the next dispatch cycle sends it.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or system_clock

    def plan(self, appointment_start: datetime, preferences: ReminderPreferences) -> List[ReminderJobSpec]:
        now = self.clock.now()
        if not preferences.is_active or appointment_start <= now:
            return []

        kinds = []
        if preferences.first_enabled:
            kinds.append((ReminderKind.FIRST, preferences.first_reminder_hours))
        if preferences.second_enabled:
            kinds.append((ReminderKind.SECOND, preferences.second_reminder_hours))

        specs = []
        for kind, hours in kinds:
            scheduled_for = max(appointment_start - timedelta(hours=hours), now)
            for channel in preferences.enabled_channels:
                if not preferences.allows(kind, channel):
                    continue
                specs.append(ReminderJobSpec(channel=channel, kind=kind, scheduled_for=scheduled_for))
        return specs
