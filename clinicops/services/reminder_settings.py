"""
Per-user reminder preferences.

The ORM row keeps channels as JSON; everything downstream works with the
typed ReminderPreferences value.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import ValidationError
from clinicops.models.reminder_models import ReminderChannel, ReminderKind, ReminderSetting

logger = logging.getLogger(__name__)

CHANNEL_FLAGS = {
    ReminderChannel.EMAIL: "email_enabled",
    ReminderChannel.SMS: "sms_enabled",
    ReminderChannel.PUSH: "push_enabled",
    ReminderChannel.IN_APP: "in_app_enabled",
}

DEFAULT_PREFERRED_CHANNELS = [ReminderChannel.EMAIL.value, ReminderChannel.PUSH.value]


@dataclass(frozen=True)
class ReminderPreferences:
    enabled_channels: Tuple[ReminderChannel, ...] = (ReminderChannel.EMAIL, ReminderChannel.PUSH)
    first_reminder_hours: int = 24
    second_reminder_hours: int = 2
    first_enabled: bool = True
    second_enabled: bool = True
    timezone: str = "UTC"
    is_active: bool = True
    # (kind, channel) pairs the recipient opted out of for one appointment
    excluded: FrozenSet[Tuple[ReminderKind, ReminderChannel]] = frozenset()

    def allows(self, kind: ReminderKind, channel: ReminderChannel) -> bool:
        return (kind, channel) not in self.excluded

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "ReminderPreferences":
        """Apply the per-appointment overrides stored on an appointment."""
        if not overrides:
            return self
        changes: Dict[str, Any] = {}
        if overrides.get("channels") is not None:
            changes["enabled_channels"] = tuple(_parse_channels(overrides["channels"]))
        if overrides.get("first_reminder_hours") is not None:
            changes["first_reminder_hours"] = _clamp(overrides["first_reminder_hours"], 1, 168)
        if overrides.get("second_reminder_hours") is not None:
            changes["second_reminder_hours"] = _clamp(overrides["second_reminder_hours"], 1, 24)
        if overrides.get("reminder_24h_enabled") is not None:
            changes["first_enabled"] = bool(overrides["reminder_24h_enabled"])
        if overrides.get("reminder_2h_enabled") is not None:
            changes["second_enabled"] = bool(overrides["reminder_2h_enabled"])
        if overrides.get("opted_out"):
            changes["excluded"] = frozenset(_parse_exclusions(overrides["opted_out"]))
        return replace(self, **changes)

    @classmethod
    def from_setting(cls, setting: ReminderSetting) -> "ReminderPreferences":
        enabled = [c for c, flag in CHANNEL_FLAGS.items() if getattr(setting, flag)]
        preferred = _parse_channels(setting.preferred_channels or [])
        ordered = [c for c in preferred if c in enabled]
        ordered.extend(c for c in enabled if c not in ordered)
        return cls(
            enabled_channels=tuple(ordered),
            first_reminder_hours=setting.first_reminder_hours,
            second_reminder_hours=setting.second_reminder_hours,
            first_enabled=setting.reminder_24h_enabled,
            second_enabled=setting.reminder_2h_enabled,
            timezone=setting.timezone or "UTC",
            is_active=setting.is_active,
        )


def _parse_channels(values: List[Any]) -> List[ReminderChannel]:
    channels = []
    for value in values:
        try:
            channel = ReminderChannel(value)
        except ValueError:
            continue
        if channel not in channels:
            channels.append(channel)
    return channels


def _parse_exclusions(values: List[Any]) -> List[Tuple[ReminderKind, ReminderChannel]]:
    pairs = []
    for value in values:
        kind, _, channel = str(value).partition(":")
        try:
            pairs.append((ReminderKind(kind), ReminderChannel(channel)))
        except ValueError:
            continue
    return pairs


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class ReminderSettingsStore:
    BOOLEAN_FIELDS = (
        "email_enabled", "sms_enabled", "push_enabled", "in_app_enabled",
        "reminder_24h_enabled", "reminder_2h_enabled", "is_active",
    )

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or system_clock

    def find(self, user_id: str, user_type: str = "patient") -> Optional[ReminderSetting]:
        return self.db.query(ReminderSetting).filter(
            ReminderSetting.user_id == user_id,
            ReminderSetting.user_type == user_type,
        ).first()

    def get_or_create(self, user_id: str, user_type: str = "patient") -> ReminderSetting:
        setting = self.find(user_id, user_type)
        if setting is None:
            setting = ReminderSetting(
                user_id=user_id,
                user_type=user_type,
                preferred_channels=list(DEFAULT_PREFERRED_CHANNELS),
            )
            self.db.add(setting)
            self.db.commit()
            self.db.refresh(setting)
            logger.info(f"Created default reminder settings for user {user_id}")
        return setting

    def preferences_for(self, user_id: str, user_type: str = "patient") -> ReminderPreferences:
        """Stored preferences, or the defaults when the user never saved any."""
        setting = self.find(user_id, user_type)
        if setting is None:
            return ReminderPreferences()
        return ReminderPreferences.from_setting(setting)

    def update(self, user_id: str, changes: Dict[str, Any], user_type: str = "patient") -> ReminderSetting:
        setting = self.get_or_create(user_id, user_type)

        for name, value in changes.items():
            if value is None:
                continue
            if name in self.BOOLEAN_FIELDS:
                setattr(setting, name, bool(value))
            elif name == "first_reminder_hours":
                setting.first_reminder_hours = _clamp(value, 1, 168)
            elif name == "second_reminder_hours":
                setting.second_reminder_hours = _clamp(value, 1, 24)
            elif name == "preferred_channels":
                setting.preferred_channels = [c.value for c in _parse_channels(value)]
            elif name == "timezone":
                setting.timezone = str(value)
            else:
                raise ValidationError(f"Unknown reminder setting: {name}", code="unknown_setting")

        if setting.is_active and setting.opted_out_at is not None and any(
            getattr(setting, flag) for flag in CHANNEL_FLAGS.values()
        ):
            setting.opted_out_at = None

        self.db.commit()
        self.db.refresh(setting)
        return setting

    def opt_out(self, user_id: str, user_type: str = "patient") -> ReminderSetting:
        """Disable every channel; the caller cancels pending jobs. Does not commit."""
        setting = self.find(user_id, user_type)
        if setting is None:
            setting = ReminderSetting(user_id=user_id, user_type=user_type, preferred_channels=[])
            self.db.add(setting)
        for flag in CHANNEL_FLAGS.values():
            setattr(setting, flag, False)
        setting.is_active = False
        setting.opted_out_at = self.clock.now()
        self.db.flush()
        return setting
