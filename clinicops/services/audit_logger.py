"""
Audit trail for booking and reminder operations.

Events are written as JSON lines on the "audit" logger. Recording is
fire-and-forget: a failure is logged and never propagates into the
operation that produced the event.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from clinicops.core.logging import log_audit

logger = logging.getLogger(__name__)


class EntityKind(str, enum.Enum):
    APPOINTMENT = "appointment"
    TIME_BLOCK = "time_block"
    REMINDER_JOB = "reminder_job"
    REMINDER_SETTING = "reminder_setting"
    USER = "user"


@dataclass(frozen=True)
class RelatedEntity:
    kind: EntityKind
    id: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "id": self.id}


class AuditAction:
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_UPDATED = "appointment_updated"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    APPOINTMENT_REMOVED = "appointment_removed"
    BLOCK_CREATED = "block_created"
    BLOCK_UPDATED = "block_updated"
    BLOCK_DELETED = "block_deleted"
    REMINDER_SETTINGS_UPDATED = "reminder_settings_updated"
    REMINDER_OPT_OUT = "reminder_opt_out"
    REMINDER_PREFERENCES_UPDATED = "reminder_preferences_updated"
    REMINDER_BULK_OPERATION = "reminder_bulk_operation"


@dataclass
class AuditEvent:
    action: str
    actor_id: Optional[str]
    subject: RelatedEntity
    actor_role: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    related: List[RelatedEntity] = field(default_factory=list)
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor_role": self.actor_role,
            "subject": self.subject.to_dict(),
            "related": [entity.to_dict() for entity in self.related],
            "before": self.before,
            "after": self.after,
            "occurred_at": self.occurred_at.isoformat(),
        }


class AuditLogger:
    """Writes audit events; never raises."""

    def record(self, event: AuditEvent) -> None:
        try:
            log_audit(event.action, event.actor_id, event.to_dict())
        except Exception as e:
            logger.warning(f"Audit event {event.action} could not be recorded: {e}")


audit_logger = AuditLogger()
