"""
Actor roles and the permission table.

Every mutating operation asks authorize() before touching state. A role
either may perform an action on any record, only on records it owns, or
not at all.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional

from clinicops.core.error_handling import AuthorizationError


class ActorRole(str, enum.Enum):
    ADMIN = "admin"
    RECEPTIONIST = "receptionist"
    DOCTOR = "doctor"
    PATIENT = "patient"


class Action(str, enum.Enum):
    BOOK_APPOINTMENT = "book_appointment"
    UPDATE_APPOINTMENT = "update_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    FORCE_CANCEL_APPOINTMENT = "force_cancel_appointment"
    CONFIRM_APPOINTMENT = "confirm_appointment"
    COMPLETE_APPOINTMENT = "complete_appointment"
    MARK_NO_SHOW = "mark_no_show"
    REMOVE_APPOINTMENT = "remove_appointment"
    VIEW_APPOINTMENT = "view_appointment"
    MANAGE_BLOCKS = "manage_blocks"
    SEND_REMINDER = "send_reminder"
    MANAGE_REMINDERS = "manage_reminders"
    VIEW_ANALYTICS = "view_analytics"
    RUN_MAINTENANCE = "run_maintenance"
    BULK_REMINDERS = "bulk_reminders"


class Scope(str, enum.Enum):
    ANY = "any"
    OWN = "own"


_ALL = {action: Scope.ANY for action in Action}

PERMISSIONS: Dict[ActorRole, Dict[Action, Scope]] = {
    ActorRole.ADMIN: _ALL,
    ActorRole.RECEPTIONIST: {
        Action.BOOK_APPOINTMENT: Scope.ANY,
        Action.UPDATE_APPOINTMENT: Scope.ANY,
        Action.RESCHEDULE_APPOINTMENT: Scope.ANY,
        Action.CANCEL_APPOINTMENT: Scope.ANY,
        Action.CONFIRM_APPOINTMENT: Scope.ANY,
        Action.MARK_NO_SHOW: Scope.ANY,
        Action.VIEW_APPOINTMENT: Scope.ANY,
        Action.MANAGE_BLOCKS: Scope.ANY,
        Action.SEND_REMINDER: Scope.ANY,
        Action.MANAGE_REMINDERS: Scope.ANY,
        Action.VIEW_ANALYTICS: Scope.ANY,
    },
    ActorRole.DOCTOR: {
        Action.BOOK_APPOINTMENT: Scope.OWN,
        Action.UPDATE_APPOINTMENT: Scope.OWN,
        Action.RESCHEDULE_APPOINTMENT: Scope.OWN,
        Action.CANCEL_APPOINTMENT: Scope.OWN,
        Action.FORCE_CANCEL_APPOINTMENT: Scope.OWN,
        Action.CONFIRM_APPOINTMENT: Scope.OWN,
        Action.COMPLETE_APPOINTMENT: Scope.OWN,
        Action.MARK_NO_SHOW: Scope.OWN,
        Action.VIEW_APPOINTMENT: Scope.OWN,
        Action.MANAGE_BLOCKS: Scope.OWN,
        Action.SEND_REMINDER: Scope.OWN,
        Action.MANAGE_REMINDERS: Scope.OWN,
        Action.VIEW_ANALYTICS: Scope.OWN,
    },
    ActorRole.PATIENT: {
        Action.BOOK_APPOINTMENT: Scope.OWN,
        Action.RESCHEDULE_APPOINTMENT: Scope.OWN,
        Action.CANCEL_APPOINTMENT: Scope.OWN,
        Action.VIEW_APPOINTMENT: Scope.OWN,
        Action.MANAGE_REMINDERS: Scope.OWN,
    },
}


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: ActorRole

    @property
    def is_patient(self) -> bool:
        return self.role == ActorRole.PATIENT

    @property
    def is_doctor(self) -> bool:
        return self.role == ActorRole.DOCTOR


def can(actor: Actor, action: Action) -> bool:
    return action in PERMISSIONS.get(actor.role, {})


def authorize(
    actor: Actor,
    action: Action,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
) -> None:
    """
    Raise AuthorizationError unless actor may perform action.

    For OWN-scoped permissions doctors must match doctor_id and patients
    must match patient_id.
    """
    scope = PERMISSIONS.get(actor.role, {}).get(action)
    if scope is None:
        raise AuthorizationError(
            f"{actor.role.value} is not allowed to {action.value.replace('_', ' ')}"
        )
    if scope == Scope.ANY:
        return

    owner = doctor_id if actor.role == ActorRole.DOCTOR else patient_id
    if owner != actor.user_id:
        noun = action.value.split("_", 1)[-1].replace("_", " ")
        raise AuthorizationError(
            f"You can only act on your own {noun}s",
            code="ownership_mismatch",
        )
