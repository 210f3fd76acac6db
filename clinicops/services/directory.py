"""
Read-only views over users, used to validate identities and resolve
delivery addresses.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from clinicops.core.error_handling import ValidationError
from clinicops.models.user import User, DoctorProfile
from clinicops.services.permissions import ActorRole
from clinicops.services.working_hours import WorkingHours

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryEntry:
    id: str
    role: ActorRole
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    timezone: str = "UTC"
    is_active: bool = True


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[DirectoryEntry]:
        if not user_id:
            return None
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            return None
        try:
            role = ActorRole(user.role)
        except ValueError:
            logger.warning(f"User {user_id} has unknown role {user.role!r}")
            return None
        return DirectoryEntry(
            id=user.id,
            role=role,
            name=user.full_name,
            email=user.email,
            phone=user.phone_number,
            push_token=user.push_token,
            timezone=user.timezone or "UTC",
            is_active=bool(user.is_active),
        )

    def require(self, user_id: Optional[str], role: ActorRole) -> DirectoryEntry:
        """Return the user or raise ValidationError when absent or of another role."""
        entry = self.get(user_id) if user_id else None
        if entry is None:
            raise ValidationError(f"{role.value.capitalize()} not found", code=f"invalid_{role.value}")
        if entry.role != role:
            raise ValidationError(
                f"User {user_id} is not a {role.value}", code=f"invalid_{role.value}"
            )
        if not entry.is_active:
            raise ValidationError(f"{role.value.capitalize()} account is inactive", code=f"inactive_{role.value}")
        return entry

    def working_hours(self, doctor_id: str) -> WorkingHours:
        profile = self._profile(doctor_id)
        return WorkingHours.from_json(profile.working_hours if profile else None)

    def max_patient_appointments(self, doctor_id: str) -> Optional[int]:
        profile = self._profile(doctor_id)
        return profile.max_patient_appointments if profile else None

    def _profile(self, doctor_id: str) -> Optional[DoctorProfile]:
        return self.db.query(DoctorProfile).filter(DoctorProfile.doctor_id == doctor_id).first()


class PatientDirectory(UserDirectory):
    def get_patient(self, patient_id: str) -> Optional[DirectoryEntry]:
        entry = self.get(patient_id)
        if entry is None or entry.role != ActorRole.PATIENT:
            return None
        return entry
