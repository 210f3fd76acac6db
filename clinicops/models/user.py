from sqlalchemy import Column, String, Boolean, DateTime, Integer, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from clinicops.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    push_token = Column(String, nullable=True)
    timezone = Column(String, default="UTC")
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor_profile = relationship("DoctorProfile", uselist=False, back_populates="doctor")

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else self.email


class DoctorProfile(Base):
    """
    Scheduling configuration of a doctor.

    working_hours is keyed by lowercase weekday name, each value either
    null (day off) or {"start": "09:00", "end": "17:00"}.
    """
    __tablename__ = "doctor_profiles"

    doctor_id = Column(String, ForeignKey("users.id"), primary_key=True)
    specialty = Column(String, nullable=True)
    working_hours = Column(JSON, nullable=True)
    max_patient_appointments = Column(Integer, nullable=True)
    default_slot_minutes = Column(Integer, default=30)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("User", back_populates="doctor_profile")
