"""
Pytest configuration for the clinic operations tests
"""

import pytest
import sys
import os
from datetime import datetime
from unittest.mock import MagicMock

# Settings are read at import time, so the environment is prepared
# BEFORE importing any clinicops modules
os.environ["DATABASE_URL"] = "sqlite:///./test_clinicops.db"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "test_access_key"
os.environ["AWS_SECRET_ACCESS_KEY"] = "test_secret_key"
os.environ["REMINDER_ENGINE_ENABLED"] = "false"

# Add parent directory to path to import clinicops modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from clinicops.core.clock import FrozenClock  # noqa: E402
from clinicops.database import Base  # noqa: E402
from clinicops import models  # noqa: E402,F401
from clinicops.models.user import DoctorProfile, User  # noqa: E402
from clinicops.services.appointment_scheduler import AppointmentRequest, AppointmentScheduler  # noqa: E402
from clinicops.services.permissions import Actor, ActorRole  # noqa: E402
from clinicops.services.reminder_service import ReminderService  # noqa: E402
from clinicops.services.transports import (  # noqa: E402
    ChannelTransports, EmailTransport, InAppTransport, PushTransport, SmsTransport
)

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

# Sunday morning; 2025-06-10 is the Tuesday after
NOW = datetime(2025, 6, 1, 8, 0)

WEEKDAY_HOURS = {
    "monday": {"start": "09:00", "end": "17:00"},
    "tuesday": {"start": "09:00", "end": "17:00"},
    "wednesday": {"start": "09:00", "end": "17:00"},
    "thursday": {"start": "09:00", "end": "17:00"},
    "friday": {"start": "09:00", "end": "17:00"},
    "saturday": None,
    "sunday": None,
}

ADMIN = Actor(user_id="adm-1", role=ActorRole.ADMIN)
RECEPTIONIST = Actor(user_id="rec-1", role=ActorRole.RECEPTIONIST)
DOCTOR = Actor(user_id="doc-1", role=ActorRole.DOCTOR)
OTHER_DOCTOR = Actor(user_id="doc-2", role=ActorRole.DOCTOR)
PATIENT = Actor(user_id="pat-1", role=ActorRole.PATIENT)
OTHER_PATIENT = Actor(user_id="pat-2", role=ActorRole.PATIENT)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for async tests"""
    return 'asyncio'


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database so worker threads share it"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'clinicops.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh session for each test"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def users(db_session):
    """Two doctors, two patients and the clinic staff"""
    db_session.add_all([
        User(id="adm-1", email="admin@clinic.test", role="admin", first_name="Ada"),
        User(id="rec-1", email="front@clinic.test", role="receptionist", first_name="Rita"),
        User(id="doc-1", email="house@clinic.test", role="doctor", first_name="Greg", last_name="House"),
        User(id="doc-2", email="wilson@clinic.test", role="doctor", first_name="James", last_name="Wilson"),
        User(id="pat-1", email="jane@example.com", role="patient", first_name="Jane", last_name="Doe",
             phone_number="+15550001111", push_token="push-token-1"),
        User(id="pat-2", email="john@example.com", role="patient", first_name="John", last_name="Roe"),
    ])
    db_session.add_all([
        DoctorProfile(doctor_id="doc-1", specialty="diagnostics", working_hours=WEEKDAY_HOURS),
        DoctorProfile(doctor_id="doc-2", specialty="oncology", working_hours=WEEKDAY_HOURS,
                      max_patient_appointments=2),
    ])
    db_session.commit()
    return db_session


@pytest.fixture
def transports(session_factory):
    """External channels are mocked; in-app notifications go to the test database"""
    return ChannelTransports(
        email=MagicMock(spec=EmailTransport),
        sms=MagicMock(spec=SmsTransport),
        push=MagicMock(spec=PushTransport),
        in_app=InAppTransport(session_factory),
    )


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def reminders(db_session, clock, transports, audit, session_factory):
    return ReminderService(
        db_session, clock=clock, transports=transports, audit=audit, session_factory=session_factory
    )


@pytest.fixture
def scheduler(users, db_session, clock, reminders, audit):
    return AppointmentScheduler(db_session, clock=clock, reminders=reminders, audit=audit)


@pytest.fixture
def book(scheduler):
    """Book an appointment for pat-1 with doc-1 as the receptionist"""
    def _book(start, end=None, patient_id="pat-1", doctor_id="doc-1", actor=RECEPTIONIST):
        return scheduler.create(
            AppointmentRequest(patient_id=patient_id, doctor_id=doctor_id, start_time=start, end_time=end),
            actor,
        )
    return _book
