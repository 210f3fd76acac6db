import os
from datetime import time
from typing import List, Optional

from pydantic_settings import BaseSettings


def _parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    SESSION_SECRET: Optional[str] = os.getenv("SESSION_SECRET")

    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    AWS_ACCESS_KEY_ID: Optional[str] = os.getenv("AWS_ACCESS_KEY_ID")
    AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv("AWS_SECRET_ACCESS_KEY")
    AWS_SES_FROM_EMAIL: str = os.getenv("AWS_SES_FROM_EMAIL", "noreply@clinic.local")

    TWILIO_ACCOUNT_SID: Optional[str] = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: Optional[str] = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_PHONE_NUMBER: Optional[str] = os.getenv("TWILIO_PHONE_NUMBER")

    PUSH_GATEWAY_URL: Optional[str] = os.getenv("PUSH_GATEWAY_URL")
    PUSH_GATEWAY_KEY: Optional[str] = os.getenv("PUSH_GATEWAY_KEY")

    CLINIC_NAME: str = os.getenv("CLINIC_NAME", "Clinic")
    APP_URL: str = os.getenv("APP_URL", "http://localhost:5000")

    CORS_ORIGINS: list = ["http://localhost:5000", "http://127.0.0.1:5000"]

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Booking policy
    DEFAULT_APPOINTMENT_MINUTES: int = int(os.getenv("DEFAULT_APPOINTMENT_MINUTES", "30"))
    PAST_START_GRACE_MINUTES: int = int(os.getenv("PAST_START_GRACE_MINUTES", "5"))
    LUNCH_START: str = os.getenv("LUNCH_START", "12:00")
    LUNCH_END: str = os.getenv("LUNCH_END", "13:00")
    CANCELLATION_MIN_HOURS: int = int(os.getenv("CANCELLATION_MIN_HOURS", "2"))
    PATIENT_MIN_ADVANCE_HOURS: int = int(os.getenv("PATIENT_MIN_ADVANCE_HOURS", "2"))
    PATIENT_CANCELLATION_NOTICE_HOURS: int = int(os.getenv("PATIENT_CANCELLATION_NOTICE_HOURS", "24"))
    PATIENT_CANCELLATION_LIMIT: int = int(os.getenv("PATIENT_CANCELLATION_LIMIT", "3"))
    PATIENT_CANCELLATION_WINDOW_DAYS: int = int(os.getenv("PATIENT_CANCELLATION_WINDOW_DAYS", "30"))
    DEFAULT_MAX_PATIENT_APPOINTMENTS: int = int(os.getenv("DEFAULT_MAX_PATIENT_APPOINTMENTS", "5"))
    BLOCK_RECURRENCE_MAX_MONTHS: int = int(os.getenv("BLOCK_RECURRENCE_MAX_MONTHS", "3"))

    # Reminder delivery
    REMINDER_MAX_ATTEMPTS: int = int(os.getenv("REMINDER_MAX_ATTEMPTS", "3"))
    REMINDER_RETRY_BACKOFF_SECONDS: List[int] = [60, 300, 900]
    REMINDER_TRANSPORT_TIMEOUT_SECONDS: int = int(os.getenv("REMINDER_TRANSPORT_TIMEOUT_SECONDS", "30"))
    REMINDER_EXPIRY_GRACE_MINUTES: int = int(os.getenv("REMINDER_EXPIRY_GRACE_MINUTES", "60"))
    REMINDER_DISPATCH_INTERVAL_SECONDS: int = int(os.getenv("REMINDER_DISPATCH_INTERVAL_SECONDS", "60"))
    REMINDER_DISPATCH_BATCH_SIZE: int = int(os.getenv("REMINDER_DISPATCH_BATCH_SIZE", "100"))
    REMINDER_WORKERS: int = int(os.getenv("REMINDER_WORKERS", "2"))
    REMINDER_ENGINE_ENABLED: bool = os.getenv("REMINDER_ENGINE_ENABLED", "false").lower() == "true"
    REMINDER_DATA_RETENTION_DAYS: int = int(os.getenv("REMINDER_DATA_RETENTION_DAYS", "90"))

    def validate_database_url(self):
        if not self.DATABASE_URL:
            raise ValueError(
                "DATABASE_URL environment variable is required for database operations. "
                "Please set it to your PostgreSQL connection string."
            )

    @property
    def lunch_window(self):
        return _parse_clock(self.LUNCH_START), _parse_clock(self.LUNCH_END)

    def retry_backoff(self, attempts: int) -> int:
        """Seconds to wait after the given number of failed attempts."""
        schedule = self.REMINDER_RETRY_BACKOFF_SECONDS or [60]
        index = min(max(attempts, 1), len(schedule)) - 1
        return schedule[index]

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
