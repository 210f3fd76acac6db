"""
Executes due reminder jobs.

A job is first claimed with an atomic pending -> processing update; only
the claimant renders and sends it. Every attempt reserves a ReminderLog
row keyed by "<job id>:<attempt>" before calling the transport, so a
redelivered dispatch request for the same attempt never sends twice.
"""

import logging
import secrets
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import TransportFailure
from clinicops.models.appointment import Appointment, CANCELLED_STATUSES, TERMINAL_STATUSES
from clinicops.models.reminder_models import (
    DeliveryStatus, ReminderChannel, ReminderJob, ReminderKind, ReminderLog, TriggerType
)
from clinicops.services.directory import DirectoryEntry, UserDirectory
from clinicops.services.reminder_analytics import ReminderAnalyticsAggregator
from clinicops.services.reminder_content import RenderedReminder, ReminderRenderer
from clinicops.services.reminder_job_store import ReminderJobStore
from clinicops.services.reminder_settings import ReminderSettingsStore
from clinicops.services.transports import ChannelTransports

logger = logging.getLogger(__name__)

_transport_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="reminder-transport")


def new_tracking_token() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class DispatchResult:
    job_id: str
    outcome: str
    channel: Optional[str] = None
    error: Optional[str] = None
    log_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome,
            "channel": self.channel,
            "error": self.error,
            "log_id": self.log_id,
        }


@dataclass
class DispatchSummary:
    released: int = 0
    results: List[DispatchResult] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "released_for_retry": self.released,
            "processed": len(self.results),
            "sent": self.count("sent"),
            "retry_scheduled": self.count("retry_scheduled"),
            "failed": self.count("failed"),
            "cancelled": self.count("cancelled"),
            "skipped": self.count("skipped"),
        }


class ReminderDispatcher:
    def __init__(
        self,
        db: Session,
        transports: ChannelTransports,
        clock: Optional[Clock] = None,
        directory: Optional[UserDirectory] = None,
        analytics: Optional[ReminderAnalyticsAggregator] = None,
        renderer: Optional[ReminderRenderer] = None,
        timeout: Optional[float] = None,
    ):
        self.db = db
        self.transports = transports
        self.clock = clock or system_clock
        self.store = ReminderJobStore(db, self.clock)
        self.directory = directory or UserDirectory(db)
        self.analytics = analytics or ReminderAnalyticsAggregator(db, self.clock)
        self.renderer = renderer or ReminderRenderer()
        self.settings_store = ReminderSettingsStore(db, self.clock)
        self.timeout = timeout or settings.REMINDER_TRANSPORT_TIMEOUT_SECONDS

    def dispatch_due(self, limit: Optional[int] = None) -> DispatchSummary:
        summary = DispatchSummary(released=self.store.release_retries())
        for job_id in self.store.due_job_ids(limit or settings.REMINDER_DISPATCH_BATCH_SIZE):
            try:
                summary.results.append(self.dispatch_job(job_id))
            except Exception as e:
                self.db.rollback()
                logger.error(f"Dispatch of reminder job {job_id} crashed: {e}", exc_info=True)
        if summary.results:
            logger.info(f"Reminder dispatch cycle: {summary.to_dict()}")
        return summary

    def dispatch_job(self, job_id: str) -> DispatchResult:
        if not self.store.claim(job_id):
            return DispatchResult(job_id=job_id, outcome="skipped")

        job = self.store.get(job_id)
        appointment = self.db.query(Appointment).filter(Appointment.id == job.appointment_id).first()

        reason = self._invalid_reason(appointment)
        if reason:
            self.store.cancel_in_dispatch(job.id, reason)
            logger.info(f"Reminder job {job.id} cancelled at dispatch: {reason}")
            return DispatchResult(job_id=job.id, outcome="cancelled", channel=job.channel, error=reason)

        log = self._reserve_log(job, appointment)
        if log is None:
            logger.warning(f"Reminder job {job.id} attempt {job.attempts} already dispatched")
            return DispatchResult(job_id=job.id, outcome="skipped", channel=job.channel)

        recipient = self.directory.get(job.user_id)
        if recipient is None:
            return self._record_failure(job, appointment, log, "Recipient not found")

        doctor = self.directory.get(appointment.doctor_id)
        payload = job.job_payload or {}
        tz_name = payload.get("timezone") or self.settings_store.preferences_for(job.user_id).timezone
        content = self.renderer.render(
            channel=ReminderChannel(job.channel),
            kind=job.reminder_kind,
            appointment=appointment,
            recipient_name=recipient.name,
            doctor_name=doctor.name if doctor else "your doctor",
            tz_name=tz_name,
            custom_message=payload.get("message"),
            tracking_token=log.tracking_token,
        )

        try:
            self.deliver(ReminderChannel(job.channel), recipient, content)
        except TransportFailure as e:
            return self._record_failure(job, appointment, log, e.message)
        except Exception as e:
            logger.error(f"Unexpected transport error for job {job.id}: {e}", exc_info=True)
            return self._record_failure(job, appointment, log, str(e))

        return self._record_success(job, appointment, log, content)

    def deliver(self, channel: ReminderChannel, recipient: DirectoryEntry, content: RenderedReminder) -> str:
        """Call the channel transport with an overall deadline."""
        future = _transport_pool.submit(self.transports.deliver, channel, recipient, content)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            raise TransportFailure(channel.value, f"Transport timed out after {self.timeout}s")

    def _invalid_reason(self, appointment: Optional[Appointment]) -> Optional[str]:
        if appointment is None or appointment.deleted_at is not None:
            return "Appointment removed"
        if appointment.status in CANCELLED_STATUSES:
            return "Appointment cancelled"
        if appointment.status in TERMINAL_STATUSES:
            return f"Appointment {appointment.status}"
        if appointment.start_time <= self.clock.now():
            return "Appointment already started"
        return None

    def _reserve_log(self, job: ReminderJob, appointment: Appointment) -> Optional[ReminderLog]:
        log = ReminderLog(
            job_id=job.id,
            appointment_id=job.appointment_id,
            user_id=job.user_id,
            doctor_id=appointment.doctor_id,
            channel=job.channel,
            reminder_kind=job.reminder_kind,
            trigger_type=(
                TriggerType.MANUAL.value if job.reminder_kind == ReminderKind.MANUAL.value
                else TriggerType.AUTOMATIC.value
            ),
            delivery_status=DeliveryStatus.PENDING.value,
            dispatch_key=f"{job.id}:{job.attempts}",
            tracking_token=new_tracking_token(),
            scheduled_at=job.scheduled_for,
            retry_count=max(job.attempts - 1, 0),
            created_at=self.clock.now(),
        )
        self.db.add(log)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        return log

    def _record_success(self, job: ReminderJob, appointment: Appointment, log: ReminderLog,
                        content: RenderedReminder) -> DispatchResult:
        job_id, channel = job.id, job.channel
        now = self.clock.now()
        if not self.store.mark_sent(job_id):
            logger.info(f"Reminder job {job_id} was sent after being cancelled or expired")

        log.delivery_status = DeliveryStatus.SENT.value
        log.sent_at = now
        log.content = content.summary()
        self.analytics.record_dispatch(appointment.doctor_id, channel, "sent")
        if channel == ReminderChannel.IN_APP.value:
            log.delivery_status = DeliveryStatus.DELIVERED.value
            log.delivered_at = now
            self.analytics.record_dispatch(appointment.doctor_id, channel, "delivered")
        self.db.commit()

        logger.info(f"Reminder job {job_id} sent via {channel}")
        return DispatchResult(job_id=job_id, outcome="sent", channel=channel, log_id=log.id)

    def _record_failure(self, job: ReminderJob, appointment: Appointment, log: ReminderLog,
                        error: str) -> DispatchResult:
        job_id, channel = job.id, job.channel
        state = self.store.mark_failed(job_id, error)

        log.delivery_status = DeliveryStatus.FAILED.value
        log.failed_at = self.clock.now()
        log.error_message = error
        self.analytics.record_dispatch(appointment.doctor_id, channel, "failed")
        self.db.commit()

        if state == "retry_scheduled":
            logger.warning(f"Reminder job {job_id} failed on {channel}, retry scheduled: {error}")
        else:
            logger.error(f"Reminder job {job_id} failed on {channel}: {error}")
        return DispatchResult(
            job_id=job_id, outcome=state or "failed", channel=channel, error=error, log_id=log.id
        )
