"""
Durable reminder-job state machine.

    pending -> processing -> sent
    pending | processing -> failed -> pending (retry after backoff)
    pending | processing | failed(retryable) -> cancelled
    pending | processing -> expired (sweep)

Every transition is a single conditional UPDATE, so concurrent workers
and sweeps cannot both move the same job. Cancellation, sent and expired
are terminal; a failed job with no attempts left is terminal too.

Methods used inside a caller's booking transaction (create_jobs,
cancel_for_appointment, cancel_for_user) only flush. Transitions driven
by the dispatcher and the sweep commit on their own.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.core.error_handling import NotFoundError, StateError, ValidationError
from clinicops.models.appointment import Appointment
from clinicops.models.reminder_models import (
    ReminderChannel, ReminderJob, ReminderJobStatus, ReminderKind, ReminderLog
)
from clinicops.services.reminder_planner import ReminderJobSpec

logger = logging.getLogger(__name__)

PENDING = ReminderJobStatus.PENDING.value
PROCESSING = ReminderJobStatus.PROCESSING.value
SENT = ReminderJobStatus.SENT.value
FAILED = ReminderJobStatus.FAILED.value
CANCELLED = ReminderJobStatus.CANCELLED.value
EXPIRED = ReminderJobStatus.EXPIRED.value

EXPIRED_REASON = "Job expired - scheduled time passed"


def _cancellable():
    return and_(
        ReminderJob.is_cancelled == False,  # noqa: E712
        or_(
            ReminderJob.status.in_([PENDING, PROCESSING]),
            and_(ReminderJob.status == FAILED, ReminderJob.attempts < ReminderJob.max_attempts),
        ),
    )


class ReminderJobStore:
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or system_clock

    # Creation

    def create_job(
        self,
        appointment_id: int,
        user_id: str,
        channel: ReminderChannel,
        kind: ReminderKind,
        scheduled_for: datetime,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ReminderJob:
        channel = ReminderChannel(channel)
        kind = ReminderKind(kind)
        key = ReminderJob.grouping_key(appointment_id, channel.value, kind.value)
        existing = self.db.query(ReminderJob.id).filter(ReminderJob.active_key == key).first()
        if existing is not None:
            raise ValidationError(
                f"A {kind.value} reminder is already scheduled on {channel.value} for this appointment",
                code="duplicate_reminder",
            )

        now = self.clock.now()
        job = ReminderJob(
            appointment_id=appointment_id,
            user_id=user_id,
            channel=channel.value,
            reminder_kind=kind.value,
            status=PENDING,
            scheduled_for=scheduled_for,
            attempts=0,
            max_attempts=settings.REMINDER_MAX_ATTEMPTS,
            job_payload=payload or {},
            active_key=key,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.flush()
        return job

    def create_jobs(self, appointment: Appointment, user_id: str, specs: Iterable[ReminderJobSpec]) -> List[ReminderJob]:
        return [
            self.create_job(appointment.id, user_id, spec.channel, spec.kind, spec.scheduled_for)
            for spec in specs
        ]

    # Reads

    def get(self, job_id: str) -> ReminderJob:
        job = self.db.query(ReminderJob).filter(ReminderJob.id == job_id).first()
        if job is None:
            raise NotFoundError("Reminder job not found")
        return job

    def jobs_for_appointment(self, appointment_id: int) -> List[ReminderJob]:
        return self.db.query(ReminderJob).filter(
            ReminderJob.appointment_id == appointment_id
        ).order_by(ReminderJob.scheduled_for, ReminderJob.channel).all()

    def active_jobs_for_appointment(self, appointment_id: int) -> List[ReminderJob]:
        return self.db.query(ReminderJob).filter(
            ReminderJob.appointment_id == appointment_id,
            ReminderJob.active_key.isnot(None),
        ).order_by(ReminderJob.scheduled_for, ReminderJob.channel).all()

    def upcoming_for_user(self, user_id: str, limit: int = 10) -> List[ReminderJob]:
        """Pending reminders still ahead for a recipient, soonest first."""
        return self.db.query(ReminderJob).join(
            Appointment, Appointment.id == ReminderJob.appointment_id
        ).filter(
            ReminderJob.user_id == user_id,
            ReminderJob.status == PENDING,
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.scheduled_for > self.clock.now(),
            Appointment.deleted_at.is_(None),
        ).order_by(ReminderJob.scheduled_for, ReminderJob.channel).limit(limit).all()

    def due_job_ids(self, limit: int = 100) -> List[str]:
        now = self.clock.now()
        rows = self.db.query(ReminderJob.id).filter(
            ReminderJob.status == PENDING,
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.scheduled_for <= now,
        ).order_by(ReminderJob.scheduled_for).limit(limit).all()
        return [row[0] for row in rows]

    # Cancellation

    def cancel_for_appointment(
        self,
        appointment_id: int,
        reason: str = "Appointment modified",
        kinds: Optional[Iterable[ReminderKind]] = None,
        channels: Optional[Iterable[ReminderChannel]] = None,
    ) -> int:
        """Cancel live jobs of an appointment, optionally only some kinds or channels."""
        now = self.clock.now()
        query = self.db.query(ReminderJob).filter(
            ReminderJob.appointment_id == appointment_id,
            _cancellable(),
        )
        if kinds is not None:
            query = query.filter(ReminderJob.reminder_kind.in_([ReminderKind(k).value for k in kinds]))
        if channels is not None:
            query = query.filter(ReminderJob.channel.in_([ReminderChannel(c).value for c in channels]))
        count = query.update({
            ReminderJob.status: CANCELLED,
            ReminderJob.is_cancelled: True,
            ReminderJob.cancelled_at: now,
            ReminderJob.cancellation_reason: reason,
            ReminderJob.next_attempt_at: None,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.flush()
        if count:
            logger.info(f"Cancelled {count} reminder job(s) for appointment {appointment_id}: {reason}")
        return count

    def cancel_for_user(self, user_id: str, reason: str) -> int:
        now = self.clock.now()
        count = self.db.query(ReminderJob).filter(
            ReminderJob.user_id == user_id,
            _cancellable(),
        ).update({
            ReminderJob.status: CANCELLED,
            ReminderJob.is_cancelled: True,
            ReminderJob.cancelled_at: now,
            ReminderJob.cancellation_reason: reason,
            ReminderJob.next_attempt_at: None,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.flush()
        return count

    def cancel_job(self, job_id: str, reason: str) -> ReminderJob:
        """Cancel one reminder that has not been picked up yet. Commits."""
        now = self.clock.now()
        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status == PENDING,
            ReminderJob.is_cancelled == False,  # noqa: E712
        ).update({
            ReminderJob.status: CANCELLED,
            ReminderJob.is_cancelled: True,
            ReminderJob.cancelled_at: now,
            ReminderJob.cancellation_reason: reason,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        job = self.get(job_id)
        if not updated:
            raise StateError(f"Only pending reminders can be cancelled (status: {job.status})")
        return job

    def reschedule_job(self, job_id: str, scheduled_for: datetime) -> ReminderJob:
        """Move a pending reminder to a new time. Commits."""
        now = self.clock.now()
        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status == PENDING,
            ReminderJob.is_cancelled == False,  # noqa: E712
        ).update({
            ReminderJob.scheduled_for: scheduled_for,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        job = self.get(job_id)
        if not updated:
            raise StateError(f"Only pending reminders can be rescheduled (status: {job.status})")
        return job

    # Dispatch transitions

    def claim(self, job_id: str) -> bool:
        """pending -> processing; True only for the one caller that won."""
        now = self.clock.now()
        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status == PENDING,
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.scheduled_for <= now,
        ).update({
            ReminderJob.status: PROCESSING,
            ReminderJob.attempts: ReminderJob.attempts + 1,
            ReminderJob.last_attempted_at: now,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_sent(self, job_id: str) -> bool:
        now = self.clock.now()
        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status == PROCESSING,
            ReminderJob.is_cancelled == False,  # noqa: E712
        ).update({
            ReminderJob.status: SENT,
            ReminderJob.sent_at: now,
            ReminderJob.failure_reason: None,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    def mark_failed(self, job_id: str, error: str) -> Optional[str]:
        """
        processing -> failed.

        Returns "retry_scheduled" when attempts remain, "failed" when the
        job is exhausted, None when it was cancelled or expired meanwhile.
        """
        now = self.clock.now()
        job = self.db.query(ReminderJob).filter(ReminderJob.id == job_id).populate_existing().first()
        if job is None or job.status != PROCESSING or job.is_cancelled:
            return None

        retryable = job.attempts < job.max_attempts
        values = {
            ReminderJob.status: FAILED,
            ReminderJob.failed_at: now,
            ReminderJob.failure_reason: (error or "")[:1000],
            ReminderJob.updated_at: now,
        }
        if retryable:
            values[ReminderJob.next_attempt_at] = now + timedelta(seconds=settings.retry_backoff(job.attempts))
        else:
            values[ReminderJob.next_attempt_at] = None
            values[ReminderJob.active_key] = None

        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status == PROCESSING,
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.attempts == job.attempts,
        ).update(values, synchronize_session=False)
        self.db.commit()
        if not updated:
            return None
        return "retry_scheduled" if retryable else "failed"

    def cancel_in_dispatch(self, job_id: str, reason: str) -> bool:
        """Cancel a claimed job whose appointment no longer needs a reminder."""
        now = self.clock.now()
        updated = self.db.query(ReminderJob).filter(
            ReminderJob.id == job_id,
            ReminderJob.status.in_([PENDING, PROCESSING]),
            ReminderJob.is_cancelled == False,  # noqa: E712
        ).update({
            ReminderJob.status: CANCELLED,
            ReminderJob.is_cancelled: True,
            ReminderJob.cancelled_at: now,
            ReminderJob.cancellation_reason: reason,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        return updated == 1

    # Maintenance

    def release_retries(self) -> int:
        """failed -> pending for retryable jobs whose backoff has elapsed."""
        now = self.clock.now()
        count = self.db.query(ReminderJob).filter(
            ReminderJob.status == FAILED,
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.attempts < ReminderJob.max_attempts,
            ReminderJob.next_attempt_at <= now,
        ).update({
            ReminderJob.status: PENDING,
            ReminderJob.next_attempt_at: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        if count:
            logger.info(f"Released {count} reminder job(s) for retry")
        return count

    def sweep_expired(self) -> int:
        """
        Mark pending/processing jobs expired once their scheduled time is
        further in the past than the expiry grace. One UPDATE, safe to
        repeat.
        """
        now = self.clock.now()
        cutoff = now - timedelta(minutes=settings.REMINDER_EXPIRY_GRACE_MINUTES)
        count = self.db.query(ReminderJob).filter(
            ReminderJob.status.in_([PENDING, PROCESSING]),
            ReminderJob.is_cancelled == False,  # noqa: E712
            ReminderJob.scheduled_for < cutoff,
        ).update({
            ReminderJob.status: EXPIRED,
            ReminderJob.failure_reason: EXPIRED_REASON,
            ReminderJob.active_key: None,
            ReminderJob.updated_at: now,
        }, synchronize_session=False)
        self.db.commit()
        if count:
            logger.info(f"Expired {count} overdue reminder job(s)")
        return count

    def cleanup(self, older_than_days: int) -> Dict[str, int]:
        """Delete logs and terminal jobs older than the retention horizon."""
        cutoff = self.clock.now() - timedelta(days=older_than_days)
        logs_deleted = self.db.query(ReminderLog).filter(
            ReminderLog.created_at < cutoff
        ).delete(synchronize_session=False)

        referenced = select(ReminderLog.job_id).where(ReminderLog.job_id.isnot(None))
        jobs_deleted = self.db.query(ReminderJob).filter(
            ReminderJob.updated_at < cutoff,
            ReminderJob.active_key.is_(None),
            ReminderJob.id.notin_(referenced),
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Reminder cleanup removed {jobs_deleted} job(s) and {logs_deleted} log(s)")
        return {"jobs_deleted": jobs_deleted, "logs_deleted": logs_deleted}

    def statistics(self, appointment_id: int) -> Dict[str, Any]:
        rows = self.db.query(
            ReminderJob.status, ReminderJob.channel, func.count(ReminderJob.id)
        ).filter(
            ReminderJob.appointment_id == appointment_id
        ).group_by(ReminderJob.status, ReminderJob.channel).all()

        by_status: Dict[str, int] = {status.value: 0 for status in ReminderJobStatus}
        by_channel: Dict[str, int] = {}
        total = 0
        for status, channel, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_channel[channel] = by_channel.get(channel, 0) + count
            total += count
        return {"total": total, "by_status": by_status, "by_channel": by_channel}
