"""
Background reminder engine.

A scheduler loop wakes every REMINDER_DISPATCH_INTERVAL_SECONDS, releases
failed jobs whose backoff has elapsed, expires stale ones and queues the
ids of due jobs. REMINDER_WORKERS worker loops take ids off the queue and
dispatch them. Database and transport work is synchronous and runs in
threads, each with its own session.

Queueing the same id twice is harmless: only one claim can succeed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from clinicops.config import settings
from clinicops.core.clock import Clock, system_clock
from clinicops.services.reminder_dispatcher import DispatchResult, ReminderDispatcher
from clinicops.services.reminder_job_store import ReminderJobStore
from clinicops.services.transports import ChannelTransports

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    released: int = 0
    expired: int = 0
    due: List[str] = field(default_factory=list)


class ReminderEngine:
    _instance = None

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        self.running = False
        self.session_factory: Optional[Callable[[], Session]] = None
        self.transports: Optional[ChannelTransports] = None
        self.worker_count = settings.REMINDER_WORKERS
        self.interval = settings.REMINDER_DISPATCH_INTERVAL_SECONDS
        self.batch_size = settings.REMINDER_DISPATCH_BATCH_SIZE
        self.queue: Optional[asyncio.Queue] = None
        self._queued: Set[str] = set()
        self._tasks: List[asyncio.Task] = []
        self.stats: Dict[str, int] = {"cycles": 0, "sent": 0, "failed": 0, "cancelled": 0, "expired": 0}

    @classmethod
    def get_instance(cls) -> "ReminderEngine":
        if cls._instance is None:
            cls._instance = ReminderEngine()
        return cls._instance

    def initialize(self, session_factory: Callable[[], Session], transports: Optional[ChannelTransports] = None):
        self.session_factory = session_factory
        self.transports = transports or ChannelTransports.from_settings(session_factory)
        logger.info("Reminder engine initialized")

    async def start(self):
        if self.running:
            logger.warning("Reminder engine already running")
            return
        if self.session_factory is None:
            raise RuntimeError("Reminder engine must be initialized before start")

        self.running = True
        self.queue = asyncio.Queue()
        logger.info(f"Starting reminder engine with {self.worker_count} workers")
        self._tasks = [asyncio.create_task(self._scheduler_loop())]
        for i in range(self.worker_count):
            self._tasks.append(asyncio.create_task(self._worker_loop(f"reminder-worker-{i}")))

    async def stop(self):
        logger.info("Stopping reminder engine...")
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queued.clear()
        logger.info("Reminder engine stopped")

    # Work done in threads

    def run_maintenance(self) -> MaintenanceReport:
        """Release retries, expire stale jobs and collect ids that are due now."""
        db = self.session_factory()
        try:
            store = ReminderJobStore(db, self.clock)
            released = store.release_retries()
            expired = store.sweep_expired()
            due = store.due_job_ids(self.batch_size)
            if released or expired or due:
                logger.info(f"Reminder cycle: {released} released, {expired} expired, {len(due)} due")
            return MaintenanceReport(released=released, expired=expired, due=due)
        finally:
            db.close()

    def dispatch_one(self, job_id: str) -> DispatchResult:
        db = self.session_factory()
        try:
            dispatcher = ReminderDispatcher(db, self.transports, clock=self.clock)
            return dispatcher.dispatch_job(job_id)
        finally:
            db.close()

    # Loops

    async def _scheduler_loop(self):
        logger.info("Reminder scheduler loop started")
        while self.running:
            try:
                report = await asyncio.to_thread(self.run_maintenance)
                self.stats["expired"] += report.expired
                self.stats["cycles"] += 1
                for job_id in report.due:
                    if job_id not in self._queued:
                        self._queued.add(job_id)
                        await self.queue.put(job_id)
            except Exception as e:
                logger.error(f"Reminder scheduler loop error: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def _worker_loop(self, worker_name: str):
        logger.info(f"Worker {worker_name} started")
        while self.running:
            job_id = await self.queue.get()
            try:
                result = await asyncio.to_thread(self.dispatch_one, job_id)
                if result.outcome in ("sent", "cancelled"):
                    self.stats[result.outcome] += 1
                elif result.outcome in ("failed", "retry_scheduled"):
                    self.stats["failed"] += 1
            except Exception as e:
                logger.error(f"Worker {worker_name} failed on reminder job {job_id}: {e}", exc_info=True)
            finally:
                self._queued.discard(job_id)
                self.queue.task_done()


def get_reminder_engine() -> ReminderEngine:
    return ReminderEngine.get_instance()
