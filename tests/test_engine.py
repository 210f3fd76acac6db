"""
Background reminder engine.
"""

import asyncio
import pytest
from datetime import datetime

from clinicops.models.reminder_models import ReminderJob
from clinicops.services.reminder_engine import ReminderEngine

TEN_AM = datetime(2025, 6, 10, 10, 0)
FIRST_DUE = datetime(2025, 6, 9, 10, 0)


@pytest.fixture
def engine(session_factory, transports, clock):
    engine = ReminderEngine(clock=clock)
    engine.initialize(session_factory, transports)
    engine.interval = 0.05
    engine.worker_count = 1
    return engine


def job_statuses(session_factory):
    db = session_factory()
    try:
        return sorted((job.reminder_kind, job.channel, job.status) for job in db.query(ReminderJob).all())
    finally:
        db.close()


class TestReminderEngine:
    """Scheduler loop and workers"""

    def test_maintenance_returns_due_jobs(self, engine, book, clock):
        """Only jobs whose time has come are returned"""
        book(TEN_AM)
        assert engine.run_maintenance().due == []
        clock.set(FIRST_DUE)
        assert len(engine.run_maintenance().due) == 2

    def test_maintenance_expires_stale_jobs(self, engine, book, clock):
        """Jobs left far behind are expired, not dispatched"""
        book(TEN_AM)
        clock.set(datetime(2025, 6, 9, 12, 0))
        report = engine.run_maintenance()
        assert report.due == []
        assert report.expired == 2
        assert engine.stats["expired"] == 0

    def test_dispatch_one(self, engine, book, clock, transports, session_factory):
        """dispatch_one sends a job in its own session"""
        book(TEN_AM)
        clock.set(FIRST_DUE)
        results = [engine.dispatch_one(job_id) for job_id in engine.run_maintenance().due]
        assert [r.outcome for r in results] == ["sent", "sent"]
        assert engine.dispatch_one(results[0].job_id).outcome == "skipped"
        transports.email.send.assert_called_once()

    def test_start_requires_initialize(self):
        """An engine without a session factory refuses to start"""
        with pytest.raises(RuntimeError):
            asyncio.run(ReminderEngine().start())

    @pytest.mark.asyncio
    async def test_loops_send_due_reminders(self, engine, book, clock, transports, session_factory):
        """The running engine picks up and sends due jobs"""
        book(TEN_AM)
        clock.set(FIRST_DUE)

        await engine.start()
        assert engine.running
        try:
            for _ in range(100):
                if engine.stats["sent"] == 2:
                    break
                await asyncio.sleep(0.05)
        finally:
            await engine.stop()

        assert not engine.running
        assert engine.stats["sent"] == 2
        assert engine.stats["cycles"] >= 1
        assert job_statuses(session_factory) == [
            ("24h", "email", "sent"),
            ("24h", "push", "sent"),
            ("2h", "email", "pending"),
            ("2h", "push", "pending"),
        ]

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self, engine):
        """A second start while running does nothing"""
        await engine.start()
        tasks = list(engine._tasks)
        await engine.start()
        assert engine._tasks == tasks
        await engine.stop()

    @pytest.mark.asyncio
    async def test_loop_counts_expired_jobs(self, engine, book, clock):
        """The scheduler loop adds each sweep's expirations to the stats"""
        book(TEN_AM)
        clock.set(datetime(2025, 6, 9, 12, 0))

        await engine.start()
        try:
            for _ in range(100):
                if engine.stats["expired"] == 2:
                    break
                await asyncio.sleep(0.05)
        finally:
            await engine.stop()

        assert engine.stats["expired"] == 2
        assert engine.stats["sent"] == 0
