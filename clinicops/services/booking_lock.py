"""
Per-doctor serialization of schedule writes.

Two layers: a process-local lock keyed by doctor id, and a row lock on the
doctor's users row (SELECT ... FOR UPDATE) held until the surrounding
transaction ends. The row lock serializes writers across processes on
PostgreSQL; SQLite ignores FOR UPDATE and serializes writes itself.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict

from sqlalchemy.orm import Session

from clinicops.core.error_handling import ConflictError, ConflictKind
from clinicops.models.user import User

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 30

_doctor_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _lock_for(doctor_id: str) -> threading.Lock:
    with _registry_lock:
        lock = _doctor_locks.get(doctor_id)
        if lock is None:
            lock = threading.Lock()
            _doctor_locks[doctor_id] = lock
        return lock


@contextmanager
def doctor_serialization(db: Session, doctor_id: str, timeout: float = LOCK_TIMEOUT_SECONDS):
    """
    Hold the doctor's schedule exclusively for the enclosed block.

    The caller commits inside the block. Any exception rolls the session
    back before the lock is released.
    """
    lock = _lock_for(doctor_id)
    if not lock.acquire(timeout=timeout):
        logger.warning(f"Timed out waiting for schedule lock of doctor {doctor_id}")
        raise ConflictError(
            ConflictKind.SCHEDULE_LOCKED,
            "Doctor schedule is being updated, please try again",
        )
    try:
        db.query(User.id).filter(User.id == doctor_id).with_for_update().first()
        yield
    except Exception:
        db.rollback()
        raise
    finally:
        lock.release()
