import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List

from sqlalchemy import text
from sqlalchemy.orm import Session

from ..errors import ConcurrencyConflict
from .utils import lock_key_hash, sorted_keys

logger = logging.getLogger(__name__)


def customer_key(customer_id: str) -> str:
    return f"customer:{customer_id}"


def vehicle_key(vehicle_id: str) -> str:
    return f"vehicle:{vehicle_id}"


def token_key(token: str) -> str:
    return f"token:{token}"


def booking_key(booking_id: str) -> str:
    return f"booking:{booking_id}"


class KeyedLocks:
    """One mutex per resource key, created on demand and dropped when unused.

    Keys are always taken in sorted order so two holders of overlapping key
    sets cannot deadlock.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[List[str]]:
        ordered = sorted_keys(keys)
        acquired: List[threading.Lock] = []
        checked_out: List[str] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                if not lock.acquire(timeout=self.timeout):
                    logger.warning("Timed out after %.1fs waiting for %s", self.timeout, key)
                    raise ConcurrencyConflict(
                        f"Resource {key} is busy, try again",
                        {"key": key, "timeout_sec": self.timeout},
                    )
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)


def advisory_lock(db: Session, keys: Iterable[str]) -> None:
    """Transaction-scoped PostgreSQL advisory locks for cross-process callers.

    No-op on other dialects; released automatically at commit/rollback.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    for key in sorted_keys(keys):
        db.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": lock_key_hash(key)})
