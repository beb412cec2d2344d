"""
Loan Lock Module

Per-loan mutual exclusion for loan-scoped writes. Payments and disbursement
read a loan's schedules and payments and then write derived state, so two
writers on the same loan must never interleave. Different loans never block
each other; reads take no loan locks.
"""

import threading
from contextlib import contextmanager
from typing import Dict

from .exceptions import ConcurrencyConflict


class LoanLockRegistry:
    """
    Hands out one re-entrant lock per loan id

    A loan's lock is kept only while some thread holds or waits for it, so the
    registry stays as small as the number of loans currently being written.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        # loan id -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, loan_id: str) -> threading.RLock:
        with self._registry_lock:
            entry = self._locks.get(loan_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[loan_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, loan_id: str) -> None:
        with self._registry_lock:
            entry = self._locks[loan_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[loan_id]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, loan_id: str):
        """
        Serialize a unit of work on one loan

        Raises:
            ConcurrencyConflict: If the lock is not acquired within the timeout
        """
        lock = self._checkout(loan_id)
        try:
            if not lock.acquire(timeout=self.timeout_seconds):
                raise ConcurrencyConflict(
                    f"Loan {loan_id} is busy; timed out after {self.timeout_seconds}s"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(loan_id)
