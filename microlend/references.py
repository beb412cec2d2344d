"""
Reference Number Module

Issues human-readable reference numbers of the form PREFIX-YYYYMMDD-NNNN,
one sequence per prefix per day. Loan numbers, payment receipts and cash
ledger references all come from here.
"""

import threading
from datetime import date
from typing import Callable

from .storage import StorageInterface


class ReferenceNumberGenerator:
    """
    Sequence-per-day-per-prefix reference numbers

    The counter and a reservation for the issued number are written through
    the caller's storage, so they commit or roll back together with the record
    being numbered. Reservations are keyed by the number itself: a number that
    is already reserved is never issued again, even if a concurrent rollback
    rewinds the counter.
    """

    def __init__(self, storage: StorageInterface, clock: Callable[[], date] = date.today):
        self.storage = storage
        self.clock = clock
        self.sequences_table = "reference_sequences"
        self.reservations_table = "reference_numbers"
        self._lock = threading.Lock()

    def next(self, prefix: str, on_date: date = None) -> str:
        """
        Issue the next reference number for prefix on the given day

        Args:
            prefix: Reference prefix (e.g. "PAY")
            on_date: Day the sequence belongs to (defaults to today)

        Returns:
            Reference number such as "PAY-20260115-0001"
        """
        day = (on_date or self.clock()).strftime("%Y%m%d")
        key = f"{prefix}-{day}"

        # Storage transaction first: SQLite serializes on its own lock
        with self.storage.atomic():
            with self._lock:
                record = self.storage.load(self.sequences_table, key)
                sequence = record["last_sequence"] if record else 0

                while True:
                    sequence += 1
                    number = f"{key}-{sequence:04d}"
                    if not self.storage.exists(self.reservations_table, number):
                        break

                self.storage.save(self.sequences_table, key, {
                    "id": key,
                    "prefix": prefix,
                    "day": day,
                    "last_sequence": sequence
                })
                self.storage.save(self.reservations_table, number, {"id": number})

        return number
