"""
Test suite for reference numbers

Loan numbers, receipts and ledger references must never repeat, including
under concurrent requests on the same day.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date

from microlend.references import ReferenceNumberGenerator
from microlend.storage import InMemoryStorage, SQLiteStorage


class TestReferenceFormat:
    """Test PREFIX-YYYYMMDD-NNNN numbering"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.references = ReferenceNumberGenerator(self.storage, clock=lambda: date(2026, 1, 15))

    def test_format_and_sequence(self):
        assert self.references.next("PAY") == "PAY-20260115-0001"
        assert self.references.next("PAY") == "PAY-20260115-0002"

    def test_sequences_are_per_prefix(self):
        assert self.references.next("PAY") == "PAY-20260115-0001"
        assert self.references.next("BM") == "BM-20260115-0001"
        assert self.references.next("PAY") == "PAY-20260115-0002"

    def test_sequences_are_per_day(self):
        assert self.references.next("CAP", date(2026, 1, 14)) == "CAP-20260114-0001"
        assert self.references.next("CAP") == "CAP-20260115-0001"
        assert self.references.next("CAP", date(2026, 1, 14)) == "CAP-20260114-0002"

    def test_rolled_back_number_is_not_kept(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                assert self.references.next("PAY") == "PAY-20260115-0001"
                raise RuntimeError("record insert failed")

        assert self.references.next("PAY") == "PAY-20260115-0001"

    def test_reserved_number_is_skipped(self):
        # A number reserved by another writer is never issued twice
        self.storage.save("reference_numbers", "PAY-20260115-0001", {"id": "PAY-20260115-0001"})
        assert self.references.next("PAY") == "PAY-20260115-0002"


class TestReferenceConcurrency:
    """Test uniqueness under threads"""

    @pytest.mark.parametrize("storage_factory", [InMemoryStorage, SQLiteStorage])
    def test_unique_under_threads(self, storage_factory):
        storage = storage_factory()
        references = ReferenceNumberGenerator(storage, clock=lambda: date(2026, 1, 15))

        def issue(_):
            return [references.next("PAY") for _ in range(25)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            batches = list(pool.map(issue, range(8)))

        numbers = [n for batch in batches for n in batch]
        assert len(numbers) == 200
        assert len(set(numbers)) == 200
        assert max(numbers) == "PAY-20260115-0200"
        storage.close()
