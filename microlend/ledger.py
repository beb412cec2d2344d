"""
Cash Ledger Module

Append-only record of every money movement in or out of the business.
Amounts are signed: positive is an inflow, negative an outflow. The running
sum of entries up to a date is the cash-in-hand figure; no balance is stored.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import AmountLike, ZERO, round_amount, sum_amounts, to_decimal
from .exceptions import ValidationError
from .logging_config import log_action
from .references import ReferenceNumberGenerator
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal


logger = logging.getLogger(__name__)


class TransactionType(Enum):
    """Kinds of cash movement"""
    CAPITAL_INJECTION = "capital_injection"
    EXPENSE = "expense"
    PAYMENT = "payment"
    DISBURSEMENT = "disbursement"


@dataclass
class CashLedgerEntry(StorageRecord):
    """One signed cash movement"""
    amount: Decimal
    transaction_type: TransactionType
    transaction_date: date
    description: str
    reference_number: str
    user_id: Optional[str] = None
    loan_id: Optional[str] = None
    payment_id: Optional[str] = None

    @property
    def is_inflow(self) -> bool:
        return self.amount > 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashLedgerEntry':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['amount'] = parse_decimal(data['amount'])
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['transaction_date'] = parse_date(data['transaction_date'])
        return cls(**data)


class CashLedger:
    """
    Ledger Store for cash movements

    Entries are never updated or deleted; corrections are appended as
    compensating entries.
    """

    def __init__(
        self,
        storage: StorageInterface,
        references: ReferenceNumberGenerator,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.references = references
        self.clock = clock
        self.entries_table = "cash_ledger"

    def record_entry(
        self,
        amount: AmountLike,
        transaction_type: TransactionType,
        description: str,
        reference_prefix: Optional[str] = None,
        transaction_date: Optional[date] = None,
        user_id: Optional[str] = None,
        loan_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        reference_number: Optional[str] = None
    ) -> CashLedgerEntry:
        """
        Append a signed entry to the ledger

        The reference number and the entry are written in one atomic unit.
        An explicit reference_number (e.g. a payment's receipt number) is
        used as is; otherwise one is issued for reference_prefix.

        Raises:
            ValidationError: Zero or malformed amount, blank description, or
                neither a prefix nor a reference number
        """
        if not reference_number and not reference_prefix:
            raise ValidationError("Ledger entries need a reference prefix or number")
        try:
            value = round_amount(to_decimal(amount))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if value == ZERO:
            raise ValidationError("Ledger entries must have a non-zero amount")
        if not description or not description.strip():
            raise ValidationError("Ledger entries require a description")

        transaction_date = transaction_date or self.clock()
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            entry = CashLedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                amount=value,
                transaction_type=transaction_type,
                transaction_date=transaction_date,
                description=description,
                reference_number=reference_number or self.references.next(reference_prefix, transaction_date),
                user_id=user_id,
                loan_id=loan_id,
                payment_id=payment_id
            )
            self.storage.save(self.entries_table, entry.id, entry.to_dict())

        log_action(logger, "info", f"Cash ledger {transaction_type.value} {value}",
                   user_id=user_id, action=f"cash_{transaction_type.value}",
                   resource=entry.reference_number,
                   extra={"loan_id": loan_id, "payment_id": payment_id})
        return entry

    def add_capital(self, amount: AmountLike, description: str, prefix: str = "CAP",
                    transaction_date: Optional[date] = None,
                    user_id: Optional[str] = None) -> CashLedgerEntry:
        """Record a capital injection (always an inflow)"""
        return self.record_entry(
            amount=abs(self._amount(amount)),
            transaction_type=TransactionType.CAPITAL_INJECTION,
            description=description,
            reference_prefix=prefix,
            transaction_date=transaction_date,
            user_id=user_id
        )

    def record_expense(self, amount: AmountLike, description: str, prefix: str = "EXP",
                       transaction_date: Optional[date] = None,
                       user_id: Optional[str] = None) -> CashLedgerEntry:
        """Record an operating expense (always an outflow)"""
        return self.record_entry(
            amount=-abs(self._amount(amount)),
            transaction_type=TransactionType.EXPENSE,
            description=description,
            reference_prefix=prefix,
            transaction_date=transaction_date,
            user_id=user_id
        )

    def entries(
        self,
        up_to: Optional[date] = None,
        start: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
        loan_id: Optional[str] = None
    ) -> List[CashLedgerEntry]:
        """Entries in transaction-date order, optionally windowed and filtered"""
        filters = {}
        if transaction_type:
            filters['transaction_type'] = transaction_type.value
        if loan_id:
            filters['loan_id'] = loan_id

        entries = [CashLedgerEntry.from_dict(d) for d in self.storage.find(self.entries_table, filters)]
        if start:
            entries = [e for e in entries if e.transaction_date >= start]
        if up_to:
            entries = [e for e in entries if e.transaction_date <= up_to]
        entries.sort(key=lambda e: (e.transaction_date, e.created_at))
        return entries

    def balance(self, as_of: date) -> Decimal:
        """Sum of all signed entries dated on or before as_of"""
        return sum_amounts(e.amount for e in self.entries(up_to=as_of))

    def _amount(self, amount: AmountLike) -> Decimal:
        try:
            return to_decimal(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
