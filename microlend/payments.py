"""
Payment Module

Payments are money actually received from borrowers. A payment is immutable
once written; the only change ever applied is the one-way verification flag.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .exceptions import InvalidStateTransition, NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal


class PaymentMethod(Enum):
    """How a payment was collected"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Union[str, 'PaymentMethod']) -> 'PaymentMethod':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown payment method {value!r}")


@dataclass
class Payment(StorageRecord):
    """Money received against a loan"""
    loan_id: str
    amount: Decimal
    payment_date: date
    payment_method: PaymentMethod
    receipt_number: str
    repayment_schedule_id: Optional[str] = None
    collected_by: Optional[str] = None
    collection_location: Optional[str] = None
    notes: Optional[str] = None
    is_verified: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'verified_at'):
            data[key] = parse_datetime(data.get(key))
        data['amount'] = parse_decimal(data['amount'])
        data['payment_date'] = parse_date(data['payment_date'])
        data['payment_method'] = PaymentMethod(data['payment_method'])
        return cls(**data)


class PaymentStore:
    """Insert-only persistence for payments"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.payments_table = "payments"

    def insert(self, payment: Payment) -> None:
        """
        Persist a new payment

        Raises:
            ValidationError: Non-positive amount or a receipt number already used
        """
        if payment.amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if self.storage.exists(self.payments_table, payment.id):
            raise ValidationError(f"Payment {payment.id} already recorded")
        if self.storage.find(self.payments_table, {'receipt_number': payment.receipt_number}):
            raise ValidationError(f"Receipt number {payment.receipt_number} already used")
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def get(self, payment_id: str) -> Payment:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise NotFoundError(f"Payment {payment_id} not found")
        return Payment.from_dict(data)

    def for_loan(self, loan_id: str) -> List[Payment]:
        """Payment history of a loan, oldest first"""
        payments = [Payment.from_dict(d) for d in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def for_schedule(self, schedule_id: str) -> List[Payment]:
        return [
            Payment.from_dict(d)
            for d in self.storage.find(self.payments_table, {'repayment_schedule_id': schedule_id})
        ]

    def on_date(self, payment_date: date, verified_only: bool = False) -> List[Payment]:
        filters: Dict[str, Any] = {'payment_date': payment_date.isoformat()}
        if verified_only:
            filters['is_verified'] = True
        return [Payment.from_dict(d) for d in self.storage.find(self.payments_table, filters)]

    def mark_verified(self, payment_id: str, verified_by: str) -> Payment:
        """
        Set the verification flag

        Raises:
            NotFoundError: Unknown payment
            InvalidStateTransition: Payment is already verified
        """
        payment = self.get(payment_id)
        if payment.is_verified:
            raise InvalidStateTransition(f"Payment {payment.receipt_number} is already verified")
        payment.is_verified = True
        payment.verified_by = verified_by
        payment.verified_at = datetime.now(timezone.utc)
        payment.updated_at = payment.verified_at
        self.storage.save(self.payments_table, payment.id, payment.to_dict())
        return payment
