"""
Loan Module

Handles loan application, approval, disbursement, payment collection and the
loan status machine. Loan-scoped writes run under a per-loan lock and inside a
single storage atomic unit, so a failure at any step leaves no partial
payment, ledger entry, schedule or activity behind.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from enum import Enum
import logging
import uuid

from .activity import ActivityLog, LoanAction
from .borrowers import BorrowerManager
from .config import MicrolendConfig
from .currency import AmountLike, HUNDRED, ZERO, round_amount, sum_amounts, to_decimal
from .exceptions import ConcurrencyConflict, InvalidStateTransition, NotFoundError, ValidationError
from .ledger import CashLedger, TransactionType
from .locks import LoanLockRegistry
from .logging_config import log_action
from .obligations import ObligationResolver
from .payments import Payment, PaymentMethod, PaymentStore
from .references import ReferenceNumberGenerator
from .schedules import RepaymentFrequency, ScheduleGenerator, ScheduleStore
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal


logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"            # Applied, awaiting a decision
    APPROVED = "approved"          # Approved, not yet paid out
    REJECTED = "rejected"          # Declined (terminal)
    DISBURSED = "disbursed"        # Principal released, no payment yet
    ACTIVE = "active"              # Repayments under way
    COMPLETED = "completed"        # Every installment paid
    DEFAULTED = "defaulted"        # Borrower stopped paying
    WRITTEN_OFF = "written_off"    # Bad debt (terminal)


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED},
    LoanStatus.DISBURSED: {LoanStatus.ACTIVE, LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF},
    LoanStatus.DEFAULTED: {LoanStatus.WRITTEN_OFF},
}

# Loans with money out on the street
OPEN_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)


def calculate_interest(principal: Decimal, interest_rate: Decimal) -> Decimal:
    """Flat simple interest, computed once at origination"""
    return round_amount(principal * interest_rate / HUNDRED)


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, lifecycle dates and cached repayment figures"""
    loan_number: str
    borrower_id: str
    market_id: str
    agent_id: Optional[str]
    principal_amount: Decimal
    interest_rate: Decimal              # Percent, e.g. 10 for 10%
    interest_amount: Decimal
    total_amount: Decimal
    duration_days: int
    repayment_frequency: RepaymentFrequency
    status: LoanStatus = LoanStatus.PENDING

    # Dates
    disbursement_date: Optional[date] = None
    due_date: Optional[date] = None

    installment_amount: Optional[Decimal] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    collection_day: Optional[str] = None
    collection_location: Optional[str] = None

    # Decisions
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    disbursed_by: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    written_off_at: Optional[datetime] = None

    # Cached figures, always recomputable from payments
    amount_paid: Decimal = ZERO
    balance: Optional[Decimal] = None

    version: int = 1
    deleted_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance is None:
            self.balance = self.total_amount

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'approved_at', 'rejected_at', 'disbursed_at',
                    'completed_at', 'defaulted_at', 'written_off_at', 'deleted_at'):
            data[key] = parse_datetime(data.get(key))
        for key in ('disbursement_date', 'due_date'):
            data[key] = parse_date(data.get(key))
        for key in ('principal_amount', 'interest_rate', 'interest_amount', 'total_amount',
                    'installment_amount', 'amount_paid', 'balance'):
            data[key] = parse_decimal(data.get(key))
        data['repayment_frequency'] = RepaymentFrequency(data['repayment_frequency'])
        data['status'] = LoanStatus(data['status'])
        return cls(**data)


class LoanManager:
    """
    Manages the loan lifecycle from application through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        borrower_manager: BorrowerManager,
        schedule_store: ScheduleStore,
        schedule_generator: ScheduleGenerator,
        payment_store: PaymentStore,
        obligations: ObligationResolver,
        cash_ledger: CashLedger,
        activity_log: ActivityLog,
        references: ReferenceNumberGenerator,
        locks: LoanLockRegistry,
        config: MicrolendConfig,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.borrower_manager = borrower_manager
        self.schedule_store = schedule_store
        self.schedule_generator = schedule_generator
        self.payment_store = payment_store
        self.obligations = obligations
        self.cash_ledger = cash_ledger
        self.activity_log = activity_log
        self.references = references
        self.locks = locks
        self.config = config
        self.clock = clock

        self.loans_table = "loans"

    def apply(
        self,
        borrower_id: str,
        principal_amount: AmountLike,
        interest_rate: AmountLike,
        duration_days: int,
        repayment_frequency: Union[str, RepaymentFrequency],
        agent_id: Optional[str] = None,
        market_id: Optional[str] = None,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
        collection_day: Optional[str] = None,
        collection_location: Optional[str] = None
    ) -> Loan:
        """
        Create a pending loan application

        Args:
            borrower_id: Active borrower applying
            principal_amount: Amount requested
            interest_rate: Flat rate in percent
            duration_days: Loan term in days
            repayment_frequency: daily, weekly, bi-weekly or monthly
            agent_id: Agent filing the application
            market_id: Market of the loan (defaults to the borrower's)

        Returns:
            Created Loan in PENDING status

        Raises:
            ValidationError: Bad amounts, rate, duration or frequency, or an
                inactive borrower
            NotFoundError: Unknown borrower or market
        """
        principal = round_amount(self._amount(principal_amount, "Principal amount"))
        rate = self._amount(interest_rate, "Interest rate")
        minimum = Decimal(self.config.min_principal_amount)
        if principal < minimum:
            raise ValidationError(f"Principal amount must be at least {minimum}")
        if rate < 0 or rate > Decimal(self.config.max_interest_rate):
            raise ValidationError(f"Interest rate must be between 0 and {self.config.max_interest_rate}")
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days < 1:
            raise ValidationError("Duration must be a whole number of days, at least 1")
        frequency = RepaymentFrequency.parse(repayment_frequency)

        borrower = self.borrower_manager.get(borrower_id)
        if not borrower.can_borrow:
            raise ValidationError(f"Borrower {borrower.full_name} is not active")
        if market_id:
            self.borrower_manager.market_registry.get(market_id)

        interest = calculate_interest(principal, rate)
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self.references.next(self.config.loan_number_prefix, self.clock()),
                borrower_id=borrower.id,
                market_id=market_id or borrower.market_id,
                agent_id=agent_id,
                principal_amount=principal,
                interest_rate=rate,
                interest_amount=interest,
                total_amount=principal + interest,
                duration_days=duration_days,
                repayment_frequency=frequency,
                purpose=purpose,
                notes=notes,
                collection_day=collection_day,
                collection_location=collection_location
            )
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.activity_log.record(
                loan.id, LoanAction.CREATED,
                f"Loan application {loan.loan_number} created for {principal}",
                user_id=agent_id,
                metadata={"principal_amount": principal, "interest_rate": rate,
                          "duration_days": duration_days, "repayment_frequency": frequency.value}
            )

        log_action(logger, "info", f"Loan {loan.loan_number} applied for",
                   user_id=agent_id, action="loan_created", resource=loan.id)
        return loan

    def get(self, loan_id: str, include_deleted: bool = False) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        loan = Loan.from_dict(data)
        if loan.deleted_at and not include_deleted:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(
        self,
        statuses: Optional[Iterable[LoanStatus]] = None,
        market_id: Optional[str] = None,
        borrower_id: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[Loan]:
        """Loans, optionally filtered by status, market and borrower"""
        filters = {}
        if market_id:
            filters['market_id'] = market_id
        if borrower_id:
            filters['borrower_id'] = borrower_id

        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        if not include_deleted:
            loans = [loan for loan in loans if loan.deleted_at is None]
        if statuses is not None:
            wanted = set(statuses)
            loans = [loan for loan in loans if loan.status in wanted]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def approve(self, loan_id: str, approver_id: str,
                expected_version: Optional[int] = None) -> Loan:
        """Approve a pending loan"""
        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._load_for_update(loan_id, expected_version)
            self._transition(loan, LoanStatus.APPROVED)
            loan.approved_by = approver_id
            loan.approved_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.activity_log.record(loan.id, LoanAction.APPROVED,
                                     f"Loan {loan.loan_number} approved", user_id=approver_id)

        log_action(logger, "info", f"Loan {loan.loan_number} approved",
                   user_id=approver_id, action="loan_approved", resource=loan.id)
        return loan

    def reject(self, loan_id: str, actor_id: str, reason: str,
               expected_version: Optional[int] = None) -> Loan:
        """Reject a pending loan; a reason is mandatory"""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._load_for_update(loan_id, expected_version)
            self._transition(loan, LoanStatus.REJECTED)
            loan.rejected_by = actor_id
            loan.rejected_at = datetime.now(timezone.utc)
            loan.rejection_reason = reason.strip()
            self._save_loan(loan)
            self.activity_log.record(loan.id, LoanAction.REJECTED,
                                     f"Loan {loan.loan_number} rejected: {loan.rejection_reason}",
                                     user_id=actor_id, metadata={"reason": loan.rejection_reason})

        log_action(logger, "info", f"Loan {loan.loan_number} rejected",
                   user_id=actor_id, action="loan_rejected", resource=loan.id)
        return loan

    def disburse(self, loan_id: str, disbursement_date: Optional[date] = None,
                 actor_id: Optional[str] = None,
                 expected_version: Optional[int] = None) -> Loan:
        """
        Release the principal of an approved loan

        Sets the repayment dates, generates the repayment schedule and writes
        the outgoing cash ledger entry, all in one atomic unit.

        Raises:
            InvalidStateTransition: Loan is not approved
        """
        disbursement_date = disbursement_date or self.clock()

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._load_for_update(loan_id, expected_version)
            self._transition(loan, LoanStatus.DISBURSED)
            loan.disbursement_date = disbursement_date
            loan.due_date = disbursement_date + timedelta(days=loan.duration_days)
            loan.disbursed_by = actor_id
            loan.disbursed_at = datetime.now(timezone.utc)

            schedules = self.schedule_generator.generate(loan)
            loan.installment_amount = schedules[0].expected_amount
            loan.amount_paid = ZERO
            loan.balance = loan.total_amount

            self.cash_ledger.record_entry(
                amount=-loan.principal_amount,
                transaction_type=TransactionType.DISBURSEMENT,
                description=f"Disbursement of loan {loan.loan_number}",
                reference_prefix=self.config.disbursement_prefix,
                transaction_date=disbursement_date,
                user_id=actor_id,
                loan_id=loan.id
            )
            self._save_loan(loan)
            self.activity_log.record(
                loan.id, LoanAction.DISBURSED,
                f"Loan {loan.loan_number} disbursed on {disbursement_date.isoformat()}",
                user_id=actor_id,
                metadata={"principal_amount": loan.principal_amount,
                          "installments": len(schedules),
                          "installment_amount": loan.installment_amount,
                          "due_date": loan.due_date}
            )

        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=actor_id, action="loan_disbursed", resource=loan.id,
                   extra={"installments": len(schedules)})
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: AmountLike,
        payment_date: Optional[date] = None,
        payment_method: Union[str, PaymentMethod] = PaymentMethod.CASH,
        schedule_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        collection_location: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Payment:
        """
        Record money received against a disbursed or active loan

        In one atomic unit: inserts the payment and its cash ledger entry,
        refreshes the linked schedule's status and the loan's cached figures,
        activates a disbursed loan and completes a fully repaid one.

        Raises:
            ValidationError: Bad amount or method, or a schedule of another loan
            NotFoundError: Unknown loan or schedule
            InvalidStateTransition: Loan is not accepting payments
        """
        value = round_amount(self._amount(amount, "Payment amount"))
        minimum = Decimal(self.config.min_payment_amount)
        if value <= 0 or value < minimum:
            raise ValidationError(f"Payment amount must be at least {minimum}")
        method = PaymentMethod.parse(payment_method)
        payment_date = payment_date or self.clock()

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.get(loan_id)
            if not loan.is_open:
                raise InvalidStateTransition(
                    f"Loan {loan.loan_number} is {loan.status.value}; payments need a disbursed or active loan"
                )
            if loan.disbursement_date and payment_date < loan.disbursement_date:
                raise ValidationError("Payment date is before the disbursement date")

            schedule = None
            if schedule_id:
                schedule = self.schedule_store.get(schedule_id)
                if schedule.loan_id != loan.id:
                    raise ValidationError(
                        f"Schedule {schedule_id} does not belong to loan {loan.loan_number}"
                    )

            now = datetime.now(timezone.utc)
            verified = self.config.auto_verify_payments
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=value,
                payment_date=payment_date,
                payment_method=method,
                receipt_number=self.references.next(self.config.receipt_prefix, payment_date),
                repayment_schedule_id=schedule_id,
                collected_by=actor_id,
                collection_location=collection_location,
                notes=notes,
                is_verified=verified,
                verified_by=actor_id if verified else None,
                verified_at=now if verified else None
            )
            self.payment_store.insert(payment)

            self.cash_ledger.record_entry(
                amount=value,
                transaction_type=TransactionType.PAYMENT,
                description=f"Repayment on loan {loan.loan_number}",
                reference_number=payment.receipt_number,
                transaction_date=payment_date,
                user_id=actor_id,
                loan_id=loan.id,
                payment_id=payment.id
            )

            if schedule is not None:
                self.obligations.update_status(schedule, self.clock())
            self._refresh_cached_figures(loan)

            if loan.status == LoanStatus.DISBURSED:
                self._transition(loan, LoanStatus.ACTIVE)
                self.activity_log.record(loan.id, LoanAction.ACTIVATED,
                                         f"Loan {loan.loan_number} activated by first payment",
                                         user_id=actor_id)

            self.activity_log.record(
                loan.id, LoanAction.PAYMENT_RECEIVED,
                f"Payment {payment.receipt_number} of {value} received",
                user_id=actor_id,
                metadata={"payment_id": payment.id, "amount": value,
                          "schedule_id": schedule_id, "method": method.value}
            )

            completed = self.obligations.is_loan_complete(loan.id)
            if completed:
                self._transition(loan, LoanStatus.COMPLETED)
                loan.completed_at = now
                self.activity_log.record(loan.id, LoanAction.COMPLETED,
                                         f"Loan {loan.loan_number} fully repaid",
                                         user_id=actor_id,
                                         metadata={"amount_paid": loan.amount_paid})

            self._save_loan(loan)

        log_action(logger, "info", f"Payment {payment.receipt_number} recorded",
                   user_id=actor_id, action="payment_received", resource=loan.id,
                   extra={"amount": str(value), "completed": completed})
        return payment

    def verify_payment(self, payment_id: str, actor_id: str) -> Payment:
        """Mark a payment verified so it counts towards daily recovery"""
        loan_id = self.payment_store.get(payment_id).loan_id
        with self.locks.hold(loan_id), self.storage.atomic():
            payment = self.payment_store.mark_verified(payment_id, actor_id)
            self.activity_log.record(loan_id, LoanAction.PAYMENT_VERIFIED,
                                     f"Payment {payment.receipt_number} verified",
                                     user_id=actor_id, metadata={"payment_id": payment.id})

        log_action(logger, "info", f"Payment {payment.receipt_number} verified",
                   user_id=actor_id, action="payment_verified", resource=payment.id)
        return payment

    def mark_defaulted(self, loan_id: str, actor_id: str, reason: str,
                       expected_version: Optional[int] = None) -> Loan:
        """Flag a disbursed or active loan as defaulted"""
        return self._close_out(loan_id, actor_id, reason, LoanStatus.DEFAULTED,
                               LoanAction.DEFAULTED, 'defaulted_at', expected_version)

    def write_off(self, loan_id: str, actor_id: str, reason: str,
                  expected_version: Optional[int] = None) -> Loan:
        """Write a loan off as bad debt"""
        return self._close_out(loan_id, actor_id, reason, LoanStatus.WRITTEN_OFF,
                               LoanAction.WRITTEN_OFF, 'written_off_at', expected_version)

    def soft_delete(self, loan_id: str, actor_id: str) -> Loan:
        """
        Hide a loan from every listing and report

        Loans with money outstanding cannot be removed.
        """
        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self.get(loan_id)
            if loan.is_open:
                raise InvalidStateTransition(
                    f"Loan {loan.loan_number} is {loan.status.value} and cannot be deleted"
                )
            loan.deleted_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.activity_log.record(loan.id, LoanAction.DELETED,
                                     f"Loan {loan.loan_number} deleted", user_id=actor_id)

        log_action(logger, "warning", f"Loan {loan.loan_number} deleted",
                   user_id=actor_id, action="loan_deleted", resource=loan.id)
        return loan

    def _close_out(self, loan_id, actor_id, reason, target, action, timestamp_field,
                   expected_version) -> Loan:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

        with self.locks.hold(loan_id), self.storage.atomic():
            loan = self._load_for_update(loan_id, expected_version)
            self._transition(loan, target)
            setattr(loan, timestamp_field, datetime.now(timezone.utc))
            loan.notes = f"{loan.notes}\n{reason.strip()}" if loan.notes else reason.strip()
            self._save_loan(loan)
            self.activity_log.record(
                loan.id, action,
                f"Loan {loan.loan_number} {target.value.replace('_', ' ')}: {reason.strip()}",
                user_id=actor_id,
                metadata={"reason": reason.strip(), "balance": loan.balance}
            )

        log_action(logger, "warning", f"Loan {loan.loan_number} {target.value}",
                   user_id=actor_id, action=f"loan_{target.value}", resource=loan.id)
        return loan

    def _transition(self, loan: Loan, target: LoanStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(loan.status, set())
        if target not in allowed:
            raise InvalidStateTransition(
                f"Cannot move loan {loan.loan_number} from {loan.status.value} to {target.value}"
            )
        loan.status = target

    def _load_for_update(self, loan_id: str, expected_version: Optional[int]) -> Loan:
        loan = self.get(loan_id)
        if expected_version is not None and loan.version != expected_version:
            raise ConcurrencyConflict(
                f"Loan {loan.loan_number} is at version {loan.version}, expected {expected_version}"
            )
        return loan

    def _refresh_cached_figures(self, loan: Loan) -> None:
        loan.amount_paid = sum_amounts(p.amount for p in self.payment_store.for_loan(loan.id))
        loan.balance = max(ZERO, loan.total_amount - loan.amount_paid)

    def _save_loan(self, loan: Loan) -> None:
        """
        Save with an optimistic version check

        Raises:
            ConcurrencyConflict: The stored loan changed since it was read
        """
        stored = self.storage.load(self.loans_table, loan.id)
        if stored and stored.get('version') != loan.version:
            raise ConcurrencyConflict(
                f"Loan {loan.loan_number} was modified concurrently "
                f"(stored version {stored.get('version')}, read version {loan.version})"
            )
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _amount(self, value: AmountLike, label: str) -> Decimal:
        try:
            return to_decimal(value)
        except ValueError as e:
            raise ValidationError(f"{label}: {e}") from e
