"""
Repayment Schedule Module

Generates the expected obligations of a disbursed loan: one RepaymentSchedule
per installment, with due dates spaced by the loan's repayment frequency and
expected amounts that sum exactly to the loan's total payable.
"""

from datetime import date, datetime, timezone, timedelta
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import calendar
import logging
import math
import uuid

from .currency import CENT, round_amount, sum_amounts
from .exceptions import InvalidStateTransition, NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal


logger = logging.getLogger(__name__)


class RepaymentFrequency(Enum):
    """How often a borrower repays"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: Union[str, 'RepaymentFrequency']) -> 'RepaymentFrequency':
        """
        Resolve a frequency name

        Raises:
            ValidationError: If the value is not a known frequency
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(f.value for f in cls)
            raise ValidationError(f"Unknown repayment frequency {value!r} (expected one of: {valid})")


class ScheduleStatus(Enum):
    """Cached obligation status, recomputed from payments"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class RepaymentSchedule(StorageRecord):
    """One expected installment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    expected_amount: Decimal
    status: ScheduleStatus = ScheduleStatus.PENDING
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentSchedule':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['due_date'] = parse_date(data['due_date'])
        data['expected_amount'] = parse_decimal(data['expected_amount'])
        data['status'] = ScheduleStatus(data['status'])
        return cls(**data)


def installment_count(frequency: RepaymentFrequency, duration_days: int) -> int:
    """Number of installments for a loan of duration_days at frequency"""
    if frequency == RepaymentFrequency.DAILY:
        return duration_days
    elif frequency == RepaymentFrequency.WEEKLY:
        return math.ceil(duration_days / 7)
    elif frequency == RepaymentFrequency.BI_WEEKLY:
        return math.ceil(duration_days / 14)
    elif frequency == RepaymentFrequency.MONTHLY:
        return math.ceil(duration_days / 30)
    raise ValidationError(f"Unsupported repayment frequency: {frequency}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start_date: date, frequency: RepaymentFrequency, periods: int) -> date:
    """Date `periods` repayment periods after start_date"""
    if frequency == RepaymentFrequency.DAILY:
        return start_date + timedelta(days=periods)
    elif frequency == RepaymentFrequency.WEEKLY:
        return start_date + timedelta(weeks=periods)
    elif frequency == RepaymentFrequency.BI_WEEKLY:
        return start_date + timedelta(weeks=2 * periods)
    elif frequency == RepaymentFrequency.MONTHLY:
        # Always offset from the start so Jan 31 -> Feb 28 -> Mar 31
        return add_months(start_date, periods)
    raise ValidationError(f"Unsupported repayment frequency: {frequency}")


def split_total(total: Decimal, count: int) -> List[Decimal]:
    """
    Split total into count installments rounded to cents

    Every installment is total / count truncated to cents except the last,
    which takes whatever remains so the parts always sum to total. Truncating
    keeps the last installment at least as large as the others.
    """
    if count < 1:
        raise ValidationError("A schedule needs at least one installment")
    regular = (total / count).quantize(CENT, rounding=ROUND_DOWN)
    if regular <= 0:
        raise ValidationError(f"{total} cannot be split into {count} installments of at least {CENT}")
    amounts = [regular] * (count - 1)
    amounts.append(round_amount(total - regular * (count - 1)))
    return amounts


class ScheduleStore:
    """Persistence and lookups for repayment schedules"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.schedules_table = "repayment_schedules"

    def save(self, schedule: RepaymentSchedule) -> None:
        self.storage.save(self.schedules_table, schedule.id, schedule.to_dict())

    def get(self, schedule_id: str) -> RepaymentSchedule:
        data = self.storage.load(self.schedules_table, schedule_id)
        if not data:
            raise NotFoundError(f"Repayment schedule {schedule_id} not found")
        return RepaymentSchedule.from_dict(data)

    def for_loan(self, loan_id: str) -> List[RepaymentSchedule]:
        """Schedules of a loan ordered by installment number"""
        schedules = [
            RepaymentSchedule.from_dict(data)
            for data in self.storage.find(self.schedules_table, {'loan_id': loan_id})
        ]
        schedules.sort(key=lambda s: s.installment_number)
        return schedules

    def due_on(self, due_date: date) -> List[RepaymentSchedule]:
        return [
            RepaymentSchedule.from_dict(data)
            for data in self.storage.find(self.schedules_table, {'due_date': due_date.isoformat()})
        ]

    def has_schedules(self, loan_id: str) -> bool:
        return bool(self.storage.find(self.schedules_table, {'loan_id': loan_id}))


class ScheduleGenerator:
    """
    Schedule Generator

    Runs once per loan, from disbursement, inside the disbursement's atomic
    unit of work.
    """

    def __init__(self, schedule_store: ScheduleStore):
        self.schedule_store = schedule_store

    def generate(self, loan) -> List[RepaymentSchedule]:
        """
        Generate and persist the repayment schedules of a disbursed loan

        Args:
            loan: Loan with total_amount, duration_days, repayment_frequency
                and disbursement_date set

        Returns:
            Schedules ordered by installment number

        Raises:
            ValidationError: Missing disbursement date or unknown frequency
            InvalidStateTransition: The loan already has schedules
        """
        if loan.disbursement_date is None:
            raise ValidationError(f"Loan {loan.id} has no disbursement date")
        frequency = RepaymentFrequency.parse(loan.repayment_frequency)
        if self.schedule_store.has_schedules(loan.id):
            raise InvalidStateTransition(f"Loan {loan.id} already has a repayment schedule")

        count = installment_count(frequency, loan.duration_days)
        amounts = split_total(loan.total_amount, count)
        now = datetime.now(timezone.utc)

        schedules = []
        for number, amount in enumerate(amounts, start=1):
            schedule = RepaymentSchedule(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=number,
                due_date=advance(loan.disbursement_date, frequency, number),
                expected_amount=amount
            )
            self.schedule_store.save(schedule)
            schedules.append(schedule)

        logger.debug("Generated %d installments for loan %s (total %s)",
                     count, loan.id, sum_amounts(amounts))
        return schedules
