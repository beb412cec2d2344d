"""
Obligation Resolver Module

Derives how much of each expected installment has been paid, what is still
outstanding and whether it is overdue. Every figure is summed from payments;
the cached schedule status is written here but never read for arithmetic.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List

from .currency import ZERO, sum_amounts
from .payments import PaymentStore
from .schedules import RepaymentSchedule, ScheduleStatus, ScheduleStore


class ObligationResolver:
    """Computes paid/outstanding/overdue for repayment schedules"""

    def __init__(self, schedule_store: ScheduleStore, payment_store: PaymentStore):
        self.schedule_store = schedule_store
        self.payment_store = payment_store

    def amount_paid(self, schedule: RepaymentSchedule) -> Decimal:
        """Sum of every payment linked to the schedule"""
        return sum_amounts(p.amount for p in self.payment_store.for_schedule(schedule.id))

    def outstanding(self, schedule: RepaymentSchedule) -> Decimal:
        """Expected minus paid, never below zero"""
        return max(ZERO, schedule.expected_amount - self.amount_paid(schedule))

    def is_paid(self, schedule: RepaymentSchedule) -> bool:
        return self.amount_paid(schedule) >= schedule.expected_amount

    def is_overdue(self, schedule: RepaymentSchedule, as_of: date) -> bool:
        """Due strictly before as_of and not fully paid"""
        return schedule.due_date < as_of and not self.is_paid(schedule)

    def status_for(self, schedule: RepaymentSchedule, as_of: date) -> ScheduleStatus:
        if self.is_paid(schedule):
            return ScheduleStatus.PAID
        if schedule.due_date < as_of:
            return ScheduleStatus.OVERDUE
        return ScheduleStatus.PENDING

    def update_status(self, schedule: RepaymentSchedule, as_of: date) -> RepaymentSchedule:
        """Recompute and persist the cached status of one schedule"""
        status = self.status_for(schedule, as_of)
        if status != schedule.status:
            schedule.status = status
            schedule.updated_at = datetime.now(timezone.utc)
            self.schedule_store.save(schedule)
        return schedule

    def refresh_statuses(self, loan_id: str, as_of: date) -> List[RepaymentSchedule]:
        """Recompute the cached status of every schedule of a loan"""
        return [self.update_status(s, as_of) for s in self.schedule_store.for_loan(loan_id)]

    def is_loan_complete(self, loan_id: str) -> bool:
        """At least one schedule exists and every one is paid"""
        schedules = self.schedule_store.for_loan(loan_id)
        if not schedules:
            return False
        return all(self.is_paid(s) for s in schedules)
