"""
Loan Calculation Module

The Aggregation Engine: read-only dashboard calculations derived on demand
from the cash ledger, payments and repayment schedules. Nothing here is
cached and nothing here writes; every call recomputes from stored rows.

Every calculation takes an explicit as-of date (defaulting to the injected
clock) so results are reproducible, and an optional market filter.
Soft-deleted loans never contribute to a loan-based figure.
"""

from datetime import date, timedelta
from dataclasses import dataclass, asdict, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .currency import ZERO, percentage, sum_amounts
from .exceptions import ValidationError
from .ledger import CashLedger, TransactionType
from .loans import Loan, LoanManager, LoanStatus, OPEN_STATUSES
from .obligations import ObligationResolver
from .payments import PaymentStore
from .schedules import RepaymentFrequency, ScheduleStore
from .storage import serialize_value


# Frequencies reported as recovery buckets; bi-weekly is reported separately
RECOVERY_BUCKETS = (RepaymentFrequency.DAILY, RepaymentFrequency.WEEKLY, RepaymentFrequency.MONTHLY)

# Statuses a loan can only reach after its principal went out
DISBURSED_STATUSES = (
    LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.COMPLETED,
    LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF
)


class _Result:
    def to_dict(self) -> Dict[str, Any]:
        return serialize_value(asdict(self))


@dataclass
class CashPosition(_Result):
    cash_in_hand: Decimal
    as_of_date: date
    currency: str
    market_id: Optional[str] = None


@dataclass
class RecoverySummary(_Result):
    date: date
    total_recovered: Decimal
    payment_count: int
    by_loan_type: Dict[str, Dict[str, Any]]
    unclassified: Dict[str, Any]


@dataclass
class ActiveLoanCensus(_Result):
    total_active_loans: int
    by_type: Dict[str, Dict[str, Any]]


@dataclass
class DueTodaySummary(_Result):
    date: date
    total_schedules: int
    pending_count: int
    paid_count: int
    total_expected: Decimal
    total_collected: Decimal
    outstanding: Decimal
    collection_rate: Decimal


@dataclass
class PortfolioExposure(_Result):
    as_of_date: date
    total_exposure: Decimal
    total_expected: Decimal
    total_received: Decimal
    total_outstanding: Decimal
    current_outstanding: Decimal
    overdue_outstanding: Decimal
    loan_count: int
    recovery_rate: Decimal


@dataclass
class LoanBalance(_Result):
    loan_id: str
    loan_number: str
    status: str
    as_of_date: date
    principal: Decimal
    interest: Decimal
    total: Decimal
    total_expected: Decimal
    total_paid: Decimal
    balance: Decimal
    schedules: List[Dict[str, Any]] = field(default_factory=list)
    payment_history: List[Dict[str, Any]] = field(default_factory=list)


class LoanCalculationService:
    """
    Aggregation Engine over loans, schedules, payments and the cash ledger

    Takes no loan locks, so reports never block writers.
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        schedule_store: ScheduleStore,
        payment_store: PaymentStore,
        obligations: ObligationResolver,
        cash_ledger: CashLedger,
        currency_code: str = "NGN",
        clock: Callable[[], date] = date.today
    ):
        self.loan_manager = loan_manager
        self.schedule_store = schedule_store
        self.payment_store = payment_store
        self.obligations = obligations
        self.cash_ledger = cash_ledger
        self.currency_code = currency_code
        self.clock = clock

    def cash_in_hand(self, as_of: Optional[date] = None,
                     market_id: Optional[str] = None) -> CashPosition:
        """
        Sum of every signed cash ledger entry dated on or before as_of

        With a market filter only entries linked to a loan of that market
        count; capital and expenses belong to no market.
        """
        as_of = as_of or self.clock()
        entries = self.cash_ledger.entries(up_to=as_of)
        if market_id:
            # Money that moved stays moved, even for a loan removed later
            loan_ids = {
                loan.id for loan in self.loan_manager.list_loans(market_id=market_id, include_deleted=True)
            }
            entries = [e for e in entries if e.loan_id in loan_ids]

        return CashPosition(
            cash_in_hand=sum_amounts(e.amount for e in entries),
            as_of_date=as_of,
            currency=self.currency_code,
            market_id=market_id
        )

    def recovered_on_date(self, on_date: Optional[date] = None,
                          market_id: Optional[str] = None) -> RecoverySummary:
        """
        Verified payments dated on_date, bucketed by the loan's frequency

        Bi-weekly loans count towards the total and the payment count but are
        kept out of the daily/weekly/monthly buckets, under ``unclassified``.
        """
        on_date = on_date or self.clock()
        loans = self._loans_by_id(market_id)
        payments = [
            p for p in self.payment_store.on_date(on_date, verified_only=True)
            if p.loan_id in loans
        ]

        buckets = {f.value: [] for f in RECOVERY_BUCKETS}
        unclassified = []
        for payment in payments:
            frequency = loans[payment.loan_id].repayment_frequency
            if frequency in RECOVERY_BUCKETS:
                buckets[frequency.value].append(payment.amount)
            else:
                unclassified.append(payment.amount)

        return RecoverySummary(
            date=on_date,
            total_recovered=sum_amounts(p.amount for p in payments),
            payment_count=len(payments),
            by_loan_type={
                name: {'count': len(amounts), 'total_amount': sum_amounts(amounts)}
                for name, amounts in buckets.items()
            },
            unclassified={'count': len(unclassified), 'total_amount': sum_amounts(unclassified)}
        )

    def active_loans(self, market_id: Optional[str] = None) -> ActiveLoanCensus:
        """
        Disbursed/active loans that still have an unpaid installment

        A loan without generated schedules is never counted.
        """
        active = []
        for loan in self.loan_manager.list_loans(statuses=OPEN_STATUSES, market_id=market_id):
            schedules = self.schedule_store.for_loan(loan.id)
            if schedules and any(not self.obligations.is_paid(s) for s in schedules):
                active.append(loan)

        by_type = {}
        for frequency in RepaymentFrequency:
            group = [loan for loan in active if loan.repayment_frequency == frequency]
            by_type[frequency.value] = {
                'count': len(group),
                'total_principal': sum_amounts(loan.principal_amount for loan in group)
            }

        return ActiveLoanCensus(total_active_loans=len(active), by_type=by_type)

    def due_today(self, on_date: Optional[date] = None,
                  market_id: Optional[str] = None) -> DueTodaySummary:
        """
        Installments due on on_date and how much has been collected on them

        Collected is the lifetime amount paid against each installment, not
        only what was paid on on_date.
        """
        on_date = on_date or self.clock()
        loans = self._loans_by_id(market_id)
        schedules = [s for s in self.schedule_store.due_on(on_date) if s.loan_id in loans]

        paid_count = 0
        collected = []
        outstanding = []
        for schedule in schedules:
            amount_paid = self.obligations.amount_paid(schedule)
            if amount_paid >= schedule.expected_amount:
                paid_count += 1
            collected.append(amount_paid)
            outstanding.append(max(ZERO, schedule.expected_amount - amount_paid))

        total_expected = sum_amounts(s.expected_amount for s in schedules)
        total_collected = sum_amounts(collected)

        return DueTodaySummary(
            date=on_date,
            total_schedules=len(schedules),
            pending_count=len(schedules) - paid_count,
            paid_count=paid_count,
            total_expected=total_expected,
            total_collected=total_collected,
            outstanding=sum_amounts(outstanding),
            collection_rate=percentage(total_collected, total_expected)
        )

    def portfolio_exposure(self, market_id: Optional[str] = None,
                           as_of: Optional[date] = None) -> PortfolioExposure:
        """
        Money still on the street across disbursed and active loans

        Overdue outstanding is judged against as_of; the remainder of the
        outstanding figure is current.
        """
        as_of = as_of or self.clock()
        loans = self.loan_manager.list_loans(statuses=OPEN_STATUSES, market_id=market_id)

        expected = []
        received = []
        overdue = []
        for loan in loans:
            schedules = self.schedule_store.for_loan(loan.id)
            expected.extend(s.expected_amount for s in schedules)
            received.extend(p.amount for p in self.payment_store.for_loan(loan.id))
            overdue.extend(
                self.obligations.outstanding(s) for s in schedules
                if self.obligations.is_overdue(s, as_of)
            )

        total_expected = sum_amounts(expected)
        total_received = sum_amounts(received)
        total_outstanding = total_expected - total_received
        overdue_outstanding = sum_amounts(overdue)

        return PortfolioExposure(
            as_of_date=as_of,
            total_exposure=total_outstanding,
            total_expected=total_expected,
            total_received=total_received,
            total_outstanding=total_outstanding,
            current_outstanding=total_outstanding - overdue_outstanding,
            overdue_outstanding=overdue_outstanding,
            loan_count=len(loans),
            recovery_rate=percentage(total_received, total_expected)
        )

    def loan_balance(self, loan_id: str, as_of: Optional[date] = None) -> LoanBalance:
        """
        Balance of a single loan with its installment and payment history

        Raises:
            NotFoundError: Unknown loan
        """
        as_of = as_of or self.clock()
        loan = self.loan_manager.get(loan_id)
        schedules = self.schedule_store.for_loan(loan.id)
        payments = self.payment_store.for_loan(loan.id)

        total_expected = sum_amounts(s.expected_amount for s in schedules)
        total_paid = sum_amounts(p.amount for p in payments)

        return LoanBalance(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            status=loan.status.value,
            as_of_date=as_of,
            principal=loan.principal_amount,
            interest=loan.interest_amount,
            total=loan.total_amount,
            total_expected=total_expected,
            total_paid=total_paid,
            balance=max(ZERO, total_expected - total_paid),
            schedules=[
                {
                    'installment_number': s.installment_number,
                    'due_date': s.due_date,
                    'expected': s.expected_amount,
                    'paid': self.obligations.amount_paid(s),
                    'outstanding': self.obligations.outstanding(s),
                    'status': self.obligations.status_for(s, as_of).value
                }
                for s in schedules
            ],
            payment_history=[
                {
                    'date': p.payment_date,
                    'amount': p.amount,
                    'receipt_number': p.receipt_number,
                    'is_verified': p.is_verified
                }
                for p in payments
            ]
        )

    def historical_performance(self, from_date: date, to_date: date,
                               market_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Day-by-day collections and due installments over an inclusive range

        Raises:
            ValidationError: from_date is after to_date
        """
        if from_date > to_date:
            raise ValidationError("from_date must be on or before to_date")

        daily = []
        total_collected = ZERO
        total_expected = ZERO
        current = from_date
        while current <= to_date:
            collections = self.recovered_on_date(current, market_id)
            repayments = self.due_today(current, market_id)
            total_collected += collections.total_recovered
            total_expected += repayments.total_expected
            daily.append({
                'date': current,
                'collections': collections.to_dict(),
                'repayments': repayments.to_dict()
            })
            current += timedelta(days=1)

        return serialize_value({
            'period': {
                'from': from_date,
                'to': to_date,
                'days': (to_date - from_date).days + 1
            },
            'summary': {
                'total_collected': total_collected,
                'total_expected': total_expected,
                'collection_rate': percentage(total_collected, total_expected)
            },
            'daily_breakdown': daily
        })

    def dashboard(self, as_of: Optional[date] = None,
                  market_id: Optional[str] = None) -> Dict[str, Any]:
        """All five dashboard figures for one day"""
        as_of = as_of or self.clock()
        return {
            'as_of_date': as_of.isoformat(),
            'market_id': market_id,
            'cash_position': self.cash_in_hand(as_of, market_id).to_dict(),
            'daily_collections': self.recovered_on_date(as_of, market_id).to_dict(),
            'active_loans': self.active_loans(market_id).to_dict(),
            'today_repayments': self.due_today(as_of, market_id).to_dict(),
            'portfolio_exposure': self.portfolio_exposure(market_id, as_of).to_dict()
        }

    def cash_summary(self, from_date: Optional[date] = None,
                     to_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Cash ledger inflow, outflow and per-type breakdown over a window

        Without from_date the window starts at the first entry.
        """
        to_date = to_date or self.clock()
        if from_date and from_date > to_date:
            raise ValidationError("from_date must be on or before to_date")

        entries = self.cash_ledger.entries(start=from_date, up_to=to_date)
        inflow = sum_amounts(e.amount for e in entries if e.amount > 0)
        outflow = sum_amounts(e.amount for e in entries if e.amount < 0)

        breakdown = {}
        for transaction_type in TransactionType:
            typed = [e.amount for e in entries if e.transaction_type == transaction_type]
            if typed:
                breakdown[transaction_type.value] = {'count': len(typed), 'total': sum_amounts(typed)}

        return serialize_value({
            'current_balance': self.cash_ledger.balance(to_date),
            'period': {'from': from_date, 'to': to_date},
            'totals': {
                'inflow': inflow,
                'outflow': abs(outflow),
                'net': inflow + outflow
            },
            'breakdown': breakdown
        })

    def loan_summary(self, market_id: Optional[str] = None) -> Dict[str, Any]:
        """Loan counts per status plus disbursed, collected and outstanding totals"""
        loans = self.loan_manager.list_loans(market_id=market_id)

        counts = {f"{status.value}_loans": 0 for status in LoanStatus}
        for loan in loans:
            counts[f"{loan.status.value}_loans"] += 1

        collected = []
        outstanding = []
        for loan in loans:
            paid = sum_amounts(p.amount for p in self.payment_store.for_loan(loan.id))
            collected.append(paid)
            if loan.status in OPEN_STATUSES:
                outstanding.append(max(ZERO, loan.total_amount - paid))

        return serialize_value({
            'total_loans': len(loans),
            **counts,
            'total_disbursed': sum_amounts(
                loan.principal_amount for loan in loans if loan.status in DISBURSED_STATUSES
            ),
            'total_collected': sum_amounts(collected),
            'total_outstanding': sum_amounts(outstanding)
        })

    def _loans_by_id(self, market_id: Optional[str]) -> Dict[str, Loan]:
        return {loan.id: loan for loan in self.loan_manager.list_loans(market_id=market_id)}
