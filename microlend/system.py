"""
Lending System Module

Wires every component of the lending core together and exposes the
operations used by the outer layers. Actor identity and market scoping are
plain arguments: authentication and transport live outside this package.
"""

from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union
import logging

from .activity import ActivityLog, LoanActivity
from .borrowers import Borrower, BorrowerManager
from .calculations import (
    ActiveLoanCensus, CashPosition, DueTodaySummary, LoanBalance,
    LoanCalculationService, PortfolioExposure, RecoverySummary
)
from .config import MicrolendConfig, get_config
from .currency import AmountLike
from .ledger import CashLedger, CashLedgerEntry
from .locks import LoanLockRegistry
from .logging_config import setup_logging_from_config
from .loans import Loan, LoanManager, OPEN_STATUSES
from .markets import Market, MarketRegistry
from .obligations import ObligationResolver
from .payments import Payment, PaymentMethod, PaymentStore
from .references import ReferenceNumberGenerator
from .schedules import RepaymentFrequency, RepaymentSchedule, ScheduleGenerator, ScheduleStore
from .storage import StorageInterface, create_storage


logger = logging.getLogger(__name__)


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(
        self,
        config: Optional[MicrolendConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.config = config or get_config()
        setup_logging_from_config(self.config)
        self.storage = storage or create_storage(self.config)
        self.clock = clock or date.today

        # Shared infrastructure
        self.references = ReferenceNumberGenerator(self.storage, self.clock)
        self.activity_log = ActivityLog(self.storage)
        self.locks = LoanLockRegistry(self.config.lock_timeout_seconds)

        # Registries
        self.market_registry = MarketRegistry(self.storage)
        self.borrower_manager = BorrowerManager(self.storage, self.market_registry)

        # Ledgers and obligations
        self.cash_ledger = CashLedger(self.storage, self.references, self.clock)
        self.schedule_store = ScheduleStore(self.storage)
        self.schedule_generator = ScheduleGenerator(self.schedule_store)
        self.payment_store = PaymentStore(self.storage)
        self.obligations = ObligationResolver(self.schedule_store, self.payment_store)

        self.loan_manager = LoanManager(
            self.storage, self.borrower_manager, self.schedule_store,
            self.schedule_generator, self.payment_store, self.obligations,
            self.cash_ledger, self.activity_log, self.references, self.locks,
            self.config, self.clock
        )
        self.calculations = LoanCalculationService(
            self.loan_manager, self.schedule_store, self.payment_store,
            self.obligations, self.cash_ledger, self.config.currency_code, self.clock
        )

        logger.debug("Lending system ready (storage=%s)", type(self.storage).__name__)

    # Markets and borrowers

    def register_market(self, name: str, code: str, region: Optional[str] = None,
                        address: Optional[str] = None) -> Market:
        return self.market_registry.register(name, code, region=region, address=address)

    def register_borrower(self, first_name: str, last_name: str, phone: str,
                          home_address: str, market_id: str,
                          registered_by: Optional[str] = None, **details) -> Borrower:
        return self.borrower_manager.register(
            first_name, last_name, phone, home_address, market_id,
            registered_by=registered_by, **details
        )

    # Loan lifecycle

    def apply_loan(
        self,
        borrower_id: str,
        principal_amount: AmountLike,
        interest_rate: AmountLike,
        duration_days: int,
        repayment_frequency: Union[str, RepaymentFrequency],
        agent_id: Optional[str] = None,
        **details
    ) -> Loan:
        return self.loan_manager.apply(
            borrower_id, principal_amount, interest_rate, duration_days,
            repayment_frequency, agent_id=agent_id, **details
        )

    def approve_loan(self, loan_id: str, approver_id: str) -> Loan:
        return self.loan_manager.approve(loan_id, approver_id)

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        return self.loan_manager.reject(loan_id, approver_id, reason)

    def disburse_loan(self, loan_id: str, disbursement_date: Optional[date] = None,
                      actor_id: Optional[str] = None) -> Loan:
        return self.loan_manager.disburse(loan_id, disbursement_date, actor_id)

    def record_payment(
        self,
        loan_id: str,
        amount: AmountLike,
        payment_date: Optional[date] = None,
        payment_method: Union[str, PaymentMethod] = PaymentMethod.CASH,
        schedule_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        **details
    ) -> Payment:
        return self.loan_manager.record_payment(
            loan_id, amount, payment_date, payment_method, schedule_id, actor_id, **details
        )

    def verify_payment(self, payment_id: str, actor_id: str) -> Payment:
        return self.loan_manager.verify_payment(payment_id, actor_id)

    def mark_defaulted(self, loan_id: str, actor_id: str, reason: str) -> Loan:
        return self.loan_manager.mark_defaulted(loan_id, actor_id, reason)

    def write_off_loan(self, loan_id: str, actor_id: str, reason: str) -> Loan:
        return self.loan_manager.write_off(loan_id, actor_id, reason)

    def delete_loan(self, loan_id: str, actor_id: str) -> Loan:
        return self.loan_manager.soft_delete(loan_id, actor_id)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loan_manager.get(loan_id)

    def loan_schedules(self, loan_id: str) -> List[RepaymentSchedule]:
        self.loan_manager.get(loan_id)
        return self.schedule_store.for_loan(loan_id)

    def loan_activities(self, loan_id: str) -> List[LoanActivity]:
        self.loan_manager.get(loan_id, include_deleted=True)
        return self.activity_log.for_loan(loan_id)

    # Cash ledger

    def add_capital(self, amount: AmountLike, description: str,
                    transaction_date: Optional[date] = None,
                    user_id: Optional[str] = None) -> CashLedgerEntry:
        return self.cash_ledger.add_capital(
            amount, description, prefix=self.config.capital_prefix,
            transaction_date=transaction_date, user_id=user_id
        )

    def record_expense(self, amount: AmountLike, description: str,
                       transaction_date: Optional[date] = None,
                       user_id: Optional[str] = None) -> CashLedgerEntry:
        return self.cash_ledger.record_expense(
            amount, description, prefix=self.config.expense_prefix,
            transaction_date=transaction_date, user_id=user_id
        )

    # Reporting

    def cash_in_hand(self, as_of: Optional[date] = None,
                     market_id: Optional[str] = None) -> CashPosition:
        return self.calculations.cash_in_hand(as_of, market_id)

    def recovered_on_date(self, on_date: Optional[date] = None,
                          market_id: Optional[str] = None) -> RecoverySummary:
        return self.calculations.recovered_on_date(on_date, market_id)

    def active_loans(self, market_id: Optional[str] = None) -> ActiveLoanCensus:
        return self.calculations.active_loans(market_id)

    def due_today(self, on_date: Optional[date] = None,
                  market_id: Optional[str] = None) -> DueTodaySummary:
        return self.calculations.due_today(on_date, market_id)

    def portfolio_exposure(self, market_id: Optional[str] = None,
                           as_of: Optional[date] = None) -> PortfolioExposure:
        return self.calculations.portfolio_exposure(market_id, as_of)

    def loan_balance(self, loan_id: str, as_of: Optional[date] = None) -> LoanBalance:
        return self.calculations.loan_balance(loan_id, as_of)

    def historical_performance(self, from_date: date, to_date: date,
                               market_id: Optional[str] = None) -> Dict[str, Any]:
        return self.calculations.historical_performance(from_date, to_date, market_id)

    def dashboard(self, as_of: Optional[date] = None,
                  market_id: Optional[str] = None) -> Dict[str, Any]:
        return self.calculations.dashboard(as_of, market_id)

    def cash_summary(self, from_date: Optional[date] = None,
                     to_date: Optional[date] = None) -> Dict[str, Any]:
        return self.calculations.cash_summary(from_date, to_date)

    def loan_summary(self, market_id: Optional[str] = None) -> Dict[str, Any]:
        return self.calculations.loan_summary(market_id)

    def refresh_schedule_statuses(self, as_of: Optional[date] = None) -> int:
        """
        Age the cached status of every open loan's installments

        Meant for a nightly job; returns the number of schedules examined.
        """
        as_of = as_of or self.clock()
        examined = 0
        for loan in self.loan_manager.list_loans(statuses=OPEN_STATUSES):
            with self.locks.hold(loan.id), self.storage.atomic():
                examined += len(self.obligations.refresh_statuses(loan.id, as_of))
        return examined

    def verify_integrity(self) -> Dict[str, Any]:
        """Check every loan's activity hash chain"""
        return self.activity_log.verify_integrity()

    def close(self) -> None:
        self.storage.close()
