"""
Test suite for dashboard calculations

Every figure is recomputed from ledger entries, payments and schedules, so
the tests build state through the lending system and check the derived
numbers.
"""

import pytest
from datetime import date
from decimal import Decimal

from microlend.exceptions import NotFoundError, ValidationError
from microlend.schedules import ScheduleStatus


class TestCashInHand:
    """Test cash position derivation"""

    def test_cash_scenario(self, system, make_loan):
        """+5000 capital, 3000 loan out, 1100 back on installment 1"""
        system.add_capital("5000", "Owner capital", transaction_date=date(2026, 1, 1))
        loan = make_loan(principal="3000", rate="10", duration=3, disbursed_on=date(2026, 1, 2))
        first = system.loan_schedules(loan.id)[0]
        assert first.expected_amount == Decimal('1100.00')
        system.record_payment(loan.id, "1100", date(2026, 1, 3), schedule_id=first.id)

        position = system.cash_in_hand(date(2026, 1, 3))
        assert position.cash_in_hand == Decimal('3100.00')
        assert position.currency == "NGN"
        assert system.cash_in_hand(date(2026, 1, 2)).cash_in_hand == Decimal('2000.00')
        assert system.cash_in_hand(date(2026, 1, 1)).cash_in_hand == Decimal('5000.00')

    def test_expenses_reduce_cash(self, system):
        system.add_capital("5000", "Owner capital", transaction_date=date(2026, 1, 1))
        system.record_expense("750", "Agent airtime", transaction_date=date(2026, 1, 2))
        assert system.cash_in_hand().cash_in_hand == Decimal('4250.00')

    def test_market_filter(self, system, market, make_loan):
        other_market = system.register_market("Alaba International", "ALB")
        trader = system.register_borrower("Chidi", "Eze", "08039876543", "Ojo", other_market.id)
        system.add_capital("50000", "Owner capital", transaction_date=date(2026, 1, 1))
        make_loan(principal="3000")
        make_loan(principal="8000", borrower_id=trader.id)

        assert system.cash_in_hand(market_id=market.id).cash_in_hand == Decimal('-3000.00')
        assert system.cash_in_hand(market_id=other_market.id).cash_in_hand == Decimal('-8000.00')
        assert system.cash_in_hand().cash_in_hand == Decimal('39000.00')


class TestRecoveredOnDate:
    """Test daily recovery by loan type"""

    def test_buckets(self, system, make_loan, today):
        for frequency, duration in (("daily", 10), ("weekly", 28), ("bi-weekly", 28), ("monthly", 30)):
            loan = make_loan(frequency=frequency, duration=duration)
            system.record_payment(loan.id, "500")

        recovered = system.recovered_on_date(today)

        assert recovered.total_recovered == Decimal('2000.00')
        assert recovered.payment_count == 4
        assert set(recovered.by_loan_type) == {"daily", "weekly", "monthly"}
        assert recovered.by_loan_type["weekly"] == {"count": 1, "total_amount": Decimal('500.00')}
        assert recovered.unclassified == {"count": 1, "total_amount": Decimal('500.00')}

    def test_only_that_day(self, system, disbursed_loan, today):
        system.record_payment(disbursed_loan.id, "1100", date(2026, 1, 14))
        system.record_payment(disbursed_loan.id, "300", today)

        assert system.recovered_on_date(today).total_recovered == Decimal('300.00')
        assert system.recovered_on_date(date(2026, 1, 14)).payment_count == 1

    def test_unverified_payments_excluded(self, system, config, disbursed_loan, today):
        config.auto_verify_payments = False
        system.record_payment(disbursed_loan.id, "1100")
        assert system.recovered_on_date(today).payment_count == 0


class TestActiveLoans:
    """Test the active loan census"""

    def test_census(self, system, make_loan):
        make_loan()
        make_loan(principal="5000", frequency="weekly", duration=28)
        make_loan(approve=False)
        repaid = make_loan(principal="1000", rate="0", duration=1)
        only = system.loan_schedules(repaid.id)[0]
        system.record_payment(repaid.id, "1000", schedule_id=only.id)

        census = system.active_loans()

        assert census.total_active_loans == 2
        assert census.by_type["daily"] == {"count": 1, "total_principal": Decimal('10000.00')}
        assert census.by_type["weekly"] == {"count": 1, "total_principal": Decimal('5000.00')}
        assert census.by_type["bi-weekly"]["count"] == 0
        assert census.by_type["monthly"]["total_principal"] == Decimal('0.00')


class TestDueToday:
    """Test installments due on a day"""

    def test_due_today(self, system, disbursed_loan, make_loan):
        fifth = system.loan_schedules(disbursed_loan.id)[4]
        assert fifth.due_date == date(2026, 1, 10)
        system.record_payment(disbursed_loan.id, "500", schedule_id=fifth.id)

        later = make_loan(disbursed_on=date(2026, 1, 9))
        first = system.loan_schedules(later.id)[0]
        system.record_payment(later.id, "1100", schedule_id=first.id)

        due = system.due_today(date(2026, 1, 10))

        assert due.total_schedules == 2
        assert due.paid_count == 1
        assert due.pending_count == 1
        assert due.total_expected == Decimal('2200.00')
        assert due.total_collected == Decimal('1600.00')
        assert due.outstanding == Decimal('600.00')
        assert due.collection_rate == Decimal('72.73')

    def test_nothing_due(self, system, disbursed_loan):
        due = system.due_today(date(2026, 2, 1))
        assert due.total_schedules == 0
        assert due.collection_rate == Decimal('0.00')


class TestPortfolioExposure:
    """Test outstanding exposure"""

    def test_exposure(self, system, disbursed_loan, today):
        for schedule in system.loan_schedules(disbursed_loan.id)[:2]:
            system.record_payment(disbursed_loan.id, "1100", schedule_id=schedule.id)

        exposure = system.portfolio_exposure(as_of=today)

        assert exposure.loan_count == 1
        assert exposure.total_expected == Decimal('11000.00')
        assert exposure.total_received == Decimal('2200.00')
        assert exposure.total_outstanding == Decimal('8800.00')
        assert exposure.total_exposure == Decimal('8800.00')
        assert exposure.overdue_outstanding == Decimal('7700.00')
        assert exposure.current_outstanding == Decimal('1100.00')
        assert exposure.recovery_rate == Decimal('20.00')

    def test_closed_loans_are_not_exposure(self, system, disbursed_loan):
        system.mark_defaulted(disbursed_loan.id, "manager-1", "Absconded")
        exposure = system.portfolio_exposure()
        assert exposure.loan_count == 0
        assert exposure.total_exposure == Decimal('0.00')


class TestLoanBalance:
    """Test single loan balance"""

    def test_balance(self, system, disbursed_loan, today):
        first = system.loan_schedules(disbursed_loan.id)[0]
        system.record_payment(disbursed_loan.id, "1100", date(2026, 1, 6), schedule_id=first.id)

        balance = system.loan_balance(disbursed_loan.id, today)

        assert balance.loan_number == disbursed_loan.loan_number
        assert balance.status == "active"
        assert balance.total_expected == Decimal('11000.00')
        assert balance.total_paid == Decimal('1100.00')
        assert balance.balance == Decimal('9900.00')
        assert balance.schedules[0]['status'] == ScheduleStatus.PAID.value
        assert balance.schedules[1]['status'] == ScheduleStatus.OVERDUE.value
        assert balance.schedules[-1]['status'] == ScheduleStatus.PENDING.value
        assert balance.payment_history[0]['receipt_number'] == "PAY-20260106-0001"

        serialized = balance.to_dict()
        assert serialized['balance'] == "9900.00"
        assert serialized['schedules'][0]['due_date'] == "2026-01-06"

    def test_unknown_loan(self, system):
        with pytest.raises(NotFoundError):
            system.loan_balance("missing")


class TestReports:
    """Test the composite reports"""

    def test_dashboard_is_repeatable(self, system, disbursed_loan, today):
        system.add_capital("20000", "Owner capital", transaction_date=date(2026, 1, 1))
        system.record_payment(disbursed_loan.id, "1100")

        first = system.dashboard(today)
        second = system.dashboard(today)

        assert first == second
        assert set(first) >= {"cash_position", "daily_collections", "active_loans",
                              "today_repayments", "portfolio_exposure"}
        assert first['cash_position']['cash_in_hand'] == "11100.00"
        assert first['active_loans']['total_active_loans'] == 1

    def test_historical_performance(self, system, disbursed_loan):
        first = system.loan_schedules(disbursed_loan.id)[0]
        system.record_payment(disbursed_loan.id, "1100", date(2026, 1, 6), schedule_id=first.id)

        history = system.historical_performance(date(2026, 1, 6), date(2026, 1, 8))

        assert history['period']['days'] == 3
        assert Decimal(history['summary']['total_collected']) == Decimal('1100')
        assert Decimal(history['summary']['total_expected']) == Decimal('3300')
        assert Decimal(history['summary']['collection_rate']) == Decimal('33.33')
        assert [d['date'] for d in history['daily_breakdown']] == ["2026-01-06", "2026-01-07", "2026-01-08"]

    def test_historical_performance_range(self, system):
        with pytest.raises(ValidationError):
            system.historical_performance(date(2026, 1, 10), date(2026, 1, 9))

    def test_cash_summary(self, system, disbursed_loan, today):
        system.add_capital("5000", "Owner capital", transaction_date=date(2026, 1, 1))
        system.record_expense("200", "Receipt books", transaction_date=date(2026, 1, 10))
        system.record_payment(disbursed_loan.id, "1100", today)

        summary = system.cash_summary(to_date=today)
        assert summary['totals'] == {"inflow": "6100.00", "outflow": "10200.00", "net": "-4100.00"}
        assert summary['current_balance'] == "-4100.00"
        assert set(summary['breakdown']) == {"capital_injection", "disbursement", "expense", "payment"}

        window = system.cash_summary(date(2026, 1, 6), today)
        assert window['totals']['net'] == "900.00"
        assert window['current_balance'] == "-4100.00"
        assert set(window['breakdown']) == {"expense", "payment"}

    def test_loan_summary(self, system, disbursed_loan, make_loan):
        system.record_payment(disbursed_loan.id, "1100")
        make_loan(approve=False)
        rejected = make_loan(approve=False)
        system.reject_loan(rejected.id, "supervisor-1", "Incomplete guarantor details")

        summary = system.loan_summary()

        assert summary['total_loans'] == 3
        assert summary['active_loans'] == 1
        assert summary['pending_loans'] == 1
        assert summary['rejected_loans'] == 1
        assert summary['total_disbursed'] == "10000.00"
        assert summary['total_collected'] == "1100.00"
        assert summary['total_outstanding'] == "9900.00"

    def test_empty_book(self, system, today):
        assert system.cash_in_hand().cash_in_hand == Decimal('0.00')
        assert system.active_loans().total_active_loans == 0
        assert system.due_today().total_schedules == 0
        exposure = system.portfolio_exposure()
        assert exposure.total_exposure == Decimal('0.00')
        assert exposure.recovery_rate == Decimal('0.00')
        assert system.recovered_on_date(today).payment_count == 0
