"""
Money and interest calculation tests

The functions under test are pure Decimal arithmetic; no database.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import date
from decimal import Decimal

from fund.utils.money import (
    InterestCalculator, MoneyCalculator, format_currency, round_money,
)


class TestMoneyCalculator:

    def test_round_money_half_up(self):
        assert round_money('2.345') == Decimal('2.35')
        assert round_money(None) == Decimal('0.00')

    def test_calculate_percentage(self):
        assert MoneyCalculator.calculate_percentage(50000, '0.40') == Decimal('20000.00')

    def test_safe_divide_by_zero_returns_default(self):
        assert MoneyCalculator.safe_divide(10, 0) == Decimal('0.00')

    def test_deposit_unit_multiples(self):
        assert MoneyCalculator.is_multiple_of(Decimal('900'), Decimal('300'))
        assert not MoneyCalculator.is_multiple_of(Decimal('500'), Decimal('300'))
        assert not MoneyCalculator.is_multiple_of(Decimal('300'), Decimal('0'))

    def test_units_are_floored(self):
        assert MoneyCalculator.units_in(Decimal('50000'), Decimal('300')) == 166
        assert MoneyCalculator.units_in(Decimal('299'), Decimal('300')) == 0

    def test_emi_zero_rate_splits_principal(self):
        assert MoneyCalculator.calculate_emi(Decimal('1200'), 0, 12) == Decimal('100.00')

    def test_format_currency(self):
        assert format_currency(Decimal('1234567.891')) == '₹1,234,567.89'


class TestPreInstallmentInterest:

    def test_forty_five_days(self):
        interest = InterestCalculator.calculate_pre_installment_interest(
            Decimal('7000'), Decimal('9.5'), 45
        )
        assert interest == Decimal('83.29')

    def test_thirty_days_is_one_month_of_interest(self):
        interest = InterestCalculator.calculate_pre_installment_interest(
            Decimal('7000'), Decimal('9.5'), 30
        )
        assert interest == Decimal('55.42')

    @pytest.mark.parametrize('days', [0, -5])
    def test_no_gap_no_interest(self, days):
        assert InterestCalculator.calculate_pre_installment_interest(
            Decimal('7000'), Decimal('9.5'), days
        ) == Decimal('0.00')

    @given(
        principal=st.decimals(min_value=100, max_value=1000000, places=2),
        rate=st.decimals(min_value='0.5', max_value=24, places=2),
        days=st.integers(min_value=1, max_value=1000),
    )
    @settings(max_examples=50)
    def test_interest_grows_with_days(self, principal, rate, days):
        shorter = InterestCalculator.calculate_pre_installment_interest(principal, rate, days)
        longer = InterestCalculator.calculate_pre_installment_interest(principal, rate, days + 30)
        assert Decimal('0.00') <= shorter <= longer


class TestAmortizationSchedule:

    def test_reference_schedule(self):
        schedule = InterestCalculator.generate_amortization_schedule(
            Decimal('10000'), Decimal('10'), 12, date(2025, 1, 15)
        )

        assert len(schedule) == 12
        assert schedule[0]['interest_component'] == Decimal('83.33')
        assert schedule[0]['total_amount'] == Decimal('879.16')
        assert sum(row['principal_component'] for row in schedule) == Decimal('10000.00')
        assert schedule[-1]['outstanding_after'] == Decimal('0.00')

    def test_due_dates_step_by_calendar_month(self):
        schedule = InterestCalculator.generate_amortization_schedule(
            Decimal('3000'), Decimal('10'), 3, date(2025, 1, 31)
        )
        assert [row['due_date'] for row in schedule] == [
            date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30),
        ]

    def test_summary_without_dates(self):
        summary = InterestCalculator.calculate_reducing_balance_interest(
            Decimal('10000'), Decimal('10'), 12
        )
        assert summary['emi'] == Decimal('879.16')
        assert summary['total_repayment'] == Decimal('10000') + summary['total_interest']

    def test_tiny_principal_never_goes_negative(self):
        schedule = InterestCalculator.generate_amortization_schedule(
            Decimal('1'), Decimal('9.5'), 24, date(2025, 1, 15)
        )

        assert len(schedule) == 24
        assert sum(row['principal_component'] for row in schedule) == Decimal('1.00')
        for row in schedule:
            assert row['principal_component'] >= 0
            assert row['outstanding_after'] >= 0
        # Repaid before the last period
        assert schedule[-1]['total_amount'] == Decimal('0.00')

    @given(
        principal=st.decimals(min_value=Decimal('0.01'), max_value=1000000, places=2),
        rate=st.decimals(min_value=0, max_value=24, places=2),
        months=st.integers(min_value=1, max_value=60),
    )
    @settings(max_examples=100)
    def test_principal_always_fully_repaid(self, principal, rate, months):
        schedule = InterestCalculator.generate_amortization_schedule(principal, rate, months, None)

        assert len(schedule) == months
        assert sum(row['principal_component'] for row in schedule) == principal
        assert schedule[-1]['outstanding_after'] == Decimal('0.00')
        for row in schedule:
            assert row['total_amount'] == row['principal_component'] + row['interest_component']
            assert row['principal_component'] >= 0
            assert row['outstanding_after'] >= 0
