"""
conftest.py - Shared pytest fixtures for fund tests

Provides common fixtures used across unit and functional tests:
- Member factories (regular and admin)
- The default interest bracket table
- Funded members and an active loan ready for installments
"""

import itertools
import pytest
from datetime import date
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from fund.models import DEFAULT_INTEREST_BRACKETS, FundSetting, InterestBracket, Member


JOINED = date(2024, 1, 1)
DISBURSED = date(2025, 1, 1)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def deposit_months(member, months, amount=Decimal('300'), start_month=1):
    """Record one deposit per member-month, dated inside that month"""
    deposits = []
    for month in range(start_month, start_month + months):
        deposits.append(member.record_deposit(
            amount,
            month,
            member.joined_at + relativedelta(months=month - 1),
        ))
    return deposits


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def make_member(db):
    """Factory for members; active and joined 2024-01-01 unless told otherwise"""
    counter = itertools.count(1)

    def _make(full_name=None, status='active', role='member', joined_at=JOINED):
        number = next(counter)
        return Member.objects.create(
            full_name=full_name or f"Member {number}",
            email=f"member{number}@example.com",
            status=status,
            role=role,
            joined_at=joined_at,
        )

    return _make


@pytest.fixture
def admin_member(make_member):
    return make_member(full_name="Fund Admin", role='admin')


@pytest.fixture
def brackets(db):
    """The default bracket table (0,2]→9.5 ... (11,∞)→12"""
    return [
        InterestBracket.objects.create(
            min_multiplier=low,
            max_multiplier=high,
            interest_rate=rate,
        )
        for low, high, rate in DEFAULT_INTEREST_BRACKETS
    ]


@pytest.fixture
def unit_100(db):
    FundSetting.objects.set_value('deposit_unit', '100')


@pytest.fixture
def borrower(make_member, brackets):
    """
    Member with 3000 deposited, next to a member holding 30000

    Pool 33000, so the borrower may take up to 13200.
    """
    member = make_member(full_name="Asha")
    member.record_deposit(Decimal('3000'), 1, JOINED)
    saver = make_member(full_name="Ravi")
    saver.record_deposit(Decimal('30000'), 1, JOINED)
    return member


@pytest.fixture
def loan(borrower):
    """6000 loan (multiplier 2 → 9.5%) disbursed 2025-01-01, not yet started"""
    return borrower.request_loan(Decimal('6000'), disbursed_on=DISBURSED)
