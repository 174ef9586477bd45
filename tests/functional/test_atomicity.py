"""
Atomicity tests

INVARIANT: multi-row operations are all-or-nothing.

    distribute          entry + shares + reserve credit
    start_installments  pre-installment charge + schedule + loan update
    request_loan        loan + (optional) installment start

A failure at any step leaves no rows from that operation behind.
"""

import pytest
from datetime import date
from decimal import Decimal

from fund.exceptions import FundValidationError
from fund.models import (
    FundLedgerTransaction, InstallmentEntry, InterestEntry, Loan, MemberInterestShare,
    PoolSnapshot, PreInstallmentCharge,
)
from fund.utils import ledger_helpers
from fund.utils.ledger_helpers import get_reserve_balance
from tests.conftest import DISBURSED, JOINED


pytestmark = pytest.mark.django_db


class TestDistributionAtomicity:

    def test_ledger_failure_discards_entry_and_shares(self, make_member, monkeypatch):
        make_member().record_deposit(Decimal('3000'), 1, JOINED)
        make_member().record_deposit(Decimal('6000'), 1, JOINED)
        PoolSnapshot.objects.create_snapshot(1, '2024-01')

        def failing_post(*args, **kwargs):
            raise RuntimeError("reserve unavailable")

        monkeypatch.setattr(ledger_helpers, 'post_ledger_transaction', failing_post)

        with pytest.raises(RuntimeError):
            InterestEntry.objects.distribute(2, 'bank_interest', Decimal('300'), 1)

        assert not InterestEntry.objects.exists()
        assert not MemberInterestShare.objects.exists()
        assert not FundLedgerTransaction.objects.exists()
        assert get_reserve_balance().total_balance == Decimal('0.00')


class TestLoanAtomicity:

    def test_failed_installment_start_discards_the_loan(self, borrower):
        with pytest.raises(FundValidationError) as exc:
            borrower.request_loan(
                Decimal('6000'),
                installment_start=date(2024, 12, 1),
                disbursed_on=DISBURSED,
            )

        assert exc.value.code == 'invalid_start'
        assert not Loan.objects.exists()
        assert not PreInstallmentCharge.objects.exists()

    def test_schedule_failure_discards_the_charge(self, loan, monkeypatch):
        def failing_bulk_create(*args, **kwargs):
            raise RuntimeError("schedule insert failed")

        monkeypatch.setattr(InstallmentEntry.objects, 'bulk_create', failing_bulk_create)

        with pytest.raises(RuntimeError):
            loan.start_installments(date(2025, 2, 15), 12)

        assert not PreInstallmentCharge.objects.exists()
        assert not InstallmentEntry.objects.exists()

        loan.refresh_from_db()
        assert not loan.installments_started
        assert loan.pre_installment_amount == Decimal('0.00')
