"""
Report, spreadsheet export and management command tests
"""

import pytest
from datetime import date
from decimal import Decimal
from io import BytesIO, StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from openpyxl import load_workbook

from fund import reports
from fund.models import FundSetting, InterestBracket, InterestEntry, PoolSnapshot
from fund.utils.excel_export import (
    export_deposit_history_excel, export_distribution_excel, export_ledger_statement_excel,
    export_to_csv,
)
from fund.utils.helpers import annotate_installment_schedule
from tests.conftest import JOINED, deposit_months


pytestmark = pytest.mark.django_db


@pytest.fixture
def started_loan(loan):
    return loan.start_installments(date(2025, 2, 15), 12)


class TestFundReports:

    def test_fund_summary(self, started_loan, make_member):
        make_member(status='pending')

        summary = reports.fund_summary()

        assert summary['total_pool'] == Decimal('33000')
        assert summary['total_loaned_out'] == Decimal('6000')
        assert summary['available_balance'] == Decimal('27000')
        assert summary['active_loans'] == 1
        assert summary['members']['active'] == 2
        assert summary['members']['pending'] == 1
        assert summary['members']['total'] == 3
        # One pre-installment charge plus twelve installments
        assert summary['pending_payments'] == 13
        assert summary['reserve_balance'] == Decimal('0.00')

    def test_deposit_summary_and_history(self, make_member):
        member = make_member(full_name="Meera")
        deposit_months(member, 3)

        summary = reports.deposit_summary(member, on_date=date(2024, 5, 10))
        assert summary['total_deposits'] == Decimal('900')
        assert summary['current_member_month'] == 5
        assert summary['last_member_month'] == 3
        assert summary['deposit_count'] == 3

        history = reports.deposit_history(member)
        assert [row['cumulative_total'] for row in history] == [
            Decimal('300'), Decimal('600'), Decimal('900'),
        ]
        assert history[0]['member_name'] == "Meera"

    def test_loan_statement(self, started_loan):
        charge = started_loan.pre_installment_charges.get()
        started_loan.apply_payment(charge.interest_amount, date(2025, 2, 15), target=charge)
        first = started_loan.installments.get(installment_number=1)
        started_loan.apply_payment(first.total_amount, date(2025, 3, 15), target=first)

        statement = reports.loan_statement(started_loan, today=date(2025, 4, 20))

        assert statement['principal_amount'] == Decimal('6000')
        assert statement['pre_installment_charges'][0]['is_paid']
        assert len(statement['payments']) == 2
        assert statement['total_paid'] == charge.interest_amount + first.total_amount

        schedule = statement['schedule']
        assert schedule[0]['status'] == 'paid'
        assert schedule[1]['status'] == 'overdue'
        assert schedule[1]['days_overdue'] == 5
        assert schedule[2]['status'] == 'pending'

    def test_upcoming_installment_flag(self, started_loan):
        schedule = annotate_installment_schedule(started_loan, today=date(2025, 3, 10))
        assert schedule[0]['is_upcoming']
        assert schedule[0]['days_until'] == 5
        assert not schedule[1]['is_upcoming']

    def test_schedule_empty_before_installments_start(self, loan):
        assert annotate_installment_schedule(loan) == []

    def test_pending_dues(self, started_loan, borrower):
        dues = reports.pending_dues(member=borrower, today=date(2025, 3, 20))

        assert len(dues) == 13
        assert dues[0]['kind'] == 'pre_installment'
        assert dues[0]['is_overdue']
        assert dues[1]['installment_number'] == 1
        assert dues[1]['is_overdue']
        assert not dues[2]['is_overdue']

    def test_interest_reports(self, borrower):
        PoolSnapshot.objects.create_snapshot(1, '2024-01')
        InterestEntry.objects.distribute(2, 'bank_interest', Decimal('330'), 1)
        InterestEntry.objects.distribute(2, 'other', Decimal('110'), 1)

        members = reports.member_interest_summary()
        assert [row['member_name'] for row in members] == ["Ravi", "Asha"]
        assert members[0]['total_interest'] == Decimal('400.00')
        assert members[1]['total_interest'] == Decimal('40.00')

        shares = reports.member_shares(borrower)
        assert len(shares) == 2
        assert {share['member_units'] for share in shares} == {10}

        monthly = reports.monthly_interest_summary()
        assert [(row['source'], row['total']) for row in monthly] == [
            ('bank_interest', Decimal('330.00')),
            ('other', Decimal('110.00')),
        ]

        statement = reports.ledger_statement(limit=1)
        assert statement['total_balance'] == Decimal('440.00')
        assert len(statement['transactions']) == 1


class TestExcelExport:

    def test_deposit_history_workbook(self, make_member):
        member = make_member(full_name="Meera")
        deposit_months(member, 2)

        content = export_deposit_history_excel(reports.deposit_history(member), member.full_name)

        assert content[:2] == b'PK'
        sheet = load_workbook(BytesIO(content))['Deposits']
        assert sheet['A1'].value == 'DEPOSIT HISTORY'
        assert sheet['A2'].value == 'Meera'
        assert sheet['A3'].value == 'Member'
        assert sheet['A6'].value == 'TOTAL'
        assert sheet['D6'].value == 600

    def test_distribution_and_ledger_workbooks(self, borrower):
        PoolSnapshot.objects.create_snapshot(1, '2024-01')
        InterestEntry.objects.distribute(2, 'bank_interest', Decimal('330'), 1)

        workbook = load_workbook(BytesIO(export_distribution_excel(
            reports.member_interest_summary(), reports.monthly_interest_summary()
        )))
        assert workbook.sheetnames == ['Members', 'Monthly']

        ledger = load_workbook(BytesIO(export_ledger_statement_excel(reports.ledger_statement())))
        assert ledger['Ledger']['A1'].value == 'FUND RESERVE STATEMENT'
        assert ledger['Ledger']['C4'].value == 330

    def test_empty_export(self, db):
        content = export_deposit_history_excel([])
        assert load_workbook(BytesIO(content))['Deposits']['A4'].value == 'TOTAL'

    def test_csv(self):
        text = export_to_csv([{'a': 1, 'b': 2}], ['a', 'b'])
        assert text.splitlines() == ['a,b', '1,2']


class TestManagementCommands:

    def test_init_fund_settings(self):
        out = StringIO()
        call_command('init_fund_settings', stdout=out)

        assert FundSetting.objects.count() == 5
        assert InterestBracket.objects.active().count() == 6
        assert 'initialized successfully' in out.getvalue()

        # Idempotent
        call_command('init_fund_settings', stdout=StringIO())
        assert InterestBracket.objects.count() == 6

    def test_reset_restores_defaults(self):
        call_command('init_fund_settings', stdout=StringIO())
        FundSetting.objects.set_value('deposit_unit', '500')

        call_command('init_fund_settings', stdout=StringIO())
        assert FundSetting.objects.get_value('deposit_unit') == '500'

        call_command('init_fund_settings', '--reset', stdout=StringIO())
        assert FundSetting.objects.get_value('deposit_unit') == '300'
        assert InterestBracket.objects.count() == 6

    def test_create_pool_snapshot(self, make_member):
        make_member().record_deposit(Decimal('900'), 1, JOINED)

        out = StringIO()
        call_command('create_pool_snapshot', '1', '2024-01', stdout=out)

        snapshot = PoolSnapshot.objects.get(fund_month=1)
        assert snapshot.is_finalized
        assert snapshot.cumulative_pool_units == 3
        assert 'created, finalized' in out.getvalue()

        with pytest.raises(CommandError):
            call_command('create_pool_snapshot', '1', '2024-01', stdout=StringIO())

    def test_create_draft_snapshot(self, db):
        call_command('create_pool_snapshot', '4', '2024-04', '--draft', stdout=StringIO())
        assert not PoolSnapshot.objects.get(fund_month=4).is_finalized
