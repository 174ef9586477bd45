"""
Fund Reports
============

Read-only summaries of the fund for the outward-facing surface:

- fund_summary             pool, lending and member counts
- deposit_summary          one member's deposit position
- deposit_history          deposit records
- loan_statement           one loan with charges, schedule and payments
- pending_dues             unpaid charges and installments of active loans
- member_interest_summary  interest earned per member
- member_shares            one member's distribution shares
- monthly_interest_summary interest by earned month and source
- ledger_statement         reserve balance with recent transactions

All currency values are Decimal.
"""

from decimal import Decimal

from django.utils import timezone

from fund.models import (
    Deposit, FundLedgerTransaction, InstallmentEntry, InterestEntry, Loan, Member,
    MemberInterestShare, Payment, PreInstallmentCharge,
)
from fund.utils.helpers import annotate_installment_schedule
from fund.utils.ledger_helpers import get_reserve_balance


def fund_summary():
    """
    Fund-wide position

    available_balance is the pool minus principal still lent out.
    """
    total_pool = Deposit.objects.total_amount()
    loan_stats = Loan.objects.get_statistics()

    pending_charges = PreInstallmentCharge.objects.for_active_loans().unpaid().count()
    pending_installments = InstallmentEntry.objects.for_active_loans().unpaid().count()

    return {
        'total_pool': total_pool,
        'total_loaned_out': loan_stats['total_outstanding'],
        'available_balance': total_pool - loan_stats['total_outstanding'],
        'members': Member.objects.get_statistics(),
        'active_loans': loan_stats['active_loans'],
        'completed_loans': loan_stats['completed_loans'],
        'defaulted_loans': loan_stats['defaulted_loans'],
        'total_interest_paid': loan_stats['total_interest_paid'],
        'pending_payments': pending_charges + pending_installments,
        'reserve_balance': get_reserve_balance().total_balance,
    }


def deposit_summary(member, on_date=None):
    """A member's total deposits and current member-month"""
    deposits = Deposit.objects.for_member(member)
    last = deposits.order_by('-member_month', '-created_at').first()

    return {
        'member_id': member.pk,
        'member_name': member.full_name,
        'joined_at': member.joined_at,
        'current_member_month': member.member_month_on(on_date),
        'total_deposits': deposits.total_amount(),
        'deposit_count': deposits.count(),
        'last_member_month': last.member_month if last else None,
    }


def deposit_history(member=None):
    """Deposit records, oldest member-month first"""
    deposits = Deposit.objects.select_related('member')
    if member is not None:
        deposits = deposits.for_member(member)

    return [
        {
            'id': deposit.pk,
            'member_id': deposit.member_id,
            'member_name': deposit.member.full_name,
            'member_month': deposit.member_month,
            'deposit_date': deposit.deposit_date,
            'amount': deposit.amount,
            'cumulative_total': deposit.cumulative_total,
            'notes': deposit.notes,
        }
        for deposit in deposits.order_by('member__full_name', 'member_month', 'created_at')
    ]


def loan_statement(loan, today=None):
    """
    A loan with its pre-installment charges, annotated schedule and payments
    """
    charges = [
        {
            'id': charge.pk,
            'period_start': charge.period_start,
            'period_end': charge.period_end,
            'days_count': charge.days_count,
            'interest_amount': charge.interest_amount,
            'due_date': charge.due_date,
            'is_paid': charge.is_paid,
            'paid_amount': charge.paid_amount,
            'paid_on': charge.paid_on,
        }
        for charge in loan.pre_installment_charges.order_by('due_date')
    ]

    payments = [
        {
            'id': payment.pk,
            'payment_type': payment.payment_type,
            'payment_date': payment.payment_date,
            'amount': payment.amount,
            'principal_component': payment.principal_component,
            'interest_component': payment.interest_component,
        }
        for payment in Payment.objects.filter(loan=loan).order_by('payment_date', 'created_at')
    ]

    return {
        'loan_number': loan.loan_number,
        'member_id': loan.member_id,
        'status': loan.status,
        'principal_amount': loan.principal_amount,
        'interest_rate': loan.interest_rate,
        'multiplier_at_disbursement': loan.multiplier_at_disbursement,
        'disbursed_on': loan.disbursed_on,
        'installment_start_date': loan.installment_start_date,
        'maturity_date': loan.maturity_date,
        'pre_installment_amount': loan.pre_installment_amount,
        'outstanding_principal': loan.outstanding_principal,
        'total_interest_paid': loan.total_interest_paid,
        'pre_installment_charges': charges,
        'schedule': annotate_installment_schedule(loan, today=today),
        'payments': payments,
        'total_paid': sum((p['amount'] for p in payments), Decimal('0.00')),
    }


def pending_dues(member=None, today=None):
    """
    Unpaid charges and installments of active loans, earliest due first
    """
    today = today or timezone.now().date()

    charges = PreInstallmentCharge.objects.for_active_loans().unpaid().select_related('loan', 'loan__member')
    installments = InstallmentEntry.objects.for_active_loans().unpaid().select_related('loan', 'loan__member')
    if member is not None:
        charges = charges.for_member(member)
        installments = installments.for_member(member)

    dues = []
    for charge in charges:
        dues.append({
            'kind': 'pre_installment',
            'id': charge.pk,
            'loan_number': charge.loan.loan_number,
            'member_name': charge.loan.member.full_name,
            'installment_number': None,
            'due_date': charge.due_date,
            'amount': charge.interest_amount,
            'is_overdue': charge.due_date < today,
        })
    for entry in installments:
        dues.append({
            'kind': 'installment',
            'id': entry.pk,
            'loan_number': entry.loan.loan_number,
            'member_name': entry.loan.member.full_name,
            'installment_number': entry.installment_number,
            'due_date': entry.due_date,
            'amount': entry.total_amount,
            'is_overdue': entry.due_date < today,
        })

    dues.sort(key=lambda due: (due['due_date'], due['loan_number'], due['installment_number'] or 0))
    return dues


def member_interest_summary():
    """Interest earned per member across all distributions"""
    return [
        {
            'member_id': row['member_id'],
            'member_name': row['member__full_name'],
            'total_interest': row['total_interest'],
            'entries': row['entries'],
        }
        for row in MemberInterestShare.objects.totals_by_member()
    ]


def member_shares(member):
    """A member's share of every interest entry, newest month first"""
    shares = (
        MemberInterestShare.objects.for_member(member)
        .select_related('interest_entry')
        .order_by('-interest_entry__earned_month', '-created_at')
    )
    return [
        {
            'earned_month': share.interest_entry.earned_month,
            'source': share.interest_entry.source,
            'entry_amount': share.interest_entry.amount,
            'member_units': share.member_cumulative_units,
            'pool_units': share.total_pool_units,
            'share_percentage': share.share_percentage,
            'interest_share': share.interest_share,
        }
        for share in shares
    ]


def monthly_interest_summary():
    """Interest totals by earned month and source"""
    return [
        {
            'earned_month': row['earned_month'],
            'source': row['source'],
            'total': row['total'],
            'entries': row['entries'],
        }
        for row in InterestEntry.objects.monthly_totals()
    ]


def ledger_statement(limit=20):
    """Reserve balance with its most recent transactions"""
    balance = get_reserve_balance()
    return {
        'total_balance': balance.total_balance,
        'last_interest_month': balance.last_interest_month,
        'transactions': [
            {
                'id': row.pk,
                'created_at': row.created_at,
                'transaction_type': row.transaction_type,
                'amount': row.amount,
                'balance_after': row.balance_after,
                'description': row.description,
            }
            for row in FundLedgerTransaction.objects.recent(limit)
        ],
    }
