"""
Fund Ledger Helper Functions

This module posts changes to the fund reserve balance.

Every change to FundLedgerBalance MUST go through post_ledger_transaction
so that:
- The balance row is locked while it changes
- A FundLedgerTransaction records the signed amount and resulting balance
- The balance can be rebuilt from the transaction log
"""

from decimal import Decimal
from django.db import transaction
import logging

from fund.exceptions import FundValidationError, StateError
from fund.utils.helpers import serialized_operation, to_decimal
from fund.utils.money import MoneyCalculator

logger = logging.getLogger(__name__)


def get_reserve_balance(lock=False):
    """
    Fetch the reserve balance row, creating it on first use

    Args:
        lock: Take a row lock (only valid inside a transaction)

    Returns:
        FundLedgerBalance: The reserve row
    """
    from fund.models import FundLedgerBalance

    queryset = FundLedgerBalance.objects.select_for_update() if lock else FundLedgerBalance.objects
    balance, created = queryset.get_or_create(code=FundLedgerBalance.RESERVE_CODE)
    if created:
        logger.info("Fund reserve balance initialized")
    return balance


@transaction.atomic
def post_ledger_transaction(
    transaction_type,
    amount,
    *,
    interest_entry=None,
    loan=None,
    description='',
    recorded_by=None,
    interest_month=None
):
    """
    Master function for changing the reserve balance

    Args:
        transaction_type: One of FundLedgerTransaction.TRANSACTION_TYPE_CHOICES
        amount: Signed change (credits positive, debits negative)
        interest_entry: Related InterestEntry (optional)
        loan: Related Loan (optional)
        description: Audit description
        recorded_by: Member recording the change (optional)
        interest_month: Earned month to advance last_interest_month to

    Returns:
        FundLedgerTransaction: Created audit row

    Raises:
        FundValidationError: Unknown type or zero amount
        StateError: insufficient_balance when the balance would go negative
    """
    from fund.models import FundLedgerTransaction

    if transaction_type not in dict(FundLedgerTransaction.TRANSACTION_TYPE_CHOICES):
        raise FundValidationError(
            "Unknown ledger transaction type: %(type)s",
            code='invalid_transaction_type',
            params={'type': transaction_type},
        )

    amount = MoneyCalculator.round_money(to_decimal(amount))
    if amount == 0:
        raise FundValidationError(
            "Ledger amount cannot be zero", code='invalid_amount', params={'amount': amount}
        )

    balance = get_reserve_balance(lock=True)
    new_balance = balance.total_balance + amount

    if new_balance < 0:
        logger.warning(
            f"Ledger {transaction_type} of ₹{amount} rejected: balance ₹{balance.total_balance}"
        )
        raise StateError(
            "Reserve balance %(balance)s cannot cover %(amount)s",
            code='insufficient_balance',
            params={'balance': balance.total_balance, 'amount': amount},
        )

    balance.total_balance = new_balance
    update_fields = ['total_balance', 'updated_at']
    if interest_month and interest_month > balance.last_interest_month:
        balance.last_interest_month = interest_month
        update_fields.append('last_interest_month')
    balance.save(update_fields=update_fields)

    ledger_transaction = FundLedgerTransaction.objects.create(
        transaction_type=transaction_type,
        amount=amount,
        balance_after=new_balance,
        interest_entry=interest_entry,
        loan=loan,
        description=description,
        recorded_by=recorded_by,
    )

    logger.info(
        f"Ledger {transaction_type}: ₹{amount}, Balance=₹{new_balance}"
    )

    return ledger_transaction


@serialized_operation
def record_adjustment(amount, description, recorded_by=None):
    """
    Manual signed adjustment of the reserve

    Example:
        >>> record_adjustment(Decimal('-150.00'), 'Bank charges', recorded_by=admin)
    """
    if not description:
        raise FundValidationError(
            "An adjustment needs a description", code='missing_field', params={'field': 'description'}
        )
    return post_ledger_transaction(
        'adjustment',
        amount,
        description=description,
        recorded_by=recorded_by,
    )


def verify_ledger_integrity():
    """
    Replay the transaction log against the stored balance

    Returns:
        dict: {
            'is_valid': bool,
            'stored_balance': Decimal,
            'computed_balance': Decimal,
            'difference': Decimal,
            'broken_transactions': list of ids whose balance_after does not
                                   match the running total
        }
    """
    from fund.models import FundLedgerTransaction

    stored = get_reserve_balance().total_balance
    running = Decimal('0.00')
    broken = []

    for row in FundLedgerTransaction.objects.order_by('created_at').values('id', 'amount', 'balance_after'):
        running += row['amount']
        if row['balance_after'] != running:
            broken.append(row['id'])

    is_valid = running == stored and not broken
    if not is_valid:
        logger.error(
            f"Ledger integrity check failed: stored ₹{stored}, computed ₹{running}, "
            f"{len(broken)} inconsistent rows"
        )

    return {
        'is_valid': is_valid,
        'stored_balance': stored,
        'computed_balance': running,
        'difference': stored - running,
        'broken_transactions': broken,
    }
