import functools
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from dateutil.relativedelta import relativedelta
from django.db import OperationalError, transaction
from django.utils import timezone

from fund.exceptions import ConcurrencyError, FundValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSACTION HELPERS
# =============================================================================

def serialized_operation(func):
    """
    Run a mutating fund operation inside one atomic block.

    The wrapped function takes its row locks with select_for_update();
    lock timeouts, deadlocks and serialization failures reported by the
    database come back to the caller as ConcurrencyError, which is safe to
    retry as a whole.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            with transaction.atomic():
                return func(*args, **kwargs)
        except OperationalError as e:
            logger.warning(f"Write conflict in {func.__qualname__}: {e}")
            raise ConcurrencyError(
                "Concurrent update conflict in %(operation)s, retry the operation",
                code='write_conflict',
                params={'operation': func.__name__},
            ) from e
    return wrapper


def to_decimal(value, field='amount'):
    """Coerce user input to Decimal or raise FundValidationError"""
    if value is None or value == '':
        raise FundValidationError(
            "%(field)s is required", code='missing_field', params={'field': field}
        )
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        number = None
    if number is not None and number.is_finite():
        return number
    raise FundValidationError(
        "%(field)s is not a valid number: %(value)s",
        code=f'invalid_{field}',
        params={'field': field, 'value': value},
    )


# =============================================================================
# DATE HELPERS
# =============================================================================

def to_date(value, field='date'):
    """Accept a date or an ISO 'YYYY-MM-DD' string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise FundValidationError(
            "%(field)s is not a valid date: %(value)s",
            code='invalid_date',
            params={'field': field, 'value': value},
        )


def member_month_between(joined_at, on_date):
    """
    Member-relative month for a calendar date

    The month containing the join date is month 1; dates before the join
    date return 0.
    """
    if not joined_at or on_date < joined_at:
        return 0
    delta = relativedelta(on_date, joined_at)
    return delta.years * 12 + delta.months + 1


# =============================================================================
# HELPER FUNCTION: ANNOTATE INSTALLMENT SCHEDULE
# =============================================================================

def annotate_installment_schedule(loan, today=None):
    """
    Installment schedule of a loan with status indicators

    Returns:
        list: Schedule rows with paid / overdue / upcoming flags
    """
    if not loan.installments_started:
        return []

    today = today or timezone.now().date()
    schedule = []

    for entry in loan.installments.order_by('installment_number'):
        is_overdue = False
        is_upcoming = False
        days_until = None
        days_overdue = None

        if not entry.is_paid:
            if entry.due_date < today:
                is_overdue = True
                days_overdue = (today - entry.due_date).days
            elif (entry.due_date - today).days <= 7:
                is_upcoming = True
                days_until = (entry.due_date - today).days

        if entry.is_paid:
            status = 'paid'
        elif is_overdue:
            status = 'overdue'
        else:
            status = 'pending'

        schedule.append({
            'id': entry.id,
            'installment_number': entry.installment_number,
            'due_date': entry.due_date,
            'principal_component': entry.principal_component,
            'interest_component': entry.interest_component,
            'total_amount': entry.total_amount,
            'outstanding_after': entry.outstanding_after,
            'paid_amount': entry.paid_amount,
            'paid_on': entry.paid_on,
            'status': status,
            'is_paid': entry.is_paid,
            'is_overdue': is_overdue,
            'is_upcoming': is_upcoming,
            'days_until': days_until,
            'days_overdue': days_overdue,
        })

    return schedule
